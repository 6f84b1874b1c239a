"""Data model of the version metadata format, decoded once from JSON into structured
objects. Argument templates are kept as tagged elements so that merged descriptors can
be resolved again against any platform.
"""

from .rule import Rule, parse_rules, is_allowed
from .system import PlatformInfo
from .util import LibrarySpecifier

from typing import Optional, List, Dict, Any, Union, Iterator, Set


class Artifact:
    """A downloadable file with its integrity metadata. The URL may be absent for
    artifacts that are synthesized locally, the path is relative to the store that
    owns the artifact (libraries directory, assets objects...).
    """

    __slots__ = "url", "sha1", "size", "path"

    def __init__(self,
        url: Optional[str],
        sha1: Optional[str] = None,
        size: Optional[int] = None,
        path: Optional[str] = None
    ) -> None:
        self.url = url
        self.sha1 = sha1
        self.size = size
        self.path = path

    @property
    def id(self) -> str:
        """Name used to identify this artifact in errors and logs.
        """
        if self.path is not None:
            return self.path
        return self.url or "<unknown>"

    def __repr__(self) -> str:
        return f"<Artifact {self.id}, sha1: {self.sha1}, size: {self.size}>"

    def __eq__(self, other) -> bool:
        return isinstance(other, Artifact) and \
            (self.url, self.sha1, self.size, self.path) == (other.url, other.sha1, other.size, other.path)

    def __hash__(self) -> int:
        return hash((self.url, self.sha1, self.size, self.path))


class ExtractSpec:
    """Describe how to extract a native archive, entries starting with any of the
    excluded prefixes are skipped, and if includes are given only entries starting with
    one of them are extracted.
    """

    __slots__ = "exclude", "include"

    def __init__(self, exclude: Optional[List[str]] = None, include: Optional[List[str]] = None) -> None:
        self.exclude = exclude or []
        self.include = include

    def accept(self, name: str) -> bool:
        if any(name.startswith(prefix) for prefix in self.exclude):
            return False
        if self.include is not None:
            return any(name.startswith(prefix) for prefix in self.include)
        return True


class LibraryEntry:
    """A library declared by a version, with its generic artifact and optional natives.
    """

    __slots__ = "spec", "artifact", "natives", "classifiers", "extract", "rules", "url"

    def __init__(self,
        spec: LibrarySpecifier,
        artifact: Optional[Artifact] = None, *,
        natives: Optional[Dict[str, str]] = None,
        classifiers: Optional[Dict[str, Artifact]] = None,
        extract: Optional[ExtractSpec] = None,
        rules: Optional[List[Rule]] = None,
        url: Optional[str] = None
    ) -> None:
        self.spec = spec
        self.artifact = artifact
        self.natives = natives
        self.classifiers = classifiers or {}
        self.extract = extract
        self.rules = rules
        self.url = url

    def native_classifier(self, platform: PlatformInfo) -> Optional[str]:
        """Return the classifier of the natives for the given platform, the `${arch}`
        placeholder being replaced by the pointer width. None if this library has no
        natives for the platform.
        """
        if self.natives is None or platform.os_name is None:
            return None
        classifier = self.natives.get(platform.os_name)
        if classifier is None:
            return None
        if platform.arch_bits is not None:
            classifier = classifier.replace("${arch}", str(platform.arch_bits))
        return classifier

    def __repr__(self) -> str:
        return f"<LibraryEntry {self.spec}>"


class Literal:
    __slots__ = "text",

    def __init__(self, text: str) -> None:
        self.text = text

    def __eq__(self, other) -> bool:
        return isinstance(other, Literal) and self.text == other.text

    def __repr__(self) -> str:
        return f"<Literal {self.text!r}>"


class Conditional:
    """One or more argument values only emitted when the rules allow it.
    """

    __slots__ = "values", "rules"

    def __init__(self, values: List[str], rules: List[Rule]) -> None:
        self.values = values
        self.rules = rules

    def __repr__(self) -> str:
        return f"<Conditional {self.values!r}, rules: {self.rules}>"


ArgumentElement = Union[Literal, Conditional]


class ArgumentTemplate:
    """An ordered sequence of literal and conditional argument elements. The template is
    never flattened, it's resolved against a platform when needed.
    """

    __slots__ = "elements",

    def __init__(self, elements: Optional[List[ArgumentElement]] = None) -> None:
        self.elements: List[ArgumentElement] = [] if elements is None else elements

    @classmethod
    def from_literals(cls, *texts: str) -> "ArgumentTemplate":
        return cls([Literal(text) for text in texts])

    @classmethod
    def from_legacy(cls, raw: str) -> "ArgumentTemplate":
        """Build a template from the legacy 'minecraftArguments' string.
        """
        return cls([Literal(text) for text in raw.split(" ") if len(text)])

    def __add__(self, other: "ArgumentTemplate") -> "ArgumentTemplate":
        return ArgumentTemplate(self.elements + other.elements)

    def __len__(self) -> int:
        return len(self.elements)

    def __iter__(self) -> Iterator[ArgumentElement]:
        return iter(self.elements)

    def select(self, platform: PlatformInfo, features: Optional[Dict[str, bool]] = None) -> Iterator[Union[str, List[str]]]:
        """Yield every literal text and the values list of every allowed conditional.
        """
        for element in self.elements:
            if isinstance(element, Literal):
                yield element.text
            elif is_allowed(element.rules, platform, features):
                yield element.values

    def feature_names(self) -> Set[str]:
        """Return the name of every feature referenced by the rules of this template.
        """
        names = set()
        for element in self.elements:
            if isinstance(element, Conditional):
                for rule in element.rules:
                    if rule.features is not None:
                        names.update(rule.features.keys())
        return names

    def __repr__(self) -> str:
        return f"<ArgumentTemplate {self.elements!r}>"


class LoggingConfig:
    __slots__ = "argument", "file_id", "artifact"

    def __init__(self, argument: str, file_id: str, artifact: Artifact) -> None:
        self.argument = argument
        self.file_id = file_id
        self.artifact = artifact


class VersionDescriptor:
    """Full description of a version, decoded from its metadata file. Fields are
    optional because a descriptor can be partial until merged with its parents.
    """

    __slots__ = "id", "type", "main_class", "java_component", "java_major_version", \
        "libraries", "game_args", "jvm_args", "client", "asset_index", "assets", \
        "logging", "inherits_from", "release_time"

    def __init__(self, id: str) -> None:
        self.id = id
        self.type: Optional[str] = None
        self.main_class: Optional[str] = None
        self.java_component: Optional[str] = None
        self.java_major_version: Optional[int] = None
        self.libraries: List[LibraryEntry] = []
        self.game_args: Optional[ArgumentTemplate] = None
        self.jvm_args: Optional[ArgumentTemplate] = None
        self.client: Optional[Artifact] = None
        self.asset_index: Optional[Artifact] = None
        self.assets: Optional[str] = None
        self.logging: Optional[LoggingConfig] = None
        self.inherits_from: Optional[str] = None
        self.release_time: Optional[str] = None

    @property
    def assets_id(self) -> Optional[str]:
        """The asset index identifier, the 'assets' field having precedence over the
        asset index's own id.
        """
        if self.assets is not None:
            return self.assets
        if self.asset_index is not None and self.asset_index.path is not None:
            return self.asset_index.path
        return None

    def __repr__(self) -> str:
        return f"<VersionDescriptor {self.id}, libraries: {len(self.libraries)}>"


class AssetObject:
    __slots__ = "hash", "size"

    def __init__(self, hash: str, size: int) -> None:
        self.hash = hash
        self.size = size

    @property
    def path(self) -> str:
        """Relative path of this object in the content-addressed store.
        """
        return f"{self.hash[:2]}/{self.hash}"


class AssetIndex:
    """Asset index mapping logical asset paths to content-addressed objects.
    """

    __slots__ = "id", "objects", "virtual", "map_to_resources"

    def __init__(self, id: str, objects: Dict[str, AssetObject], *,
        virtual: bool = False,
        map_to_resources: bool = False
    ) -> None:
        self.id = id
        self.objects = objects
        self.virtual = virtual
        self.map_to_resources = map_to_resources


def parse_artifact(value: Any, path: str, *, rel_path: Optional[str] = None, require_url: bool = True) -> Artifact:
    """Common function to parse a download artifact from a metadata JSON file.
    """

    if not isinstance(value, dict):
        raise ValueError(f"{path} must be an object")

    url = value.get("url")
    if url is not None and not isinstance(url, str):
        raise ValueError(f"{path}/url must be a string")
    if require_url and url is None:
        raise ValueError(f"{path}/url must be a string")

    size = value.get("size")
    if size is not None and not isinstance(size, int):
        raise ValueError(f"{path}/size must be an integer")

    sha1 = value.get("sha1")
    if sha1 is not None and not isinstance(sha1, str):
        raise ValueError(f"{path}/sha1 must be a string")

    if rel_path is None:
        rel_path = value.get("path")
        if rel_path is not None and not isinstance(rel_path, str):
            raise ValueError(f"{path}/path must be a string")

    return Artifact(url or None, sha1, size, rel_path)


def parse_arguments(args: Any, path: str) -> ArgumentTemplate:
    """Parse a modern list of arguments, mixing plain strings and conditional objects.
    """

    if not isinstance(args, list):
        raise ValueError(f"{path} must be a list")

    elements: List[ArgumentElement] = []
    for i, arg in enumerate(args):

        if isinstance(arg, str):
            elements.append(Literal(arg))
        elif isinstance(arg, dict):

            rules = arg.get("rules")
            rules = [] if rules is None else parse_rules(rules, f"{path}/{i}/rules")

            arg_value = arg.get("value")
            if isinstance(arg_value, str):
                values = [arg_value]
            elif isinstance(arg_value, list) and all(isinstance(v, str) for v in arg_value):
                values = list(arg_value)
            else:
                raise ValueError(f"{path}/{i}/value must be a list of strings or a string")

            if not len(rules):
                # Conditional without rules are always emitted.
                elements.extend(Literal(value) for value in values)
            else:
                elements.append(Conditional(values, rules))

        else:
            raise ValueError(f"{path}/{i} must be an object or a string")

    return ArgumentTemplate(elements)


def parse_library(library: Any, path: str) -> LibraryEntry:

    if not isinstance(library, dict):
        raise ValueError(f"{path} must be an object")

    name = library.get("name")
    if not isinstance(name, str):
        raise ValueError(f"{path}/name must be a string")

    try:
        spec = LibrarySpecifier.from_str(name)
    except ValueError as e:
        raise ValueError(f"{path}/name: {e}")

    rules = library.get("rules")
    if rules is not None:
        rules = parse_rules(rules, f"{path}/rules")

    natives = library.get("natives")
    if natives is not None:
        if not isinstance(natives, dict) or not all(isinstance(v, str) for v in natives.values()):
            raise ValueError(f"{path}/natives must be an object of strings")

    artifact = None
    classifiers = {}

    downloads = library.get("downloads")
    if downloads is not None:

        if not isinstance(downloads, dict):
            raise ValueError(f"{path}/downloads must be an object")

        artifact_raw = downloads.get("artifact")
        if artifact_raw is not None:
            artifact = parse_artifact(artifact_raw, f"{path}/downloads/artifact", require_url=False)
            if artifact.path is None:
                artifact.path = spec.file_path()

        classifiers_raw = downloads.get("classifiers")
        if classifiers_raw is not None:
            if not isinstance(classifiers_raw, dict):
                raise ValueError(f"{path}/downloads/classifiers must be an object")
            for classifier, classifier_raw in classifiers_raw.items():
                classifier_artifact = parse_artifact(classifier_raw, f"{path}/downloads/classifiers/{classifier}", require_url=False)
                if classifier_artifact.path is None:
                    classifier_artifact.path = spec.with_classifier(classifier).file_path()
                classifiers[classifier] = classifier_artifact

    extract = library.get("extract")
    if extract is not None:
        if not isinstance(extract, dict):
            raise ValueError(f"{path}/extract must be an object")
        exclude = extract.get("exclude", [])
        if not isinstance(exclude, list) or not all(isinstance(v, str) for v in exclude):
            raise ValueError(f"{path}/extract/exclude must be a list of strings")
        include = extract.get("include")
        if include is not None and (not isinstance(include, list) or not all(isinstance(v, str) for v in include)):
            raise ValueError(f"{path}/extract/include must be a list of strings")
        extract = ExtractSpec(exclude, include)

    url = library.get("url")
    if url is not None and not isinstance(url, str):
        raise ValueError(f"{path}/url must be a string")

    return LibraryEntry(spec, artifact,
        natives=natives,
        classifiers=classifiers,
        extract=extract,
        rules=rules,
        url=url)


def parse_version(data: Any, id: Optional[str] = None, path: str = "metadata: ") -> VersionDescriptor:
    """Decode a version descriptor from its JSON metadata. The given id is used if the
    metadata has none.
    """

    if not isinstance(data, dict):
        raise ValueError(f"{path}/ must be an object")

    raw_id = data.get("id", id)
    if not isinstance(raw_id, str):
        raise ValueError(f"{path}/id must be a string")

    desc = VersionDescriptor(raw_id)
    desc.type = _opt(data, "type", str, path)
    desc.main_class = _opt(data, "mainClass", str, path)
    desc.inherits_from = _opt(data, "inheritsFrom", str, path)
    desc.release_time = _opt(data, "releaseTime", str, path)
    desc.assets = _opt(data, "assets", str, path)

    java_version = data.get("javaVersion")
    if java_version is not None:
        if not isinstance(java_version, dict):
            raise ValueError(f"{path}/javaVersion must be an object")
        desc.java_component = _opt(java_version, "component", str, f"{path}/javaVersion")
        desc.java_major_version = _opt(java_version, "majorVersion", int, f"{path}/javaVersion")

    libraries = data.get("libraries")
    if libraries is not None:
        if not isinstance(libraries, list):
            raise ValueError(f"{path}/libraries must be a list")
        desc.libraries = [parse_library(lib, f"{path}/libraries/{i}") for i, lib in enumerate(libraries)]

    arguments = data.get("arguments")
    if arguments is not None:
        if not isinstance(arguments, dict):
            raise ValueError(f"{path}/arguments must be an object")
        if "game" in arguments:
            desc.game_args = parse_arguments(arguments["game"], f"{path}/arguments/game")
        if "jvm" in arguments:
            desc.jvm_args = parse_arguments(arguments["jvm"], f"{path}/arguments/jvm")

    legacy_args = data.get("minecraftArguments")
    if legacy_args is not None:
        if not isinstance(legacy_args, str):
            raise ValueError(f"{path}/minecraftArguments must be a string")
        legacy_template = ArgumentTemplate.from_legacy(legacy_args)
        desc.game_args = legacy_template if desc.game_args is None else desc.game_args + legacy_template

    downloads = data.get("downloads")
    if downloads is not None:
        if not isinstance(downloads, dict):
            raise ValueError(f"{path}/downloads must be an object")
        client = downloads.get("client")
        if client is not None:
            desc.client = parse_artifact(client, f"{path}/downloads/client")

    asset_index = data.get("assetIndex")
    if asset_index is not None:
        if not isinstance(asset_index, dict):
            raise ValueError(f"{path}/assetIndex must be an object")
        asset_index_id = asset_index.get("id")
        if not isinstance(asset_index_id, str):
            raise ValueError(f"{path}/assetIndex/id must be a string")
        desc.asset_index = parse_artifact(asset_index, f"{path}/assetIndex", rel_path=asset_index_id)

    logging = data.get("logging")
    if logging is not None:
        if not isinstance(logging, dict):
            raise ValueError(f"{path}/logging must be an object")
        client_logging = logging.get("client")
        if client_logging is not None:
            desc.logging = _parse_logging(client_logging, f"{path}/logging/client")

    return desc


def _parse_logging(value: Any, path: str) -> LoggingConfig:

    if not isinstance(value, dict):
        raise ValueError(f"{path} must be an object")

    argument = value.get("argument")
    if not isinstance(argument, str):
        raise ValueError(f"{path}/argument must be a string")

    file_info = value.get("file")
    if not isinstance(file_info, dict):
        raise ValueError(f"{path}/file must be an object")

    file_id = file_info.get("id")
    if not isinstance(file_id, str):
        raise ValueError(f"{path}/file/id must be a string")

    return LoggingConfig(argument, file_id, parse_artifact(file_info, f"{path}/file", rel_path=file_id))


def parse_asset_index(data: Any, id: str) -> AssetIndex:
    """Decode an asset index from its JSON content.
    """

    if not isinstance(data, dict):
        raise ValueError("assets index: / must be an object")

    map_to_resources = data.get("map_to_resources", False)  # For version <= 13w23b
    virtual = data.get("virtual", False)  # For 13w23b < version <= 13w48b (1.7.2)

    if not isinstance(map_to_resources, bool):
        raise ValueError("assets index: /map_to_resources must be a boolean")
    if not isinstance(virtual, bool):
        raise ValueError("assets index: /virtual must be a boolean")

    raw_objects = data.get("objects")
    if not isinstance(raw_objects, dict):
        raise ValueError("assets index: /objects must be an object")

    objects = {}
    for asset_id, asset_obj in raw_objects.items():

        if not isinstance(asset_obj, dict):
            raise ValueError(f"assets index: /objects/{asset_id} must be an object")

        asset_hash = asset_obj.get("hash")
        if not isinstance(asset_hash, str) or len(asset_hash) < 2:
            raise ValueError(f"assets index: /objects/{asset_id}/hash must be a string")

        asset_size = asset_obj.get("size")
        if not isinstance(asset_size, int):
            raise ValueError(f"assets index: /objects/{asset_id}/size must be an integer")

        objects[asset_id] = AssetObject(asset_hash, asset_size)

    return AssetIndex(id, objects, virtual=virtual, map_to_resources=map_to_resources)


def _opt(obj: dict, key: str, typ: type, path: str) -> Any:
    value = obj.get(key)
    if value is not None and not isinstance(value, typ):
        raise ValueError(f"{path}/{key} must be of type {typ.__name__}")
    return value
