"""Definition of the version directory, resolving version descriptors from Mojang's
version manifest and the local versions directory. This module also provides the merge
of descriptors and the resolution of argument templates.
"""

from datetime import datetime, timedelta
from json import JSONDecodeError
from pathlib import Path
from uuid import uuid4
import hashlib
import logging
import json
import os

from .metadata import VersionDescriptor, ArgumentTemplate, parse_version
from .util import calc_file_sha1, from_iso_date, utc_now
from .http import http_request, HttpError
from .download import IntegrityError
from .context import Context, Endpoints
from .system import PlatformInfo

from typing import Optional, Dict, List, Tuple, Callable


logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_MAX_AGE = timedelta(hours=12)
MAX_PARENTS = 10


class VersionManifest:
    """The Mojang's official version manifest, providing officially available versions
    with an optional cache file. The cache records the instant of the last fetch, the
    manifest being fetched again only when older than the maximum age.
    """

    def __init__(self,
        cache_file: Optional[Path] = None, *,
        url: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.data: Optional[dict] = None
        self.cache_file = cache_file
        self.url = Endpoints().version_manifest if url is None else url
        self.clock = clock
        self.max_age = DEFAULT_MANIFEST_MAX_AGE

    def load(self, max_age: Optional[timedelta] = None) -> dict:
        """Ensure that the manifest data is loaded and not older than the maximum age.

        :param max_age: The maximum age of the cached manifest, defaults to 12 hours.
        :raises HttpError: If the manifest can't be fetched and nothing is cached.
        """

        if max_age is None:
            max_age = self.max_age

        now = self.clock()

        if self.data is not None and not self._is_outdated(self.data, now, max_age):
            return self.data

        headers = {}
        cache_data = self._read_cache()

        if cache_data is not None:
            if not self._is_outdated(cache_data, now, max_age):
                self.data = cache_data
                return cache_data
            if "last_modified" in cache_data:
                headers["If-Modified-Since"] = cache_data["last_modified"]

        try:

            res = http_request("GET", self.url,
                headers=headers,
                accept="application/json")

            data = res.json()
            if not isinstance(data, dict):
                raise ValueError("version manifest: / must be an object")

            last_modified = res.header("Last-Modified")
            if last_modified is not None:
                data["last_modified"] = last_modified

        except HttpError as error:
            # Offline or not modified, keep the cache.
            if cache_data is None or error.res.status not in (0, 304):
                raise
            if error.res.status == 0:
                logger.warning("Failed to fetch version manifest, using cache: %s", error.reason)
            data = cache_data

        data["last_update"] = now.isoformat()
        self.data = data
        self._write_cache(data)
        return data

    def _is_outdated(self, data: dict, now: datetime, max_age: timedelta) -> bool:
        last_update = data.get("last_update")
        if not isinstance(last_update, str):
            return True
        try:
            return now >= from_iso_date(last_update) + max_age
        except ValueError:
            return True

    def _read_cache(self) -> Optional[dict]:
        if self.cache_file is None:
            return None
        try:
            with self.cache_file.open("rt") as cache_fp:
                data = json.load(cache_fp)
            return data if isinstance(data, dict) else None
        except (OSError, JSONDecodeError):
            return None

    def _write_cache(self, data: dict) -> None:
        if self.cache_file is not None:
            write_atomic(self.cache_file, json.dumps(data).encode())

    def is_alias(self, version: str) -> bool:
        return version in ("release", "snapshot")

    def filter_latest(self, version: str) -> Tuple[str, bool]:
        """Resolve the `release` and `snapshot` aliases to the latest version of that
        type, the returned boolean tells if an alias was resolved.
        """
        if self.is_alias(version):
            latest = self.load().get("latest", {}).get(version)
            if latest is not None:
                return latest, True
        return version, False

    def get_version(self, version: str) -> Optional[dict]:
        """Get a manifest's version metadata, containing the metadata's URL, its SHA1 and
        its type. The version identifier is matched case-insensitively.

        :raises HttpError: If the manifest can't be fetched.
        """
        version, _alias = self.filter_latest(version)
        version = version.casefold()
        for version_data in self.all_versions():
            if isinstance(version_data, dict) and str(version_data.get("id", "")).casefold() == version:
                return version_data
        return None

    def all_versions(self) -> list:
        return self.load().get("versions", [])


class VersionDirectory:
    """Resolve version descriptors, from the local versions directory when up-to-date
    or from the version manifest otherwise.
    """

    def __init__(self,
        context: Context,
        manifest: Optional[VersionManifest] = None, *,
        validate: bool = True,
        manifest_max_age: timedelta = DEFAULT_MANIFEST_MAX_AGE
    ) -> None:
        self.context = context
        self.manifest = VersionManifest(context.manifest_file) if manifest is None else manifest
        self.validate = validate
        self.manifest_max_age = manifest_max_age
        self.manifest.max_age = manifest_max_age

    def load_manifest(self) -> dict:
        return self.manifest.load(self.manifest_max_age)

    def resolve_version(self, version: str, *, force: bool = False) -> VersionDescriptor:
        """Resolve a version descriptor and merge it with all its parents.

        :param force: Set to true to download again the descriptors that are
        downloadable, even if already cached.
        :raises VersionNotFoundError: If the version or one of its parents is unknown.
        :raises TooMuchParentsError: If the hierarchy has more than 10 parents.
        :raises IntegrityError: If a downloaded descriptor doesn't match the manifest.
        """

        hierarchy: List[VersionDescriptor] = []
        version_id: Optional[str] = version

        while version_id is not None:
            if len(hierarchy) > MAX_PARENTS:
                raise TooMuchParentsError([desc.id for desc in hierarchy])
            desc = self.load_descriptor(version_id, force=force)
            hierarchy.append(desc)
            version_id = desc.inherits_from

        merged = hierarchy[-1]
        for desc in reversed(hierarchy[:-1]):
            merged = merge(merged, desc)

        merged.inherits_from = None
        return merged

    def load_descriptor(self, version: str, *, force: bool = False) -> VersionDescriptor:
        """Load a single descriptor without its parents, fetching it if it's absent or
        if its sha1 differs from the one in the manifest.
        """

        self.load_manifest_safe()

        try:
            version_meta = self.manifest.get_version(version)
        except HttpError as error:
            # Ignoring HTTP errors, we want to be able to launch offline.
            logger.warning("Version manifest unavailable, using local version %s: %s", version, error)
            version_meta = None

        version_id = version if version_meta is None else version_meta["id"]
        metadata_file = self.context.version_metadata_file(version_id)

        if version_meta is None:
            if metadata_file.is_file():
                logger.debug("Loading local version %s", version_id)
                return self._read_descriptor(version_id, metadata_file)
            raise VersionNotFoundError(version)

        expected_sha1 = version_meta.get("sha1")

        if not force and metadata_file.is_file():
            if not self.validate or expected_sha1 is None or calc_file_sha1(metadata_file) == expected_sha1:
                logger.debug("Loading cached version %s", version_id)
                return self._read_descriptor(version_id, metadata_file)
            logger.debug("Cached version %s is outdated", version_id)

        url = version_meta.get("url")
        if not isinstance(url, str):
            raise ValueError(f"version manifest: url of {version_id} must be a string")

        logger.debug("Fetching version %s", version_id)
        res = http_request("GET", url, accept="application/json")

        if self.validate and expected_sha1 is not None:
            actual_sha1 = hashlib.sha1(res.data).hexdigest()
            if actual_sha1 != expected_sha1:
                raise IntegrityError(f"{version_id}.json", expected_sha1, actual_sha1)

        # Decode the data first, raising if invalid, before writing the file.
        try:
            desc = parse_version(res.json(), version_id)
        except JSONDecodeError as e:
            raise ValueError(f"metadata: invalid json: {e}")

        write_atomic(metadata_file, res.data)
        return desc

    def load_manifest_safe(self) -> None:
        try:
            self.load_manifest()
        except HttpError as error:
            logger.warning("Failed to load version manifest: %s", error)

    def _read_descriptor(self, version_id: str, metadata_file: Path) -> VersionDescriptor:
        try:
            with metadata_file.open("rt") as fp:
                return parse_version(json.load(fp), version_id)
        except JSONDecodeError as e:
            raise ValueError(f"metadata: invalid json: {e}")


def merge(base: VersionDescriptor, overlay: VersionDescriptor) -> VersionDescriptor:
    """Merge an overlay descriptor (a child version) on top of a base one (its parent).
    Libraries are appended, argument templates are concatenated element-wise and the
    overlay's scalar fields win when defined. Duplicates are kept, and none of the given
    descriptors is modified.
    """

    desc = VersionDescriptor(overlay.id)
    desc.libraries = base.libraries + overlay.libraries
    desc.game_args = _merge_template(base.game_args, overlay.game_args)
    desc.jvm_args = _merge_template(base.jvm_args, overlay.jvm_args)

    for attr in ("type", "main_class", "java_component", "java_major_version", "client",
                 "asset_index", "assets", "logging", "inherits_from", "release_time"):
        value = getattr(overlay, attr)
        setattr(desc, attr, getattr(base, attr) if value is None else value)

    return desc


def _merge_template(base: Optional[ArgumentTemplate], overlay: Optional[ArgumentTemplate]) -> Optional[ArgumentTemplate]:
    if base is None:
        return None if overlay is None else ArgumentTemplate(list(overlay.elements))
    elif overlay is None:
        return ArgumentTemplate(list(base.elements))
    return base + overlay


def resolve_arguments(template: ArgumentTemplate, platform: PlatformInfo, features: Optional[Dict[str, bool]] = None) -> str:
    """Resolve an argument template into a single string. Literals are kept as-is, the
    values of allowed conditionals are emitted, each quoted when there are several.
    """
    parts = []
    for selected in template.select(platform, features):
        if isinstance(selected, str):
            parts.append(selected)
        elif len(selected) == 1:
            parts.append(selected[0])
        else:
            parts.append(" ".join(f'"{value}"' for value in selected))
    return " ".join(parts)


def expand_arguments(template: ArgumentTemplate, platform: PlatformInfo, features: Optional[Dict[str, bool]] = None) -> List[str]:
    """Resolve an argument template into a list of arguments, suitable for process
    creation where no quoting is needed.
    """
    args = []
    for selected in template.select(platform, features):
        if isinstance(selected, str):
            args.append(selected)
        else:
            args.extend(selected)
    return args


def write_atomic(path: Path, data: bytes) -> None:
    """Write a file through a temporary file in the same directory, then rename it, so
    that no reader can observe a partially written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid4().hex[:8]}.part")
    try:
        with tmp_path.open("wb") as fp:
            fp.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise


class VersionNotFoundError(Exception):
    """Raised when a version is neither installed nor listed by the manifest.
    """
    def __init__(self, version: str) -> None:
        self.version = version

    def __str__(self) -> str:
        return repr(self.version)

class TooMuchParentsError(Exception):
    """Raised when `inheritsFrom` chains more versions than allowed, `versions` holds
    the chain walked so far.
    """
    def __init__(self, versions: List[str]) -> None:
        self.versions = versions

    def __str__(self) -> str:
        return repr(self.versions)
