"""Assembly of the process invocation of the game from all resolved parts.
"""

from subprocess import Popen
from pathlib import Path
import logging
import re

from .metadata import ArgumentTemplate, VersionDescriptor, Literal, parse_arguments
from .fetcher import ResolvedLibraries, ResolvedAssets
from .version import expand_arguments
from .system import PlatformInfo
from .context import Context
from .auth import Credential
from . import LAUNCHER_NAME, LAUNCHER_VERSION

from typing import Optional, List, Dict, Tuple, Any


logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\$\{([^}]+)\}")

LAUNCH_WRAPPER_MAIN_CLASS = "net.minecraft.launchwrapper.Launch"

# JVM arguments used if the version doesn't specify any.
LEGACY_JVM_ARGS = parse_arguments([
    {
        "rules": [{"action": "allow", "os": {"name": "osx"}}],
        "value": ["-XstartOnFirstThread"]
    },
    {
        "rules": [{"action": "allow", "os": {"name": "windows"}}],
        "value": "-XX:HeapDumpPath=MojangTricksIntelDriversForPerformance_javaw.exe_minecraft.exe.heapdump"
    },
    {
        "rules": [{"action": "allow", "os": {"name": "windows", "version": "^10\\."}}],
        "value": ["-Dos.name=Windows 10", "-Dos.version=10.0"]
    },
    "-Djava.library.path=${natives_directory}",
    "-Dminecraft.launcher.brand=${launcher_name}",
    "-Dminecraft.launcher.version=${launcher_version}",
    "-cp",
    "${classpath}"
], "<legacy_jvm_args>")


class LaunchOptions:
    """Caller-supplied overrides for a launch. Memory bounds are given in MiB and the
    resolution as a (width, height) tuple.
    """

    def __init__(self, *,
        runtime_path: Optional[Path] = None,
        jvm_args: Optional[List[str]] = None,
        game_args: Optional[List[str]] = None,
        resolution: Optional[Tuple[int, int]] = None,
        min_memory: Optional[int] = None,
        max_memory: Optional[int] = None,
        demo: bool = False,
        work_dir: Optional[Path] = None,
        launcher_name: str = LAUNCHER_NAME,
        launcher_version: str = LAUNCHER_VERSION
    ) -> None:
        self.runtime_path = runtime_path
        self.jvm_args = [] if jvm_args is None else jvm_args
        self.game_args = [] if game_args is None else game_args
        self.resolution = resolution
        self.min_memory = min_memory
        self.max_memory = max_memory
        self.demo = demo
        self.work_dir = work_dir
        self.launcher_name = launcher_name
        self.launcher_version = launcher_version

    def features(self) -> Dict[str, bool]:
        return {
            "is_demo_user": self.demo,
            "has_custom_resolution": self.resolution is not None
        }


class LaunchPlan:
    """A fully resolved process invocation, built fresh for each launch attempt.
    """

    __slots__ = "runtime", "classpath", "jvm_args", "main_class", "game_args", "work_dir", "natives_dir"

    def __init__(self,
        runtime: Path,
        classpath: List[Path],
        jvm_args: List[str],
        main_class: str,
        game_args: List[str],
        work_dir: Path,
        natives_dir: Optional[Path] = None
    ) -> None:
        self.runtime = runtime
        self.classpath = classpath
        self.jvm_args = jvm_args
        self.main_class = main_class
        self.game_args = game_args
        self.work_dir = work_dir
        self.natives_dir = natives_dir

    def command(self) -> List[str]:
        """Return the full command line, starting with the runtime binary.
        """
        return [str(self.runtime), *self.jvm_args, self.main_class, *self.game_args]

    def spawn(self, **popen_kwargs: Any) -> Popen:
        """Spawn the process from the working directory, the caller owns the returned
        process handle.
        """
        self.work_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("Spawning %s", self.command())
        return Popen(self.command(), cwd=self.work_dir, **popen_kwargs)

    def __repr__(self) -> str:
        return f"<LaunchPlan {self.main_class}, runtime: {self.runtime}>"


class LaunchAssembler:
    """Build the launch plan of a resolved version.
    """

    def __init__(self, context: Context, platform: PlatformInfo) -> None:
        self.context = context
        self.platform = platform

    def assemble(self,
        descriptor: VersionDescriptor,
        libraries: ResolvedLibraries,
        assets: Optional[ResolvedAssets],
        credential: Optional[Credential],
        runtime: Optional[Path],
        client_jar: Optional[Path],
        options: Optional[LaunchOptions] = None
    ) -> LaunchPlan:
        """Assemble the launch plan.

        :raises LaunchAssemblyError: If the main class, the client jar or the runtime
        is missing.
        """

        options = LaunchOptions() if options is None else options

        if descriptor.main_class is None:
            raise LaunchAssemblyError("main_class")
        if client_jar is None:
            raise LaunchAssemblyError("client_jar")

        runtime = runtime if options.runtime_path is None else options.runtime_path
        if runtime is None:
            raise LaunchAssemblyError("runtime")

        features = options.features()
        work_dir = self.context.work_dir if options.work_dir is None else options.work_dir
        classpath = [*libraries.class_libs, client_jar]

        # JVM arguments
        jvm_template = ArgumentTemplate()
        if options.min_memory is not None:
            jvm_template.elements.append(Literal("-Xms${min_memory}M"))
        if options.max_memory is not None:
            jvm_template.elements.append(Literal("-Xmx${max_memory}M"))
        jvm_template += LEGACY_JVM_ARGS if descriptor.jvm_args is None else descriptor.jvm_args

        jvm_args = expand_arguments(jvm_template, self.platform, features)

        if descriptor.logging is not None and assets is not None and assets.log_config is not None:
            jvm_args.append(descriptor.logging.argument.replace("${path}", str(assets.log_config.absolute())))

        if descriptor.main_class == LAUNCH_WRAPPER_MAIN_CLASS:
            jvm_args.append(f"-Dminecraft.client.jar={client_jar.absolute()}")

        jvm_args.extend(options.jvm_args)

        # Game arguments
        game_template = ArgumentTemplate() if descriptor.game_args is None else descriptor.game_args
        game_args = expand_arguments(game_template, self.platform, features)

        # The arguments do not support custom resolution.
        if options.resolution is not None and "has_custom_resolution" not in game_template.feature_names():
            game_args.extend(("--width", "${resolution_width}", "--height", "${resolution_height}"))

        if options.demo and "is_demo_user" not in game_template.feature_names():
            game_args.append("--demo")

        game_args.extend(options.game_args)

        replacements = self.replacements(descriptor, libraries, assets, credential, classpath, work_dir, options)

        return LaunchPlan(
            runtime,
            classpath,
            [substitute(arg, replacements) for arg in jvm_args],
            descriptor.main_class,
            [substitute(arg, replacements) for arg in game_args],
            work_dir,
            libraries.natives_dir)

    def replacements(self,
        descriptor: VersionDescriptor,
        libraries: ResolvedLibraries,
        assets: Optional[ResolvedAssets],
        credential: Optional[Credential],
        classpath: List[Path],
        work_dir: Path,
        options: LaunchOptions
    ) -> Dict[str, str]:
        """Compute the values of every known placeholder.
        """

        context = self.context

        if assets is None:
            assets_index_name = descriptor.assets_id or ""
            game_assets = context.assets_dir
        else:
            assets_index_name = assets.index_id
            game_assets = assets.virtual_dir or assets.resources_dir or assets.assets_dir

        replacements = {
            # Game
            "version_name": descriptor.id,
            "version_type": descriptor.type or "",
            "library_directory": str(context.libraries_dir.absolute()),
            "game_directory": str(work_dir.absolute()),
            "assets_root": str(context.assets_dir.absolute()),
            "assets_index_name": assets_index_name,
            "game_assets": str(game_assets.absolute()),
            # JVM
            "natives_directory": str(libraries.natives_dir.absolute()),
            "launcher_name": options.launcher_name,
            "launcher_version": options.launcher_version,
            "classpath_separator": self.platform.path_separator,
            "classpath": self.platform.path_separator.join(str(path.absolute()) for path in classpath),
        }

        if credential is not None:
            replacements.update({
                "auth_player_name": credential.username,
                "auth_uuid": credential.uuid,
                "auth_access_token": credential.access_token,
                "auth_session": f"token:{credential.access_token}:{credential.uuid}",
                "auth_xuid": credential.xuid,
                "clientid": credential.client_id,
                "user_type": credential.user_type,
                "user_properties": credential.user_properties,
            })
        else:
            replacements["user_properties"] = "{}"

        if options.resolution is not None:
            replacements["resolution_width"] = str(options.resolution[0])
            replacements["resolution_height"] = str(options.resolution[1])

        if options.min_memory is not None:
            replacements["min_memory"] = str(options.min_memory)
        if options.max_memory is not None:
            replacements["max_memory"] = str(options.max_memory)

        return replacements


def substitute(text: str, replacements: Dict[str, str]) -> str:
    """Replace all placeholders of the form `${foo}` in a single pass, unknown ones
    being replaced by an empty string.
    """
    return PLACEHOLDER_RE.sub(lambda m: replacements.get(m.group(1), ""), text)


class LaunchAssemblyError(Exception):
    """Raised when a required input of the launch is missing, it's given as a name.
    """
    def __init__(self, missing_input: str) -> None:
        self.missing_input = missing_input

    def __str__(self) -> str:
        return repr(self.missing_input)
