"""Resolution of the Java runtime used to run the game, either given by the caller,
installed from Mojang's official runtimes or found on the system.
"""

from subprocess import Popen, TimeoutExpired, PIPE, STDOUT
from json import JSONDecodeError
from pathlib import Path
import platform as sys_platform
import logging
import shutil
import json
import os

from .fetcher import ArtifactFetcher, ProgressCallback
from .metadata import VersionDescriptor, parse_artifact
from .version import write_atomic
from .http import http_request

from typing import Optional


logger = logging.getLogger(__name__)


class ResolvedRuntime:
    __slots__ = "path", "version", "kind"

    MOJANG = "mojang"
    BUILTIN = "builtin"
    CUSTOM = "custom"

    def __init__(self, path: Path, version: Optional[str], kind: str) -> None:
        self.path = path
        self.version = version
        self.kind = kind

    def __repr__(self) -> str:
        return f"<ResolvedRuntime {self.kind} {self.version}: {self.path}>"


class RuntimeResolver:
    """Resolve a runtime suitable for a version descriptor. Mojang's runtimes are
    installed in the context's jvm directory, one directory per component.
    """

    def __init__(self, fetcher: ArtifactFetcher) -> None:
        self.fetcher = fetcher

    def resolve(self, descriptor: VersionDescriptor,
        override: Optional[Path] = None,
        on_progress: Optional[ProgressCallback] = None, *,
        force: bool = False
    ) -> ResolvedRuntime:
        """Resolve the runtime, the override path has precedence if given.

        :raises RuntimeNotFoundError: If no runtime can be found.
        """

        if override is not None:
            return ResolvedRuntime(override, None, ResolvedRuntime.CUSTOM)

        platform = self.fetcher.platform
        major_version = descriptor.java_major_version

        if platform.os_name == "linux" and sys_platform.libc_ver()[0] not in ("glibc", ""):
            return self.resolve_builtin(RuntimeNotFoundError.UNSUPPORTED_LIBC, major_version)

        jvm_os = platform.jvm_os
        if jvm_os is None:
            return self.resolve_builtin(RuntimeNotFoundError.UNSUPPORTED_ARCH, major_version)

        context = self.fetcher.context
        component = descriptor.java_component or "jre-legacy"
        jvm_dir = context.jvm_dir / component

        manifest = self._load_manifest(jvm_os, component, context.jvm_dir / f"{component}.json")
        if manifest is None:
            return self.resolve_builtin(RuntimeNotFoundError.UNSUPPORTED_VERSION, major_version)

        self._install(manifest, component, jvm_dir, on_progress, force=force)

        if platform.os_name == "osx":
            java_path = jvm_dir / "jre.bundle" / "Contents" / "Home" / "bin" / "java"
        else:
            java_path = jvm_dir / "bin" / platform.jvm_bin_filename

        version = manifest.get("version")
        logger.debug("Using Mojang runtime %s %s", component, version)
        return ResolvedRuntime(java_path, version, ResolvedRuntime.MOJANG)

    def _load_manifest(self, jvm_os: str, component: str, cache_file: Path) -> Optional[dict]:
        """Return the files manifest of a runtime component, from its cache file if
        present. None if the component isn't distributed for this platform.
        """

        try:
            with cache_file.open("rt") as cache_fp:
                cached = json.load(cache_fp)
            if isinstance(cached, dict):
                return cached
        except (OSError, JSONDecodeError) as e:
            logger.debug("No usable runtime manifest at %s: %s", cache_file, e)

        index = http_request("GET", self.fetcher.endpoints.jvm_meta, accept="application/json").json()
        if not isinstance(index, dict):
            raise ValueError("runtime index: / must be an object")

        platform_index = index.get(jvm_os)
        releases = platform_index.get(component) if isinstance(platform_index, dict) else None
        if not isinstance(releases, list) or not len(releases) or not isinstance(releases[0], dict):
            logger.debug("No runtime %s for %s", component, jvm_os)
            return None

        release = releases[0]
        manifest_info = release.get("manifest")
        manifest_url = manifest_info.get("url") if isinstance(manifest_info, dict) else None
        if not isinstance(manifest_url, str):
            raise ValueError(f"runtime index: /{jvm_os}/{component}/0/manifest/url must be a string")

        manifest = http_request("GET", manifest_url, accept="application/json").json()
        if not isinstance(manifest, dict):
            raise ValueError(f"runtime manifest {component}: / must be an object")

        version = release.get("version")
        manifest["version"] = version.get("name") if isinstance(version, dict) else None
        write_atomic(cache_file, json.dumps(manifest).encode())
        return manifest

    def _install(self, manifest: dict, component: str, jvm_dir: Path,
        on_progress: Optional[ProgressCallback], *,
        force: bool
    ) -> None:
        """Download the regular files of the runtime, then create its links.
        """

        files = manifest.get("files")
        if not isinstance(files, dict):
            raise ValueError(f"runtime manifest {component}: /files must be an object")

        jobs = []
        executables = set()
        links = []

        for name, info in files.items():
            if not isinstance(info, dict):
                raise ValueError(f"runtime manifest {component}: /files/{name} must be an object")
            kind = info.get("type")
            if kind == "file":
                file_path = jvm_dir / name
                artifact = parse_artifact(info.get("downloads", {}).get("raw"),
                    f"runtime manifest {component}: /files/{name}/downloads/raw",
                    rel_path=f"{component}/{name}")
                jobs.append((artifact, file_path))
                if info.get("executable", False):
                    executables.add(file_path)
            elif kind == "link":
                target = info.get("target")
                if not isinstance(target, str):
                    raise ValueError(f"runtime manifest {component}: /files/{name}/target must be a string")
                links.append((name, target))

        self.fetcher.fetch_all(jobs, on_progress, force=force, executables=executables)

        for name, target in links:
            _install_link(jvm_dir, name, target)

    def resolve_builtin(self, reason: str, major_version: Optional[int]) -> ResolvedRuntime:
        """Find the runtime installed on the system, the reason why this is needed is
        given in parameter. The expected major version is also given, it should not be
        none because we cannot check builtin version otherwise.
        """

        if major_version is None:
            raise RuntimeNotFoundError(reason)

        builtin_path = shutil.which(self.fetcher.platform.jvm_bin_filename) or shutil.which("java")
        if builtin_path is None:
            raise RuntimeNotFoundError(reason)

        try:
            process = Popen([builtin_path, "-version"], bufsize=1, stdout=PIPE, stderr=STDOUT, universal_newlines=True)
            stdout, _stderr = process.communicate(timeout=5)
            version = parse_java_version(stdout, major_version)
        except (OSError, TimeoutExpired, ValueError):
            raise RuntimeNotFoundError(RuntimeNotFoundError.BUILTIN_INVALID_VERSION)

        logger.warning("Using builtin runtime %s at %s (%s)", version, builtin_path, reason)
        return ResolvedRuntime(Path(builtin_path), version, ResolvedRuntime.BUILTIN)


def _install_link(jvm_dir: Path, name: str, target: str) -> None:
    """Create a relative symbolic link of the runtime. Links resolving outside of the
    runtime directory are ignored.
    """

    root = os.path.normpath(jvm_dir)
    link_path = jvm_dir / name
    resolved = os.path.normpath(os.path.join(link_path.parent, target))
    if os.path.commonpath([resolved, root]) != root:
        logger.warning("Ignoring runtime link %s outside of its directory: %s", name, target)
        return

    if link_path.is_symlink():
        if os.readlink(link_path) == target:
            return
        link_path.unlink()
    elif link_path.is_file():
        link_path.unlink()

    link_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.symlink(target, link_path)
    except OSError as e:
        # Symbolic links may require privileges on Windows.
        logger.warning("Failed to link runtime file %s to %s: %s", name, target, e)


def parse_java_version(output: str, major_version: int) -> str:
    """Find the full version matching the expected major version in the output of
    `java -version`.

    :raises ValueError: If the expected version is not found.
    """

    version_start = output.index(f"1.{major_version}" if major_version <= 8 else str(major_version))

    # Keep the digits, dots and underscores that follow.
    end = version_start
    while end < len(output) and (output[end].isnumeric() or output[end] in (".", "_")):
        end += 1

    return output[version_start:end]


class RuntimeNotFoundError(Exception):
    """Raised if no runtime can be found, the particular reason is given as code. This
    error is raised only if no builtin runtime can be resolved.
    """

    UNSUPPORTED_LIBC = "unsupported_libc"
    UNSUPPORTED_ARCH = "unsupported_arch"
    UNSUPPORTED_VERSION = "unsupported_version"
    BUILTIN_INVALID_VERSION = "builtin_invalid_version"

    def __init__(self, code: str) -> None:
        self.code = code

    def __str__(self) -> str:
        return repr(self.code)
