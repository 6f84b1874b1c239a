"""Platform information as used by the game's metadata (rules, natives, runtimes).
"""

import platform
import os

from typing import Optional


# Name of the OS has used by Minecraft, from Python's system name.
_MINECRAFT_OS = {
    "Linux": "linux",
    "Windows": "windows",
    "Darwin": "osx",
    "FreeBSD": "freebsd"
}

# Name of the processor's architecture has used by Minecraft.
_MINECRAFT_ARCH = {
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "armv7l": "arm32",
    "armv6l": "arm32",
}

# Name of the OS has used by Mojang for officially distributed runtimes.
_MINECRAFT_JVM_OS = {
    "osx": {"x86_64": "mac-os", "arm64": "mac-os-arm64"},
    "linux": {"x86": "linux-i386", "x86_64": "linux"},
    "windows": {"x86": "windows-x86", "x86_64": "windows-x64", "arm64": "windows-arm64"}
}


class PlatformInfo:
    """Facts about the running platform, used to evaluate rules and select native
    libraries. An instance is usually computed once with `current()` and then given
    explicitly to the components that need it, tests can build arbitrary ones.
    """

    __slots__ = "os_name", "os_version", "arch", "arch_bits", "path_separator"

    def __init__(self,
        os_name: Optional[str],
        os_version: str,
        arch: Optional[str],
        arch_bits: Optional[int],
        path_separator: str = os.pathsep
    ) -> None:
        self.os_name = os_name
        self.os_version = os_version
        self.arch = arch
        self.arch_bits = arch_bits
        self.path_separator = path_separator

    @classmethod
    def current(cls) -> "PlatformInfo":
        return cls(
            _MINECRAFT_OS.get(platform.system()),
            platform.version(),
            _MINECRAFT_ARCH.get(platform.machine().lower()),
            {"64bit": 64, "32bit": 32}.get(platform.architecture()[0]),
            os.pathsep)

    @property
    def jvm_os(self) -> Optional[str]:
        """Name of this platform in Mojang's runtime manifest, none if no official
        runtime is distributed for it.
        """
        if self.arch is None:
            return None
        return _MINECRAFT_JVM_OS.get(self.os_name or "", {}).get(self.arch)

    @property
    def jvm_bin_filename(self) -> str:
        return "javaw.exe" if self.os_name == "windows" else "java"

    def __repr__(self) -> str:
        return f"<PlatformInfo {self.os_name} {self.arch} ({self.arch_bits} bits), version: {self.os_version}>"
