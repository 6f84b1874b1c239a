"""Installation context and remote endpoints used by all stages of the launcher.
"""

from pathlib import Path
from uuid import uuid4
import platform

from typing import Optional


VERSION_MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"
RESOURCES_URL = "https://resources.download.minecraft.net/"
LIBRARIES_URL = "https://libraries.minecraft.net/"
JVM_META_URL = "https://piston-meta.mojang.com/v1/products/java-runtime/2ec0cc96c44e5a76b9c8b7c39df7210883d12871/all.json"
YGGDRASIL_URL = "https://authserver.mojang.com/"
MS_AUTHORIZE_URL = "https://login.live.com/oauth20_authorize.srf"
MS_TOKEN_URL = "https://login.live.com/oauth20_token.srf"
XBL_AUTH_URL = "https://user.auth.xboxlive.com/user/authenticate"
XSTS_AUTH_URL = "https://xsts.auth.xboxlive.com/xsts/authorize"
MC_SERVICES_URL = "https://api.minecraftservices.com/"


class Context:
    """Directory layout of an installation. Versions, assets, libraries and runtimes live
    under the main directory, saves and natives under the work directory.
    """

    def __init__(self,
        main_dir: Optional[Path] = None,
        work_dir: Optional[Path] = None
    ) -> None:
        """:param main_dir: Installation root, the platform's usual `.minecraft` by default.
        :param work_dir: Directory the game runs from, the main directory by default.
        """

        main_dir = get_minecraft_dir() if main_dir is None else main_dir
        self.main_dir = main_dir
        self.work_dir = main_dir if work_dir is None else work_dir
        self.versions_dir = main_dir / "versions"
        self.assets_dir = main_dir / "assets"
        self.libraries_dir = main_dir / "libraries"
        self.jvm_dir = main_dir / "jvm"
        self.bin_dir = self.work_dir / "bin"
        self.manifest_file = main_dir / "version_manifest.json"

    def version_dir(self, version: str) -> Path:
        return self.versions_dir / version

    def version_metadata_file(self, version: str) -> Path:
        return self.versions_dir / version / f"{version}.json"

    def version_jar_file(self, version: str) -> Path:
        return self.versions_dir / version / f"{version}.jar"

    def gen_bin_dir(self) -> Path:
        """Fresh natives directory path for one launch attempt, not created here.
        """
        return self.bin_dir / str(uuid4())

    def __repr__(self) -> str:
        return f"<Context {self.main_dir}, work dir: {self.work_dir}>"


class Endpoints:
    """Remote URLs used by the launcher, each one can be overridden, for example to
    target a local mirror or a test server.
    """

    __slots__ = "version_manifest", "resources", "libraries", "jvm_meta", "yggdrasil", \
        "ms_authorize", "ms_token", "xbl_auth", "xsts_auth", "mc_services"

    def __init__(self, *,
        version_manifest: str = VERSION_MANIFEST_URL,
        resources: str = RESOURCES_URL,
        libraries: str = LIBRARIES_URL,
        jvm_meta: str = JVM_META_URL,
        yggdrasil: str = YGGDRASIL_URL,
        ms_authorize: str = MS_AUTHORIZE_URL,
        ms_token: str = MS_TOKEN_URL,
        xbl_auth: str = XBL_AUTH_URL,
        xsts_auth: str = XSTS_AUTH_URL,
        mc_services: str = MC_SERVICES_URL
    ) -> None:
        self.version_manifest = version_manifest
        self.resources = _with_slash(resources)
        self.libraries = _with_slash(libraries)
        self.jvm_meta = jvm_meta
        self.yggdrasil = _with_slash(yggdrasil)
        self.ms_authorize = ms_authorize
        self.ms_token = ms_token
        self.xbl_auth = xbl_auth
        self.xsts_auth = xsts_auth
        self.mc_services = _with_slash(mc_services)


def _with_slash(url: str) -> str:
    return url if url.endswith("/") else url + "/"


def get_minecraft_dir() -> Path:
    """Usual installation directory of the running platform.
    """
    home = Path.home()
    return {
        "Windows": home.joinpath("AppData", "Roaming", ".minecraft"),
        "Darwin": home.joinpath("Library", "Application Support", "minecraft"),
    }.get(platform.system(), home / ".minecraft")
