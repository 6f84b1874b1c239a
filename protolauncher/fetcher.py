"""Artifact fetcher, downloading and validating remote files into the local stores. It
also implements library, natives and assets resolution of a version descriptor.
"""

from zipfile import ZipFile, BadZipFile
from pathlib import Path
from uuid import uuid4
import logging
import shutil
import json
import os

from .download import DownloadEntry, IntegrityError, DownloadError, download_all, DEFAULT_MAX_WORKERS
from .metadata import Artifact, LibraryEntry, VersionDescriptor, AssetIndex, ExtractSpec, parse_asset_index
from .http import http_request, http_head_size, HttpError
from .util import calc_file_sha1, LibrarySpecifier
from .progress import CancelToken
from .context import Context, Endpoints, LIBRARIES_URL
from .system import PlatformInfo
from .rule import is_allowed

from typing import Optional, List, Dict, Tuple, Callable, Collection


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class ResolvedLibraries:
    """Result of the libraries resolution, class path libraries are given in declaration
    order and natives have already been extracted into the natives directory.
    """

    __slots__ = "class_libs", "native_libs", "natives_dir"

    def __init__(self, class_libs: List[Path], native_libs: List[Path], natives_dir: Path) -> None:
        self.class_libs = class_libs
        self.native_libs = native_libs
        self.natives_dir = natives_dir

    def __repr__(self) -> str:
        return f"<ResolvedLibraries class: {len(self.class_libs)}, natives: {len(self.native_libs)}>"


class ResolvedAssets:
    """Result of the assets resolution.
    """

    __slots__ = "index", "assets_dir", "objects", "virtual_dir", "resources_dir", "log_config"

    def __init__(self,
        index: AssetIndex,
        assets_dir: Path,
        objects: Dict[str, Path],
        virtual_dir: Optional[Path] = None,
        resources_dir: Optional[Path] = None,
        log_config: Optional[Path] = None
    ) -> None:
        self.index = index
        self.assets_dir = assets_dir
        self.objects = objects
        self.virtual_dir = virtual_dir
        self.resources_dir = resources_dir
        self.log_config = log_config

    @property
    def index_id(self) -> str:
        return self.index.id


class ArtifactFetcher:
    """Download and validate artifacts into the stores of a context.

    When validation is enabled (the default), every pre-existing file is hashed again
    before being reused, a mismatch raises `IntegrityError` unless the fetch is forced.
    Artifacts without a known sha1 can't be checked, they are downloaded again. When
    validation is disabled, existing files are trusted without being read.
    """

    def __init__(self,
        context: Context,
        platform: PlatformInfo, *,
        endpoints: Optional[Endpoints] = None,
        validate: bool = True,
        max_workers: int = DEFAULT_MAX_WORKERS,
        cancel: Optional[CancelToken] = None,
        retry_backoff: float = 0.5
    ) -> None:
        self.context = context
        self.platform = platform
        self.endpoints = Endpoints() if endpoints is None else endpoints
        self.validate = validate
        self.max_workers = max_workers
        self.cancel = cancel
        self.retry_backoff = retry_backoff

    def check(self, artifact: Artifact, dst: Path, *, force: bool = False) -> bool:
        """Check if the given destination can be reused for the artifact.

        :return: True if the file exists and can be used as-is, false if it has to be
        downloaded.
        :raises IntegrityError: If the file exists, validation is enabled, the fetch is
        not forced and its sha1 doesn't match.
        """

        if force or not dst.is_file():
            return False

        if not self.validate:
            return True
        if artifact.sha1 is None:
            logger.debug("No sha1 to check %s, downloading it again", artifact.id)
            return False

        actual_sha1 = calc_file_sha1(dst)
        if actual_sha1 == artifact.sha1.lower():
            return True

        raise IntegrityError(artifact.id, artifact.sha1, actual_sha1 or "")

    def fetch(self, artifact: Artifact, dst: Path, on_progress: Optional[ProgressCallback] = None, *,
        force: bool = False
    ) -> Path:
        """Fetch a single artifact to the given destination.

        :param on_progress: Optional callback called with `(done, total)` bytes, the total
        being probed with a HEAD request if the artifact has no declared size.
        :param force: Download even if the destination already exists.
        :return: The destination path.
        """

        if self.check(artifact, dst, force=force):
            return dst

        if artifact.url is None:
            raise DownloadError(artifact.url or "", "no download url", artifact.id)

        total = artifact.size
        if total is None and on_progress is not None:
            try:
                total = http_head_size(artifact.url)
            except HttpError as error:
                logger.debug("Failed to probe size of %s: %s", artifact.url, error)

        def progress(done: int, _total: int) -> None:
            if on_progress is not None:
                on_progress(done, max(done, total or 0))

        entry = DownloadEntry(artifact.url, dst, size=artifact.size, sha1=artifact.sha1, name=artifact.id)
        download_all([entry],
            max_workers=1,
            on_progress=None if on_progress is None else progress,
            cancel=self.cancel,
            retry_backoff=self.retry_backoff)

        return dst

    def fetch_all(self, jobs: List[Tuple[Artifact, Path]], on_progress: Optional[ProgressCallback] = None, *,
        force: bool = False,
        executables: Collection[Path] = ()
    ) -> None:
        """Fetch many artifacts as a single batch on the worker pool, the same reuse
        policy as `fetch` applies to each job. The first failure aborts the batch.
        """

        entries = []
        seen = set()

        for artifact, dst in jobs:

            if dst in seen:
                continue
            seen.add(dst)

            if self.check(artifact, dst, force=force):
                continue

            if artifact.url is None:
                raise DownloadError(artifact.url or "", "no download url", artifact.id)

            entries.append(DownloadEntry(artifact.url, dst,
                size=artifact.size,
                sha1=artifact.sha1,
                name=artifact.id,
                executable=dst in executables))

        download_all(entries,
            max_workers=self.max_workers,
            on_progress=on_progress,
            cancel=self.cancel,
            retry_backoff=self.retry_backoff)

    def resolve_client(self, descriptor: VersionDescriptor, on_progress: Optional[ProgressCallback] = None, *,
        force: bool = False
    ) -> Optional[Path]:
        """Fetch the client jar of the version, none if it has no client and no jar
        is installed.
        """

        jar_file = self.context.version_jar_file(descriptor.id)

        if descriptor.client is not None:
            return self.fetch(descriptor.client, jar_file, on_progress, force=force)
        elif jar_file.is_file():
            return jar_file

        return None

    def resolve_libraries(self, descriptor: VersionDescriptor,
        features: Optional[Dict[str, bool]] = None,
        on_progress: Optional[ProgressCallback] = None, *,
        force: bool = False
    ) -> ResolvedLibraries:
        """Fetch every library of the descriptor allowed on this platform, then extract
        natives into a new natives directory.

        :raises LibraryNotFoundError: If a library has no download and isn't installed.
        """

        libraries_dir = self.context.libraries_dir
        class_libs: List[Path] = []
        native_libs: List[Tuple[Path, Optional[ExtractSpec]]] = []
        jobs: List[Tuple[Artifact, Path]] = []

        for lib in descriptor.libraries:

            if not is_allowed(lib.rules, self.platform, features):
                logger.debug("Library %s excluded by its rules", lib.spec)
                continue

            if lib.artifact is not None or lib.natives is None:
                artifact = self._library_artifact(lib, lib.spec, lib.artifact)
                lib_path = libraries_dir / (lib.spec.file_path() if artifact is None or artifact.path is None else artifact.path)
                if artifact is None:
                    if not lib_path.is_file():
                        raise LibraryNotFoundError(lib.spec)
                else:
                    jobs.append((artifact, lib_path))
                class_libs.append(lib_path)

            if lib.natives is not None:

                classifier = lib.native_classifier(self.platform)
                if classifier is None:
                    logger.debug("Library %s has no natives for %s", lib.spec, self.platform.os_name)
                    continue

                native_spec = lib.spec.with_classifier(classifier)
                if len(lib.classifiers):
                    native_artifact = lib.classifiers.get(classifier)
                    if native_artifact is None:
                        logger.debug("Library %s has no classifier %s, no natives", lib.spec, classifier)
                        continue
                    native_artifact = self._library_artifact(lib, native_spec, native_artifact)
                else:
                    native_artifact = self._library_artifact(lib, native_spec, None)

                native_path = libraries_dir / (native_spec.file_path() if native_artifact is None or native_artifact.path is None else native_artifact.path)
                if native_artifact is None:
                    if not native_path.is_file():
                        raise LibraryNotFoundError(native_spec)
                else:
                    jobs.append((native_artifact, native_path))
                native_libs.append((native_path, lib.extract))

        self.fetch_all(jobs, on_progress, force=force)

        natives_dir = self.context.gen_bin_dir()
        natives_dir.mkdir(parents=True, exist_ok=True)
        try:
            for native_path, extract in native_libs:
                extract_natives(native_path, natives_dir, extract)
        except Exception:
            shutil.rmtree(natives_dir, ignore_errors=True)
            raise

        logger.debug("Resolved %d class libraries and %d natives for %s", len(class_libs), len(native_libs), descriptor.id)
        return ResolvedLibraries(class_libs, [path for path, _ in native_libs], natives_dir)

    def _library_artifact(self, lib: LibraryEntry, spec: LibrarySpecifier, artifact: Optional[Artifact]) -> Optional[Artifact]:
        """Return the artifact to download for a library, falling back to the library's
        maven repository if the artifact has no URL. Official URLs are redirected to
        the libraries endpoint if overridden. None if no download is possible.
        """

        if artifact is not None and artifact.url is not None:
            if artifact.url.startswith(LIBRARIES_URL) and self.endpoints.libraries != LIBRARIES_URL:
                mirror_url = self.endpoints.libraries + artifact.url[len(LIBRARIES_URL):]
                return Artifact(mirror_url, artifact.sha1, artifact.size, artifact.path)
            return artifact

        if lib.url is None or not len(lib.url):
            return None

        repo_url = lib.url if lib.url.endswith("/") else lib.url + "/"
        rel_path = spec.file_path()
        url = f"{repo_url}{rel_path}"

        sha1 = None if artifact is None else artifact.sha1
        if sha1 is None:
            sha1 = self._maven_sha1(url)

        return Artifact(url, sha1, None if artifact is None else artifact.size, rel_path)

    def _maven_sha1(self, url: str) -> Optional[str]:
        """Read the sha1 of a maven artifact from its '.sha1' sidecar file.
        """
        try:
            text = http_request("GET", f"{url}.sha1").text().strip()
        except HttpError as error:
            logger.warning("No sha1 available for %s: %s", url, error)
            return None
        # Some repositories append the file name after the hash.
        sha1 = text.split()[0] if len(text) else ""
        return sha1.lower() if len(sha1) == 40 else None

    def resolve_assets(self, descriptor: VersionDescriptor,
        on_progress: Optional[ProgressCallback] = None, *,
        force: bool = False
    ) -> Optional[ResolvedAssets]:
        """Fetch the asset index of the version and every object it references into the
        content-addressed store, then mirror them into legacy layouts if required. None
        is returned if the version has no assets.
        """

        assets_id = descriptor.assets_id
        if descriptor.asset_index is None or assets_id is None:
            logger.debug("Version %s has no asset index", descriptor.id)
            return None

        assets_dir = self.context.assets_dir
        index_file = assets_dir / "indexes" / f"{assets_id}.json"
        self.fetch(descriptor.asset_index, index_file, force=force)

        try:
            with index_file.open("rb") as index_fp:
                index = parse_asset_index(json.load(index_fp), assets_id)
        except json.JSONDecodeError as e:
            raise ValueError(f"assets index: invalid json: {e}")

        objects_dir = assets_dir / "objects"
        objects: Dict[str, Path] = {}
        jobs: List[Tuple[Artifact, Path]] = []

        for asset_id, asset_obj in index.objects.items():
            asset_path = asset_obj.path
            asset_file = objects_dir / asset_path
            objects[asset_id] = asset_file
            jobs.append((Artifact(f"{self.endpoints.resources}{asset_path}", asset_obj.hash, asset_obj.size, asset_id), asset_file))

        log_config = None
        if descriptor.logging is not None:
            log_config = assets_dir / "log_configs" / descriptor.logging.file_id
            jobs.append((descriptor.logging.artifact, log_config))

        self.fetch_all(jobs, on_progress, force=force)

        virtual_dir = assets_dir.joinpath("virtual", index.id) if index.virtual else None
        resources_dir = self.context.work_dir / "resources" if index.map_to_resources else None

        for mirror_dir in (virtual_dir, resources_dir):
            if mirror_dir is not None:
                for asset_id, asset_file in objects.items():
                    mirror_file(asset_file, mirror_dir / asset_id)

        logger.debug("Resolved %d assets for index %s", len(objects), index.id)
        return ResolvedAssets(index, assets_dir, objects, virtual_dir, resources_dir, log_config)


def extract_natives(archive: Path, dst_dir: Path, extract: Optional[ExtractSpec]) -> List[Path]:
    """Extract a natives archive into the destination directory, honoring the given
    extraction spec. Entries escaping the destination directory are ignored.

    :return: The list of extracted files.
    """

    dst_root = dst_dir.resolve()
    extracted = []

    try:
        with ZipFile(archive, "r") as native_zip:
            for info in native_zip.infolist():

                name = info.filename
                if info.is_dir():
                    continue
                if extract is not None and not extract.accept(name):
                    continue

                dst_file = (dst_root / name).resolve()
                if dst_root not in dst_file.parents:
                    logger.warning("Ignoring natives entry outside of its directory: %s", name)
                    continue

                dst_file.parent.mkdir(parents=True, exist_ok=True)
                with native_zip.open(info, "r") as src_fp:
                    with dst_file.open("wb") as dst_fp:
                        shutil.copyfileobj(src_fp, dst_fp)
                extracted.append(dst_file)
    except BadZipFile as e:
        raise ValueError(f"invalid natives archive {archive}: {e}")

    return extracted


def mirror_file(src: Path, dst: Path) -> None:
    """Make the source file available at the destination, with a hard link if possible
    or a copy otherwise. Existing destination with the same size is kept.
    """

    if dst.is_file() and dst.stat().st_size == src.stat().st_size:
        return

    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp_dst = dst.with_name(f".{dst.name}.{uuid4().hex[:8]}.part")

    try:
        try:
            os.link(src, tmp_dst)
        except OSError:
            shutil.copyfile(src, tmp_dst)
        os.replace(tmp_dst, dst)
    except OSError:
        try:
            tmp_dst.unlink()
        except FileNotFoundError:
            pass
        raise


class LibraryNotFoundError(Exception):
    """Critical error raised when a library has no download indication and is not
    currently installed in game's libraries.
    """
    def __init__(self, lib: LibrarySpecifier) -> None:
        self.lib = lib

    def __str__(self) -> str:
        return repr(self.lib)
