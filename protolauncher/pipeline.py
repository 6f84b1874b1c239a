"""The launch pipeline, sequencing every stage of a launch attempt strictly in order:
version, runtime, libraries, assets and finally the assembly of the launch plan.
"""

from datetime import timedelta
from subprocess import Popen
import logging
import shutil

from .fetcher import ArtifactFetcher, ResolvedAssets
from .version import VersionDirectory, VersionManifest, DEFAULT_MANIFEST_MAX_AGE
from .download import IntegrityError, DownloadCancelledError, DEFAULT_MAX_WORKERS
from .launch import LaunchAssembler, LaunchOptions, LaunchPlan
from .runtime import RuntimeResolver, ResolvedRuntime
from .progress import ProgressSink, CancelToken
from .context import Context, Endpoints
from .auth import Credential, CredentialBroker
from .metadata import VersionDescriptor
from .system import PlatformInfo

from typing import Optional, Callable, TypeVar, Any


logger = logging.getLogger(__name__)

T = TypeVar("T")


class Launcher:
    """Drive a launch attempt through all its stages. Each stage consumes the result of
    the previous one, any failure aborts the whole attempt with `LaunchAbortedError`
    naming the failing stage. A stage failing because of an integrity error is retried
    once, forcing its artifacts to be downloaded again.
    """

    STAGES = ("version", "runtime", "libraries", "assets", "assemble")

    def __init__(self,
        context: Optional[Context] = None, *,
        platform: Optional[PlatformInfo] = None,
        endpoints: Optional[Endpoints] = None,
        manifest: Optional[VersionManifest] = None,
        broker: Optional[CredentialBroker] = None,
        validate: bool = True,
        max_workers: int = DEFAULT_MAX_WORKERS,
        manifest_max_age: timedelta = DEFAULT_MANIFEST_MAX_AGE,
        retry_integrity: bool = True,
        retry_backoff: float = 0.5
    ) -> None:
        self.context = Context() if context is None else context
        self.platform = PlatformInfo.current() if platform is None else platform
        self.endpoints = Endpoints() if endpoints is None else endpoints
        self.broker = broker
        self.validate = validate
        self.max_workers = max_workers
        self.retry_integrity = retry_integrity
        self.retry_backoff = retry_backoff

        if manifest is None:
            manifest = VersionManifest(self.context.manifest_file, url=self.endpoints.version_manifest)

        self.directory = VersionDirectory(self.context, manifest,
            validate=validate,
            manifest_max_age=manifest_max_age)
        self.assembler = LaunchAssembler(self.context, self.platform)

    def prepare(self,
        version: str,
        credential: Optional[Credential],
        options: Optional[LaunchOptions] = None, *,
        sink: Optional[ProgressSink] = None,
        cancel: Optional[CancelToken] = None
    ) -> LaunchPlan:
        """Run every stage and return the launch plan.

        :raises LaunchAbortedError: If any stage fails.
        :raises LaunchCancelledError: If the cancel token is triggered.
        """

        options = LaunchOptions() if options is None else options
        sink = ProgressSink() if sink is None else sink
        features = options.features()

        fetcher = ArtifactFetcher(self.context, self.platform,
            endpoints=self.endpoints,
            validate=self.validate,
            max_workers=self.max_workers,
            cancel=cancel,
            retry_backoff=self.retry_backoff)

        runtime_resolver = RuntimeResolver(fetcher)

        def run(index: int, status: str, func: Callable[[bool], T]) -> T:
            return self._run_stage(index, status, func, sink, cancel)

        descriptor: VersionDescriptor = run(0, f"Resolving version {version}",
            lambda force: self.directory.resolve_version(version, force=force))

        runtime: ResolvedRuntime = run(1, "Resolving runtime",
            lambda force: runtime_resolver.resolve(descriptor, options.runtime_path, sink.progress, force=force))

        def resolve_libraries(force: bool) -> Any:
            client_jar = fetcher.resolve_client(descriptor, sink.progress, force=force)
            return client_jar, fetcher.resolve_libraries(descriptor, features, sink.progress, force=force)

        client_jar, libraries = run(2, "Resolving libraries", resolve_libraries)

        def assemble(_force: bool) -> LaunchPlan:
            fresh_credential = credential
            if credential is not None and self.broker is not None:
                fresh_credential = self.broker.ensure_fresh(credential)
            return self.assembler.assemble(descriptor, libraries, assets, fresh_credential, runtime.path, client_jar, options)

        try:
            assets: Optional[ResolvedAssets] = run(3, "Resolving assets",
                lambda force: fetcher.resolve_assets(descriptor, sink.progress, force=force))
            plan = run(4, "Assembling launch", assemble)
        except (LaunchAbortedError, LaunchCancelledError):
            # The natives of this attempt will never be used.
            shutil.rmtree(libraries.natives_dir, ignore_errors=True)
            raise

        sink.status("Ready to launch")
        return plan

    def launch(self,
        version: str,
        credential: Optional[Credential],
        options: Optional[LaunchOptions] = None, *,
        sink: Optional[ProgressSink] = None,
        cancel: Optional[CancelToken] = None
    ) -> Popen:
        """Prepare the launch and spawn the game, the returned process is owned by the
        caller.
        """
        return self.prepare(version, credential, options, sink=sink, cancel=cancel).spawn()

    def _run_stage(self,
        index: int,
        status: str,
        func: Callable[[bool], T],
        sink: ProgressSink,
        cancel: Optional[CancelToken]
    ) -> T:

        stage = self.STAGES[index]

        if cancel is not None and cancel.cancelled:
            raise LaunchCancelledError(stage)

        sink.step(index + 1, len(self.STAGES))
        sink.status(status)
        logger.debug("Entering stage %s", stage)

        try:
            try:
                return func(False)
            except IntegrityError as error:
                if not self.retry_integrity:
                    raise
                logger.warning("Integrity error in stage %s, retrying: %s", stage, error)
                return func(True)
        except DownloadCancelledError:
            raise LaunchCancelledError(stage)
        except Exception as error:
            raise LaunchAbortedError(stage, error) from error


class LaunchAbortedError(Exception):
    """Raised when a stage of the launch fails, the original error is given as cause.
    """
    def __init__(self, stage: str, cause: Exception) -> None:
        self.stage = stage
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.stage}: {type(self.cause).__name__}: {self.cause}"

class LaunchCancelledError(Exception):
    """Raised when a launch is cancelled, the stage being cancelled is given.
    """
    def __init__(self, stage: str) -> None:
        self.stage = stage

    def __str__(self) -> str:
        return repr(self.stage)
