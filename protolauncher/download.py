"""Bounded multi-threaded download engine.

Each worker thread owns its connections and its read buffer. A file is streamed into a
temporary sibling of its destination, checked against the expected size and sha1, and
only then renamed over the destination. The calling thread is the only one to consume
results, so callbacks never run on a worker.
"""

from http.client import HTTPConnection, HTTPSConnection, HTTPException
from threading import Thread, Event
from pathlib import Path
from queue import Queue, Empty
from uuid import uuid4
import urllib.parse
import logging
import hashlib
import time
import os

from .http import ssl_context, USER_AGENT, DEFAULT_TIMEOUT
from .progress import CancelToken

from typing import Optional, Dict, List, Tuple, Union, Iterator, Callable


logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8
BUFFER_SIZE = 65536
REDIRECT_STATUSES = (301, 302, 303, 307, 308)
MAX_REDIRECTS = 5


class DownloadEntry:
    """A file to download, with its optional expected size and sha1. The name is only
    used in errors and logs, it defaults to the URL.
    """

    __slots__ = "url", "dst", "size", "sha1", "name", "executable"

    def __init__(self,
        url: str,
        dst: Path, *,
        size: Optional[int] = None,
        sha1: Optional[str] = None,
        name: Optional[str] = None,
        executable: bool = False
    ) -> None:
        self.url = url
        self.dst = dst
        self.size = size
        self.sha1 = sha1
        self.name = name or url
        self.executable = executable

    def redirected(self, url: str) -> "DownloadEntry":
        """Return the same entry downloaded from another URL.
        """
        return DownloadEntry(url, self.dst,
            size=self.size,
            sha1=self.sha1,
            name=self.name,
            executable=self.executable)

    def _key(self) -> tuple:
        return self.url, self.dst, self.size, self.sha1

    def __eq__(self, other) -> bool:
        return isinstance(other, DownloadEntry) and self._key() == other._key()

    def __hash__(self) -> int:
        # Entries are used as keys while downloading, don't modify them meanwhile.
        return hash(self._key())

    def __repr__(self) -> str:
        return f"<DownloadEntry {self.name} -> {self.dst}>"


class _Target:
    """An entry with its URL already split for the connection.
    """

    __slots__ = "https", "host", "port", "path", "entry", "redirects"

    def __init__(self, https: bool, host: str, port: Optional[int], path: str, entry: DownloadEntry, redirects: int = 0) -> None:
        self.https = https
        self.host = host
        self.port = port
        self.path = path
        self.entry = entry
        self.redirects = redirects

    @property
    def conn_key(self) -> Tuple[bool, str, Optional[int]]:
        return self.https, self.host, self.port

    @property
    def weight(self) -> int:
        # Unknown sizes weigh 1 MiB.
        return self.entry.size or 1048576

    @classmethod
    def parse(cls, entry: DownloadEntry, redirects: int = 0) -> "_Target":
        """:raises ValueError: If the URL is not HTTP(S).
        """

        parsed = urllib.parse.urlparse(entry.url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError(f"unsupported url {entry.url}, only http and https are supported")

        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"

        return cls(parsed.scheme == "https", parsed.hostname, parsed.port, path, entry, redirects)


class DownloadResult:
    """Something that happened to an entry, sent by a worker.
    """
    __slots__ = "thread_id", "entry"
    def __init__(self, thread_id: int, entry: DownloadEntry) -> None:
        self.thread_id = thread_id
        self.entry = entry


class DownloadResultProgress(DownloadResult):
    """Bytes received for an entry. When `done` is true, the entry has been fully
    downloaded, validated and moved to its destination.
    """
    __slots__ = "size", "done"
    def __init__(self, thread_id: int, entry: DownloadEntry, size: int, done: bool) -> None:
        super().__init__(thread_id, entry)
        self.size = size
        self.done = done


class DownloadResultError(DownloadResult):
    """Final failure of an entry. The origin is the exception behind a connection error
    and `actual` the size or sha1 that was received instead of the expected one.
    """

    CONNECTION = "connection"
    NOT_FOUND = "not_found"
    INVALID_SIZE = "invalid_size"
    INVALID_SHA1 = "invalid_sha1"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    CANCELLED = "cancelled"

    __slots__ = "code", "origin", "actual"

    def __init__(self, thread_id: int, entry: DownloadEntry, code: str,
        origin: Optional[Exception] = None,
        actual: Optional[str] = None
    ) -> None:
        super().__init__(thread_id, entry)
        self.code = code
        self.origin = origin
        self.actual = actual


class DownloadList:
    """Entries to download together on a pool of worker threads.
    """

    __slots__ = "targets", "count", "size"

    def __init__(self) -> None:
        self.targets: List[_Target] = []
        self.count = 0
        self.size = 0

    def add(self, entry: DownloadEntry) -> None:
        """:raises ValueError: If the entry's URL is not supported.
        """
        self.targets.append(_Target.parse(entry))
        self.count += 1
        self.size += entry.size or 0

    def download(self, threads_count: int, *,
        partial_progress: bool = False,
        cancel: Optional[CancelToken] = None,
        max_try_count: int = 3,
        retry_backoff: float = 0.5,
        timeout: float = DEFAULT_TIMEOUT
    ) -> Iterator[Tuple[int, List[DownloadResult]]]:
        """Download every entry, yielding the number of finished entries along with the
        results received since the previous iteration. Leaving the iteration before the
        end stops the workers after their current entry.

        :param partial_progress: Also send progress results for unfinished entries.
        :param cancel: Token checked by the workers before each chunk.
        :param max_try_count: Number of tries of an entry before giving up.
        :param retry_backoff: Delay before the second try, doubled for each next try.
        """

        if not self.count or threads_count < 1:
            return

        # Biggest files first, so that workers don't end up waiting on a single one.
        self.targets.sort(key=lambda target: target.weight, reverse=True)

        targets: "Queue[Optional[_Target]]" = Queue()
        results: "Queue[Union[DownloadResult, _WorkerCrash]]" = Queue()
        options = _Options(partial_progress, Event(), cancel, max_try_count, retry_backoff, timeout)

        workers_count = min(threads_count, self.count)
        for worker_id in range(workers_count):
            _Worker(worker_id, targets, results, options).start()

        for target in self.targets:
            targets.put(target)

        finished = 0
        crash: Optional[_WorkerCrash] = None

        try:
            while finished < self.count and crash is None:

                pending = [results.get()]
                while True:
                    try:
                        pending.append(results.get_nowait())
                    except Empty:
                        break

                batch: List[DownloadResult] = []
                for result in pending:
                    if isinstance(result, _WorkerCrash):
                        crash = result
                        break
                    if isinstance(result, DownloadResultError) or result.done:  # type: ignore
                        finished += 1
                    batch.append(result)

                if crash is None:
                    yield finished, batch

        finally:
            if finished < self.count:
                options.abort.set()
            # One sentinel per worker, they are daemon threads and are not joined.
            for _ in range(workers_count):
                targets.put(None)

        if crash is not None:
            raise ValueError(f"download worker {crash.thread_id} crashed", crash.origin)


class _Options:
    __slots__ = "partial_progress", "abort", "cancel", "max_try_count", "retry_backoff", "timeout"
    def __init__(self, partial_progress: bool, abort: Event, cancel: Optional[CancelToken],
        max_try_count: int, retry_backoff: float, timeout: float
    ) -> None:
        self.partial_progress = partial_progress
        self.abort = abort
        self.cancel = cancel
        self.max_try_count = max_try_count
        self.retry_backoff = retry_backoff
        self.timeout = timeout

    def stopped(self) -> bool:
        return self.abort.is_set() or (self.cancel is not None and self.cancel.cancelled)


class _WorkerCrash:
    """Sent by a worker that raised an unexpected exception.
    """
    __slots__ = "thread_id", "origin"
    def __init__(self, thread_id: int, origin: Exception) -> None:
        self.thread_id = thread_id
        self.origin = origin


class _Worker(Thread):
    """Download targets from the queue until a None sentinel is received.
    """

    def __init__(self, thread_id: int, targets: Queue, results: Queue, options: _Options) -> None:
        super().__init__(name=f"Download Worker {thread_id}", daemon=True)
        self.thread_id = thread_id
        self.targets = targets
        self.results = results
        self.options = options
        self.connections: Dict[Tuple[bool, str, Optional[int]], Union[HTTPConnection, HTTPSConnection]] = {}
        self.buffer = memoryview(bytearray(BUFFER_SIZE))
        self.ssl_context = ssl_context()

    def run(self) -> None:
        try:
            while True:
                target = self.targets.get()
                if target is None:
                    break
                result = self._process(target)
                if result is not None:
                    self.results.put(result)
        except Exception as e:
            self.results.put(_WorkerCrash(self.thread_id, e))
        finally:
            for conn in self.connections.values():
                conn.close()

    def _process(self, target: _Target) -> Optional[DownloadResult]:
        """Try to download a target, return its final result or none if it has been
        redirected to another target.
        """

        entry = target.entry
        options = self.options
        failure: Optional[DownloadResultError] = None

        for try_index in range(options.max_try_count):

            if try_index and options.retry_backoff > 0:
                time.sleep(options.retry_backoff * (2 ** (try_index - 1)))

            if options.stopped():
                return DownloadResultError(self.thread_id, entry, DownloadResultError.CANCELLED)

            tmp_dst = entry.dst.with_name(f".{entry.dst.name}.{uuid4().hex[:8]}.part")

            try:
                result = self._try(target, tmp_dst)
            except (OSError, HTTPException) as e:
                self._drop_connection(target)
                result = DownloadResultError(self.thread_id, entry, DownloadResultError.CONNECTION, e)

            if not isinstance(result, DownloadResultError):
                return result

            _unlink(tmp_dst)
            if result.code == DownloadResultError.CANCELLED:
                return result

            logger.debug("Download try %d of %s failed: %s", try_index + 1, entry.name, result.code)
            failure = result

        return failure

    def _try(self, target: _Target, tmp_dst: Path) -> Optional[DownloadResult]:

        entry = target.entry
        conn = self._connection(target)
        conn.request("GET", target.path, headers={"User-Agent": USER_AGENT})
        res = conn.getresponse()

        if res.status != 200:

            # Consume the body to keep the connection usable.
            while res.readinto(self.buffer):
                pass

            location = res.headers.get("location")
            if res.status in REDIRECT_STATUSES and location is not None:
                return self._redirect(target, location)

            return DownloadResultError(self.thread_id, entry, DownloadResultError.NOT_FOUND)

        sha1 = hashlib.sha1()
        size = 0
        cancelled = False

        entry.dst.parent.mkdir(parents=True, exist_ok=True)
        with tmp_dst.open("wb") as tmp_fp:
            while True:

                if self.options.stopped():
                    cancelled = True
                    break

                read_len = res.readinto(self.buffer)
                if not read_len:
                    break

                chunk = self.buffer[:read_len]
                sha1.update(chunk)
                tmp_fp.write(chunk)
                size += read_len

                if self.options.partial_progress and read_len == BUFFER_SIZE:
                    self.results.put(DownloadResultProgress(self.thread_id, entry, size, False))

        if cancelled:
            # The response is only partially read.
            self._drop_connection(target)
            return DownloadResultError(self.thread_id, entry, DownloadResultError.CANCELLED)

        if entry.size is not None and size != entry.size:
            return DownloadResultError(self.thread_id, entry, DownloadResultError.INVALID_SIZE, actual=str(size))

        actual_sha1 = sha1.hexdigest()
        if entry.sha1 is not None and actual_sha1 != entry.sha1.lower():
            return DownloadResultError(self.thread_id, entry, DownloadResultError.INVALID_SHA1, actual=actual_sha1)

        if entry.executable:
            # Executable by those who can read it.
            mode = tmp_dst.stat().st_mode
            tmp_dst.chmod(mode | ((mode & 0o444) >> 2))

        os.replace(tmp_dst, entry.dst)
        return DownloadResultProgress(self.thread_id, entry, size, True)

    def _redirect(self, target: _Target, location: str) -> Optional[DownloadResult]:
        """Queue the target again at its new location, none is returned unless the
        redirect can't be followed.
        """

        entry = target.entry
        if target.redirects >= MAX_REDIRECTS:
            return DownloadResultError(self.thread_id, entry, DownloadResultError.TOO_MANY_REDIRECTS)

        redirect_url = urllib.parse.urljoin(entry.url, location)
        try:
            redirect_target = _Target.parse(entry.redirected(redirect_url), target.redirects + 1)
        except ValueError as e:
            return DownloadResultError(self.thread_id, entry, DownloadResultError.CONNECTION, e)

        self.targets.put(redirect_target)
        return None

    def _connection(self, target: _Target) -> Union[HTTPConnection, HTTPSConnection]:
        conn = self.connections.get(target.conn_key)
        if conn is None:
            if target.https:
                conn = HTTPSConnection(target.host, target.port, context=self.ssl_context, timeout=self.options.timeout)
            else:
                conn = HTTPConnection(target.host, target.port, timeout=self.options.timeout)
            self.connections[target.conn_key] = conn
        return conn

    def _drop_connection(self, target: _Target) -> None:
        conn = self.connections.pop(target.conn_key, None)
        if conn is not None:
            conn.close()


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def download_all(entries: List[DownloadEntry], *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    on_progress: Optional[Callable[[int, int], None]] = None,
    cancel: Optional[CancelToken] = None,
    retry_backoff: float = 0.5
) -> None:
    """Download every given entry on a bounded pool of workers. The progress callback
    is only ever called from the calling thread, with coalesced `(done, total)` byte
    counts. The first failing entry aborts the whole batch.

    :raises IntegrityError: If the sha1 of a downloaded entry doesn't match.
    :raises DownloadError: If an entry cannot be downloaded.
    :raises DownloadCancelledError: If the cancel token has been triggered.
    """

    dl = DownloadList()
    for entry in entries:
        dl.add(entry)

    if not dl.count:
        return

    received: Dict[DownloadEntry, int] = {}
    logger.debug("Downloading %d entries (%d bytes) with %d workers", dl.count, dl.size, max_workers)

    for _finished, results in dl.download(max_workers,
        partial_progress=on_progress is not None,
        cancel=cancel,
        retry_backoff=retry_backoff
    ):

        for result in results:
            if isinstance(result, DownloadResultError):
                raise _result_error(result)
            elif isinstance(result, DownloadResultProgress):
                received[result.entry] = result.size

        if on_progress is not None:
            done = sum(received.values())
            on_progress(done, max(dl.size, done))


def _result_error(result: DownloadResultError) -> Exception:
    entry = result.entry
    if result.code == DownloadResultError.CANCELLED:
        return DownloadCancelledError()
    elif result.code == DownloadResultError.INVALID_SHA1:
        return IntegrityError(entry.name, entry.sha1 or "", result.actual or "")
    elif result.code == DownloadResultError.INVALID_SIZE:
        return DownloadError(entry.url, f"expected {entry.size} bytes, got {result.actual}", entry.name)
    elif result.code == DownloadResultError.NOT_FOUND:
        return DownloadError(entry.url, "not found", entry.name)
    elif result.code == DownloadResultError.TOO_MANY_REDIRECTS:
        return DownloadError(entry.url, f"more than {MAX_REDIRECTS} redirects", entry.name)
    return DownloadError(entry.url, result.origin or result.code, entry.name)


class IntegrityError(Exception):
    """Raised when the sha1 of an artifact doesn't match the expected one. The caller
    may retry by forcing the artifact to be downloaded again.
    """
    def __init__(self, artifact_id: str, expected_hash: str, actual_hash: str) -> None:
        self.artifact_id = artifact_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash

    def __str__(self) -> str:
        return f"{self.artifact_id}: expected sha1 {self.expected_hash}, got {self.actual_hash}"

class DownloadError(Exception):
    """Raised when an artifact cannot be downloaded, the cause may be an exception or a
    short description.
    """
    def __init__(self, url: str, cause: Union[Exception, str], name: Optional[str] = None) -> None:
        self.url = url
        self.cause = cause
        self.name = name or url

    def __str__(self) -> str:
        return f"{self.name} ({self.url}): {self.cause}"

class DownloadCancelledError(Exception):
    """Raised when a download batch is stopped by its cancel token.
    """
