"""Progress reporting, the launcher only ever writes to a sink that is supplied by the
caller. The sink has three independent channels: the coarse step of the pipeline, the
byte progress of the current stage and a human-readable status.
"""

from queue import Queue, Empty
import threading

from typing import Optional, Tuple, Any


class ProgressSink:
    """Base class of a progress sink, every method does nothing by default so that
    implementors only override the channels they care about.
    """

    def step(self, index: int, total: int) -> None:
        """Called when the pipeline enters its step `index` (starting at 1).
        """

    def progress(self, done: int, total: int) -> None:
        """Called with the byte progress of the current stage.
        """

    def status(self, text: str) -> None:
        """Called with a human-readable status of what's being done.
        """


class QueueProgressSink(ProgressSink):
    """A thread-safe sink that only records updates in a queue, the consumer then drains
    it from its own thread into another sink. Successive byte progress updates are
    coalesced while draining, so the consumer only sees the latest value.
    """

    def __init__(self) -> None:
        self.queue: "Queue[Tuple[str, Any]]" = Queue()

    def step(self, index: int, total: int) -> None:
        self.queue.put(("step", (index, total)))

    def progress(self, done: int, total: int) -> None:
        self.queue.put(("progress", (done, total)))

    def status(self, text: str) -> None:
        self.queue.put(("status", text))

    def drain(self, target: ProgressSink) -> int:
        """Forward every pending update to the target sink, without blocking.

        :return: The number of updates forwarded after coalescing.
        """

        count = 0
        pending_progress: Optional[Tuple[int, int]] = None

        while True:

            try:
                kind, value = self.queue.get_nowait()
            except Empty:
                break

            if kind == "progress":
                pending_progress = value
                continue

            # Any other update flushes the pending progress to keep ordering.
            if pending_progress is not None:
                target.progress(*pending_progress)
                pending_progress = None
                count += 1

            if kind == "step":
                target.step(*value)
            else:
                target.status(value)
            count += 1

        if pending_progress is not None:
            target.progress(*pending_progress)
            count += 1

        return count


class CancelToken:
    """Cooperative cancellation flag shared between the caller and a running pipeline.
    """

    __slots__ = "_event",

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
