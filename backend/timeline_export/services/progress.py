"""Progress reporting and cooperative cancellation for export jobs.

Workers publish ``ProgressEvent`` objects (phase + fraction within the phase)
on a ``ProgressChannel``. The orchestrator consumes the channel and maps each
event onto the phase's slice of the 0-100 job progress range, never letting
the overall value go backwards.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum

from timeline_export.exceptions import JobCancelledError


class Phase(Enum):
    """Export phases and their share of overall progress."""

    VALIDATE = ("validate", 0, 10, "Validating timeline")
    DOWNLOAD = ("download", 10, 40, "Downloading assets")
    CONFIGURE = ("configure", 40, 45, "Building filter graph")
    RENDER = ("render", 45, 90, "Rendering video")
    PUBLISH = ("publish", 90, 100, "Uploading export")

    def __init__(self, key: str, start: int, end: int, label: str):
        self.key = key
        self.start = start
        self.end = end
        self.label = label

    def to_percent(self, fraction: float) -> int:
        fraction = min(1.0, max(0.0, fraction))
        return int(self.start + (self.end - self.start) * fraction)


@dataclass(frozen=True)
class ProgressEvent:
    phase: Phase
    fraction: float = 0.0
    message: str | None = None

    @property
    def percent(self) -> int:
        return self.phase.to_percent(self.fraction)


class ProgressChannel:
    """Unbounded async queue of progress events for one job."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def publish(self, phase: Phase, fraction: float = 0.0, message: str | None = None) -> None:
        if self._closed:
            return
        self._queue.put_nowait(ProgressEvent(phase, fraction, message))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item


class ProgressTracker:
    """Folds events into a monotonically non-decreasing percentage."""

    def __init__(self, initial: int = 0):
        self.percent = initial
        self.stage: str | None = None

    def apply(self, event: ProgressEvent) -> bool:
        """Apply an event; True when the visible state changed."""
        percent = max(self.percent, event.percent)
        stage = event.message or event.phase.label
        changed = percent != self.percent or stage != self.stage
        self.percent = percent
        self.stage = stage
        return changed


class CancellationToken:
    """Cooperative cancellation flag shared by a job's phases."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self.reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early (and raising) on cancellation."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
