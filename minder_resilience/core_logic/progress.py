import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

PROGRESS = "progress"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
TERMINAL_EVENTS = (COMPLETED, FAILED, CANCELLED)


@dataclass
class ProgressSample:
    """A single (bytes, time) observation. Only used to derive speed."""
    loaded_bytes: int
    total_bytes: int
    timestamp_ms: float


@dataclass
class UploadProgress:
    """Snapshot of one transfer's progress.

    Attributes:
        loaded: Bytes confirmed so far.
        total: Total bytes of the payload.
        percentage: loaded / total * 100.
        speed: Bytes per second between the last two samples, if known.
        eta: Estimated seconds remaining, only when speed > 0.
    """
    loaded: int
    total: int
    percentage: float
    speed: Optional[float] = None
    eta: Optional[float] = None


@dataclass
class TransferEvent:
    """An event published on a `ProgressChannel`."""
    kind: str
    transfer_id: str
    progress: Optional[UploadProgress] = None
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_EVENTS


class ProgressTracker:
    """Derives loaded/percentage/speed/eta from successive byte counts.

    The tracker never lets `loaded` go backwards within one attempt, so the
    percentage is monotonically non-decreasing. Call `reset()` when a new
    attempt starts from byte zero.
    """

    def __init__(self, total: int, clock: Callable[[], float] = time.monotonic):
        self.total = max(0, total)
        self._clock = clock
        self._last: Optional[ProgressSample] = None
        self._current = UploadProgress(loaded=0, total=self.total, percentage=0.0)

    @property
    def current(self) -> UploadProgress:
        return self._current

    def reset(self) -> UploadProgress:
        self._last = None
        self._current = UploadProgress(loaded=0, total=self.total, percentage=0.0)
        return self._current

    def update(self, loaded: int) -> UploadProgress:
        """Records a new byte count and returns the derived progress."""
        loaded = min(max(loaded, self._current.loaded), self.total)
        sample = ProgressSample(loaded_bytes=loaded, total_bytes=self.total, timestamp_ms=self._clock() * 1000)

        speed: Optional[float] = None
        if self._last is not None:
            delta_time = (sample.timestamp_ms - self._last.timestamp_ms) / 1000
            if delta_time > 0:
                speed = (sample.loaded_bytes - self._last.loaded_bytes) / delta_time
            else:
                # Same instant as the previous sample; keep the previous figure
                speed = self._current.speed
        self._last = sample

        eta = (self.total - loaded) / speed if speed else None
        self._current = UploadProgress(
            loaded=loaded,
            total=self.total,
            percentage=self._percentage(loaded),
            speed=speed,
            eta=eta,
        )
        return self._current

    def complete(self) -> UploadProgress:
        """Marks every byte as confirmed. Percentage is exactly 100."""
        progress = self.update(self.total)
        progress.percentage = 100.0
        progress.eta = 0.0
        return progress

    def _percentage(self, loaded: int) -> float:
        if self.total == 0:
            return 0.0
        return loaded / self.total * 100


class ProgressChannel:
    """Fans out the events of one transfer to its subscribers.

    A channel delivers zero or more `progress` events followed by exactly one
    terminal event (`completed`, `failed` or `cancelled`). Once closed it
    drops everything published to it.
    """

    def __init__(self, transfer_id: str):
        self.transfer_id = transfer_id
        self._listeners: List[Callable[[TransferEvent], None]] = []
        self._closed = False
        self.terminal_event: Optional[TransferEvent] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: Callable[[TransferEvent], None]) -> Callable[[], None]:
        """Registers `listener` and returns a handle that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, progress: UploadProgress) -> None:
        if self._closed:
            return
        self._emit(TransferEvent(kind=PROGRESS, transfer_id=self.transfer_id, progress=progress))

    def close(self, kind: str, progress: Optional[UploadProgress] = None,
              result: Any = None, error: Optional[BaseException] = None) -> None:
        """Publishes the single terminal event and closes the channel."""
        if kind not in TERMINAL_EVENTS:
            raise ValueError(f"Not a terminal event: {kind}")
        if self._closed:
            return
        self._closed = True
        self.terminal_event = TransferEvent(
            kind=kind, transfer_id=self.transfer_id, progress=progress, result=result, error=error
        )
        self._emit(self.terminal_event)
        self._listeners.clear()

    def _emit(self, event: TransferEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Progress listener raised for transfer {self.transfer_id}: {e}", exc_info=True)


def progress_as_dict(progress: UploadProgress) -> Dict[str, Any]:
    """Returns a plain dict view of a progress snapshot, as written to the debug log."""
    return {
        "loaded": progress.loaded,
        "total": progress.total,
        "percentage": round(progress.percentage, 2),
        "speed": progress.speed,
        "eta": progress.eta,
    }
