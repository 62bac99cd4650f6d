"""
UPLOAD PIPELINE
===============

1. Every call creates a fresh transfer id:
   - Ids are `<name>-<size>-<hex>`; a terminal transfer is never reused.
   - The active registry only holds transfers that are still running.

2. Retry restarts the WHOLE transfer:
   - A failed chunk does not resume from the last acknowledged index.
   - Progress is reset to zero at the start of every attempt.

3. Cancellation is cooperative:
   - `cancel_upload()` flips the transfer's controller; the in-flight call is
     aborted and no further chunk is sent.
   - Chunks the server already accepted are not rolled back.

4. Image pre-processing runs in a worker thread:
   - Pillow work is CPU bound and would otherwise stall the event loop.
"""
import asyncio
import logging
import mimetypes
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..clients.base import Transport
from ..image_processing import optimize_image
from ..strategies.transfer_strategies import DEFAULT_CHUNK_SIZE, get_upload_strategy, plan_chunks
from ..utils import InvalidTransition, TransferCancelled, format_bytes, generate_id
from .cancellation import TransferController
from .progress import CANCELLED, COMPLETED, FAILED, ProgressChannel, ProgressTracker, TransferEvent, UploadProgress
from .resilience import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class UploadFile:
    """An in-memory payload to upload."""
    name: str
    data: bytes
    mime_type: Optional[str] = None

    def __post_init__(self):
        if not self.mime_type:
            self.mime_type = mimetypes.guess_type(self.name)[0] or DEFAULT_MIME_TYPE

    @classmethod
    def from_path(cls, path: str, mime_type: Optional[str] = None) -> "UploadFile":
        with open(path, 'rb') as f:
            data = f.read()
        return cls(name=os.path.basename(path), data=data, mime_type=mime_type)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_image(self) -> bool:
        return bool(self.mime_type and self.mime_type.startswith('image/'))

    def slice(self, offset: int, length: int) -> bytes:
        return self.data[offset:offset + length]


@dataclass
class ChunkedOptions:
    enabled: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")


@dataclass
class RetryOptions:
    attempts: int = 0
    delay: float = 1.0

    def policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.attempts, delay=self.delay)


@dataclass
class ResizeOptions:
    width: Optional[int] = None
    height: Optional[int] = None
    fit: str = "contain"


@dataclass
class UploadOptions:
    """Per-call upload settings.

    Attributes:
        endpoint: Overrides the session's upload endpoint.
        headers: Extra headers sent with every request of the transfer.
        chunked: Enables the init/chunk/finalize protocol above `chunk_size`.
        retry: Whole-transfer retry settings. No retries by default.
        resize, image_format, quality: Image pre-processing; any of them
            being set enables it for image payloads.
        timeout: Per-request timeout in seconds.
        on_progress: Called with every `UploadProgress` of the transfer.
    """
    endpoint: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    chunked: Optional[ChunkedOptions] = None
    retry: Optional[RetryOptions] = None
    resize: Optional[ResizeOptions] = None
    image_format: Optional[str] = None
    quality: Optional[int] = None
    timeout: Optional[float] = None
    on_progress: Optional[Callable[[UploadProgress], None]] = None

    @property
    def wants_image_processing(self) -> bool:
        return bool(self.resize or self.image_format or self.quality)


class TransferStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ACTIVE -> ACTIVE is the whole-transfer retry; terminal states have no exits
_TRANSITIONS = {
    TransferStatus.PENDING: {TransferStatus.ACTIVE},
    TransferStatus.ACTIVE: {
        TransferStatus.ACTIVE,
        TransferStatus.COMPLETED,
        TransferStatus.FAILED,
        TransferStatus.CANCELLED,
    },
    TransferStatus.COMPLETED: set(),
    TransferStatus.FAILED: set(),
    TransferStatus.CANCELLED: set(),
}


@dataclass
class UploadTransfer:
    """State of one upload, owned by the session that created it."""
    id: str
    name: str
    total_bytes: int
    chunk_size: int
    total_chunks: int = 1
    session_id: Optional[str] = None
    chunks_sent: int = 0
    status: TransferStatus = TransferStatus.PENDING
    attempt: int = 0
    strategy: str = "direct"
    error: Optional[BaseException] = None

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.status]

    def transition(self, status: TransferStatus) -> None:
        status = TransferStatus(status)
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"Transfer {self.id}: {self.status.value} -> {status.value} is not allowed")
        logger.debug(f"Transfer {self.id}: {self.status.value} -> {status.value}")
        self.status = status


@dataclass
class UploadResult:
    transfer_id: str
    data: Any
    strategy: str
    attempts: int


@dataclass
class _ActiveUpload:
    transfer: UploadTransfer
    file: UploadFile
    controller: TransferController
    tracker: ProgressTracker
    channel: ProgressChannel


class UploadSession:
    """Top-level orchestrator for uploads over one transport.

    Picks the direct or the chunked strategy per file, applies optional image
    pre-processing, runs the whole transfer under its retry policy and keeps a
    registry of the transfers still in flight.
    """

    def __init__(self, transport: Transport, endpoint: str = "/upload", default_timeout: Optional[float] = None):
        self.transport = transport
        self.endpoint = endpoint
        self.default_timeout = default_timeout
        self._active: Dict[str, _ActiveUpload] = {}
        self._listeners: List[Callable[[TransferEvent], None]] = []

    def subscribe(self, listener: Callable[[TransferEvent], None]) -> Callable[[], None]:
        """Registers a listener for the events of every transfer of this session."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _dispatch(self, event: TransferEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Session listener raised for transfer {event.transfer_id}: {e}", exc_info=True)

    async def upload_file(self, file: UploadFile, options: Optional[UploadOptions] = None) -> UploadResult:
        """Uploads one file.

        Raises:
            TransferCancelled: The transfer was cancelled.
            MaxRetriesExceeded: Every permitted attempt failed (retries > 0).
            MinderError: The single attempt failed (no retries configured).
        """
        options = options or UploadOptions()
        if options.wants_image_processing and file.is_image:
            file = await asyncio.to_thread(
                optimize_image, file, options.resize, options.image_format, options.quality
            )
        return await self._run_transfer(file, options)

    async def upload_image(self, file: UploadFile, options: Optional[UploadOptions] = None) -> UploadResult:
        if not file.is_image:
            raise ValueError(f"File is not an image: {file.mime_type}")
        logger.info(f"Uploading image: {file.name}")
        return await self.upload_file(file, options)

    async def upload_multiple(
        self,
        files: Sequence[UploadFile],
        options: Optional[UploadOptions] = None,
        return_exceptions: bool = False,
    ) -> List[Any]:
        """Uploads `files` concurrently. Results keep the order of `files`."""
        logger.info(f"Uploading {len(files)} files...")
        results = await asyncio.gather(
            *(self.upload_file(f, options) for f in files),
            return_exceptions=return_exceptions,
        )
        failed = sum(1 for r in results if isinstance(r, BaseException))
        if failed:
            logger.warning(f"{failed} of {len(files)} uploads failed")
        else:
            logger.info(f"All {len(files)} files uploaded successfully")
        return results

    async def _run_transfer(self, file: UploadFile, options: UploadOptions) -> UploadResult:
        endpoint = options.endpoint or self.endpoint
        timeout = options.timeout if options.timeout is not None else self.default_timeout
        chunk_size = options.chunked.chunk_size if options.chunked else DEFAULT_CHUNK_SIZE
        strategy = get_upload_strategy(file.size, options.chunked, self.transport, endpoint, options.headers, timeout)

        transfer = UploadTransfer(
            id=generate_id(f"{file.name}-{file.size}"),
            name=file.name,
            total_bytes=file.size,
            chunk_size=chunk_size,
            total_chunks=len(plan_chunks(file.size, chunk_size)) if strategy.name == "chunked" else 1,
            strategy=strategy.name,
        )
        record = _ActiveUpload(
            transfer=transfer,
            file=file,
            controller=TransferController(transfer.id),
            tracker=ProgressTracker(file.size),
            channel=ProgressChannel(transfer.id),
        )
        record.channel.subscribe(self._dispatch)
        if options.on_progress:
            on_progress = options.on_progress
            record.channel.subscribe(lambda event: on_progress(event.progress) if event.progress else None)

        self._active[transfer.id] = record
        transfer.transition(TransferStatus.ACTIVE)
        logger.info(f"Starting upload: {file.name} ({format_bytes(file.size)}, {strategy.name})")

        async def attempt() -> Any:
            if transfer.attempt > 0:
                transfer.transition(TransferStatus.ACTIVE)
            transfer.attempt += 1
            transfer.session_id = None
            transfer.chunks_sent = 0
            record.channel.publish(record.tracker.reset())
            return await strategy.upload(file, transfer, record.controller, record.tracker, record.channel)

        policy = options.retry.policy() if options.retry else RetryPolicy()
        try:
            data = await policy.run(attempt, label=f"Upload of {file.name}", sleep=record.controller.sleep)
        except TransferCancelled as e:
            logger.info(f"Upload cancelled: {file.name}")
            self._finish(record, TransferStatus.CANCELLED, error=e)
            raise
        except asyncio.CancelledError:
            record.controller.cancel("Upload task cancelled")
            self._finish(record, TransferStatus.CANCELLED, error=TransferCancelled("Upload task cancelled"))
            raise
        except Exception as e:
            logger.error(f"Upload failed: {file.name}: {e}")
            self._finish(record, TransferStatus.FAILED, error=e)
            raise

        record.channel.publish(record.tracker.complete())
        self._finish(record, TransferStatus.COMPLETED, result=data)
        return UploadResult(transfer_id=transfer.id, data=data, strategy=strategy.name, attempts=transfer.attempt)

    def _finish(self, record: _ActiveUpload, status: TransferStatus, result: Any = None,
                error: Optional[BaseException] = None) -> None:
        transfer = record.transfer
        transfer.error = error
        transfer.transition(status)
        kind = {TransferStatus.COMPLETED: COMPLETED, TransferStatus.FAILED: FAILED}.get(status, CANCELLED)
        record.channel.close(kind, progress=record.tracker.current, result=result, error=error)
        self._active.pop(transfer.id, None)

    def get_transfer(self, transfer_id: str) -> Optional[UploadTransfer]:
        record = self._active.get(transfer_id)
        return record.transfer if record else None

    def get_progress(self, transfer_id: str) -> Optional[UploadProgress]:
        record = self._active.get(transfer_id)
        return record.tracker.current if record else None

    def get_active_uploads(self) -> List[Dict[str, Any]]:
        return [
            {'id': transfer_id, 'file': record.file, 'progress': record.tracker.current,
             'status': record.transfer.status.value}
            for transfer_id, record in self._active.items()
        ]

    def cancel_upload(self, transfer_id: str, reason: str = "Upload cancelled") -> bool:
        """Requests cancellation of an active transfer. Returns False if unknown."""
        record = self._active.get(transfer_id)
        if not record:
            return False
        record.controller.cancel(reason)
        return True

    def cancel_all(self) -> int:
        ids = list(self._active)
        for transfer_id in ids:
            self.cancel_upload(transfer_id)
        return len(ids)

    def close(self) -> None:
        cancelled = self.cancel_all()
        logger.debug(f"Upload session closed ({cancelled} transfers cancelled)")
