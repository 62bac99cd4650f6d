"""Offline mutation queue and resilient upload pipeline."""

__version__ = "1.0.0"

from .core_logic.network_monitor import NetworkMonitor, NetworkState
from .core_logic.progress import ProgressTracker, TransferEvent, UploadProgress
from .core_logic.resilience import RetryPolicy
from .core_logic.resilient_queue import MutationQueue, QueuedOperation, ReplayEngine, ReplayStats, transport_executor
from .core_logic.storage import DurableStore, JsonFileStore, MemoryStore
from .core_logic.transfer_manager import (
    ChunkedOptions, ResizeOptions, RetryOptions, UploadFile, UploadOptions, UploadResult, UploadSession,
    UploadTransfer, TransferStatus,
)
from .clients import Transport, TransportRequest, TransportResponse, get_transport
from .utils import (
    MinderError, NetworkFailure, TimeoutFailure, ServerRejection, QueueFull, MaxRetriesExceeded,
    TransferCancelled, InvalidTransition, ImageProcessingError,
)
