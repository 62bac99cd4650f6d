"""Provides a durable queue for write operations made while offline.

This module contains the classes that defer mutations (create/update/delete
requests) while the network is unavailable and replay them once it comes
back. It is designed for unreliable connections and an eventually
consistent, fire-and-forget user experience: callers of `enqueue` never see
an error, and replay failures are only logged.

Classes:
    QueuedOperation: A dataclass representing one deferred write.
    ReplayStats: A summary of one replay pass.
    MutationQueue: An ordered, capacity-bounded queue persisted to a
        `DurableStore` after every structural change.
    ReplayEngine: Drains the queue through a caller-supplied executor, one
        single-flight pass at a time, with bounded per-item retries.

Functions:
    transport_executor: Builds an executor that sends operations through a
        `Transport`.

Known limitation: a pass clears the persisted queue before its items are
confirmed. A crash in the middle of a pass loses the items still in flight
(at-most-once delivery with possible loss). Servers must de-duplicate by
operation id, which is sent as the `Idempotency-Key` header.
"""
import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ..clients.base import Transport, TransportRequest
from ..utils import QueueFull, generate_id, now_ms
from .network_monitor import NetworkMonitor, NetworkState
from .resilience import RetryPolicy
from .storage import DurableStore

logger = logging.getLogger(__name__)

MUTATING_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')
READ_ONLY_METHODS = ('GET', 'HEAD', 'OPTIONS')
DEFAULT_STORAGE_KEY = 'minder_offline_queue'
DEFAULT_MAX_QUEUE_SIZE = 50
DEFAULT_MAX_RETRIES = 3

Executor = Callable[["QueuedOperation"], Awaitable[Any]]


@dataclass
class QueuedOperation:
    """A single deferred write operation.

    Attributes:
        id (str): Unique id, also used by the server to de-duplicate replays.
        method (str): A mutating HTTP verb (POST, PUT, PATCH or DELETE).
        target_url (str): Where the operation is sent.
        payload (Any): JSON-serializable request body.
        enqueued_at (int): Enqueue time in milliseconds since the epoch.
        retry_count (int): Failed replay attempts so far.
        max_retries (int): Failed attempts tolerated before the item is dropped.
        headers (Dict[str, str]): Extra request headers.
        last_error (Optional[str]): Message of the most recent failure.
    """
    id: str
    method: str
    target_url: str
    payload: Any = None
    enqueued_at: int = 0
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    headers: Dict[str, str] = field(default_factory=dict)
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedOperation":
        return cls(
            id=str(data['id']),
            method=str(data['method']).upper(),
            target_url=str(data['target_url']),
            payload=data.get('payload'),
            enqueued_at=int(data.get('enqueued_at', 0)),
            retry_count=int(data.get('retry_count', 0)),
            max_retries=int(data.get('max_retries', DEFAULT_MAX_RETRIES)),
            headers=dict(data.get('headers') or {}),
            last_error=data.get('last_error'),
        )


@dataclass
class ReplayStats:
    """Outcome of one `drain_and_replay` pass."""
    total: int = 0
    succeeded: int = 0
    requeued: int = 0
    dropped: int = 0
    evicted: int = 0
    duration: float = 0.0
    skipped: bool = False
    errors: List[Dict[str, str]] = field(default_factory=list)


class MutationQueue:
    """An ordered, durable, capacity-bounded queue of pending writes.

    The queue is an explicitly owned value: construct one per application
    and inject it where it is needed. Every structural change is written to
    the store synchronously. Store failures are logged and swallowed.

    Attributes:
        store (Optional[DurableStore]): Backing store; None keeps the queue in memory.
        storage_key (str): Key under which the serialized queue is stored.
        max_queue_size (int): Capacity. The oldest entry is evicted to make room.
        max_retries (int): Default `max_retries` for new operations.
        enabled (bool): When False, `enqueue` ignores everything.
    """

    def __init__(
        self,
        store: Optional[DurableStore] = None,
        storage_key: str = DEFAULT_STORAGE_KEY,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        enabled: bool = True,
    ):
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        self.store = store
        self.storage_key = storage_key
        self.max_queue_size = max_queue_size
        self.max_retries = max_retries
        self.enabled = enabled
        self._pending: Deque[QueuedOperation] = deque()
        self._load()

    def __len__(self) -> int:
        return len(self._pending)

    def operations(self) -> List[QueuedOperation]:
        """Returns a copy of the pending operations in enqueue order."""
        return list(self._pending)

    def enqueue(
        self,
        method: str,
        target_url: str,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None,
        max_retries: Optional[int] = None,
    ) -> Optional[QueuedOperation]:
        """Adds a write operation to the end of the queue.

        Read-only verbs are never queued. When the queue is full the oldest
        entry is dropped first.

        Returns:
            The queued operation, or None if nothing was queued.
        """
        if not self.enabled:
            return None

        verb = (method or '').upper()
        if verb not in MUTATING_METHODS:
            if verb in READ_ONLY_METHODS:
                logger.debug(f"Not queueing read-only request: {verb} {target_url}")
            else:
                logger.warning(f"Not queueing request with unsupported method '{method}': {target_url}")
            return None

        self._evict_oldest(self.max_queue_size - 1)

        operation = QueuedOperation(
            id=generate_id(),
            method=verb,
            target_url=target_url,
            payload=payload,
            enqueued_at=now_ms(),
            retry_count=0,
            max_retries=self.max_retries if max_retries is None else max_retries,
            headers=dict(headers or {}),
        )
        self._pending.append(operation)
        self.persist()
        logger.info(f"Queued request: {verb} {target_url}")
        return operation

    def append(self, operation: QueuedOperation) -> List[QueuedOperation]:
        """Re-adds an existing operation at the tail (used by replay).

        Returns:
            The operations evicted to stay within `max_queue_size`.
        """
        self._pending.append(operation)
        return self._evict_oldest(self.max_queue_size)

    def restore_front(self, operations: List[QueuedOperation]) -> List[QueuedOperation]:
        """Puts `operations` back at the head of the queue, keeping their order."""
        self._pending.extendleft(reversed(operations))
        return self._evict_oldest(self.max_queue_size)

    def _evict_oldest(self, limit: int) -> List[QueuedOperation]:
        """Drops operations from the head until at most `limit` remain."""
        evicted = []
        while self._pending and len(self._pending) > max(limit, 0):
            operation = self._pending.popleft()
            evicted.append(operation)
            logger.warning(
                f"{QueueFull.code}: offline queue is full ({self.max_queue_size}), "
                f"dropping oldest request {operation.method} {operation.target_url} (id={operation.id})"
            )
        return evicted

    def take_all(self) -> List[QueuedOperation]:
        """Removes and returns every pending operation, oldest first."""
        snapshot = list(self._pending)
        self._pending.clear()
        return snapshot

    def remove(self, operation_id: str) -> bool:
        for operation in self._pending:
            if operation.id == operation_id:
                self._pending.remove(operation)
                self.persist()
                return True
        return False

    def clear(self) -> None:
        self._pending.clear()
        self.persist()

    def persist(self) -> None:
        """Writes the serialized queue to the store. Errors are logged only."""
        if self.store is None:
            return
        try:
            self.store.set(self.storage_key, json.dumps([op.to_dict() for op in self._pending]))
        except Exception as e:
            logger.error(f"Failed to save offline queue: {e}")

    def _load(self) -> None:
        if self.store is None:
            return
        try:
            stored = self.store.get(self.storage_key)
            if not stored:
                return
            items = [QueuedOperation.from_dict(item) for item in json.loads(stored)]
        except Exception as e:
            logger.error(f"Failed to load offline queue: {e}")
            return
        if len(items) > self.max_queue_size:
            logger.warning(
                f"{QueueFull.code}: stored offline queue holds {len(items)} requests, "
                f"keeping the newest {self.max_queue_size}"
            )
        self._pending = deque(items[-self.max_queue_size:])
        logger.debug(f"Loaded {len(self._pending)} requests from offline queue")


class ReplayEngine:
    """Replays queued mutations through an executor when connectivity returns.

    Guarantees:
    - Strict FIFO within a pass; a failed item is attempted at most once per
      pass and is appended behind the new arrivals for the next pass.
    - Only one pass runs at a time (single-flight), so the queue's store has
      a single writer.
    - An item is attempted at most `max_retries + 1` times in total.
    - No mid-item cancellation: an executor call always settles before the
      loop advances, even if the network drops meanwhile.
    """

    def __init__(self, queue: MutationQueue, monitor: Optional[NetworkMonitor] = None):
        self.queue = queue
        self.monitor = monitor
        self._draining = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._executor: Optional[Executor] = None

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def online(self) -> bool:
        return self.monitor.online if self.monitor else True

    def attach(self, monitor: NetworkMonitor, executor: Executor) -> None:
        """Subscribes to `monitor` so each offline->online transition triggers one pass."""
        self.detach()
        self.monitor = monitor
        self._executor = executor
        self._unsubscribe = monitor.subscribe(self._on_network_change)

    def detach(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    async def _on_network_change(self, state: NetworkState) -> None:
        if not state.online or self._executor is None:
            return
        await self.drain_and_replay(self._executor)

    async def drain_and_replay(self, executor: Executor) -> ReplayStats:
        """Runs one replay pass over everything currently queued.

        The pass is skipped when offline, when the queue is empty or when
        another pass is already running.

        Args:
            executor: Coroutine function performing the actual network call.
                It must raise on any network or HTTP failure.

        Returns:
            A `ReplayStats` summary of the pass.
        """
        if not self.online or len(self.queue) == 0 or self._draining:
            return ReplayStats(skipped=True)

        self._draining = True
        start = time.monotonic()
        stats = ReplayStats()
        try:
            snapshot = self.queue.take_all()
            self.queue.persist()
            stats.total = len(snapshot)
            logger.info(f"Processing {len(snapshot)} queued requests...")

            for index, operation in enumerate(snapshot):
                try:
                    await executor(operation)
                except asyncio.CancelledError:
                    # Task shutdown, not an item failure: put the unfinished tail back
                    self.queue.restore_front(snapshot[index:])
                    self.queue.persist()
                    raise
                except Exception as e:
                    self._handle_failure(operation, e, stats)
                else:
                    stats.succeeded += 1
                    logger.debug(f"Replayed request: {operation.method} {operation.target_url}")

            self.queue.persist()
        finally:
            self._draining = False
            stats.duration = time.monotonic() - start

        logger.info(
            f"Replay pass finished: {stats.succeeded} succeeded, {stats.requeued} requeued, "
            f"{stats.dropped} dropped, {stats.evicted} evicted ({stats.duration:.2f}s)"
        )
        return stats

    def _handle_failure(self, operation: QueuedOperation, error: Exception, stats: ReplayStats) -> None:
        operation.retry_count += 1
        operation.last_error = str(error)
        stats.errors.append({'id': operation.id, 'error': str(error)})
        logger.error(
            f"Failed to replay request: {operation.method} {operation.target_url} "
            f"(attempt {operation.retry_count}): {error}"
        )
        if RetryPolicy.allows_requeue(operation.retry_count, operation.max_retries):
            stats.requeued += 1
            stats.evicted += len(self.queue.append(operation))
        else:
            stats.dropped += 1
            logger.warning(
                f"Dropping request after {operation.retry_count} failed replays: "
                f"{operation.method} {operation.target_url} (id={operation.id})"
            )


def transport_executor(transport: Transport, base_url: str = "", timeout: Optional[float] = None) -> Executor:
    """Builds an executor that sends queued operations through `transport`.

    The operation id travels as the `Idempotency-Key` header so the server
    can discard duplicates. Any transport error or HTTP status >= 400 makes
    the executor raise, which is what engages the replay retry logic.
    """
    async def execute(operation: QueuedOperation) -> Any:
        headers = {'Idempotency-Key': operation.id}
        headers.update(operation.headers)
        response = await transport.send(TransportRequest(
            method=operation.method,
            url=f"{base_url}{operation.target_url}",
            headers=headers,
            json=operation.payload,
            timeout=timeout,
        ))
        try:
            return response.json()
        except ValueError:
            return response.content

    return execute
