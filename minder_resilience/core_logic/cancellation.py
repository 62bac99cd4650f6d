import asyncio
import logging
from typing import Any, Awaitable, Optional

from ..utils import TransferCancelled

logger = logging.getLogger(__name__)


class TransferController:
    """Cooperative cancellation token owned by a single transfer.

    The controller is handed to every suspension point of its transfer
    (init, each chunk, finalize, the pause between retries). Cancelling it
    aborts whichever of those is currently in flight; work that already
    completed on the server is not rolled back.
    """

    def __init__(self, transfer_id: str = ""):
        self.transfer_id = transfer_id
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Upload cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug(f"Cancellation requested for transfer {self.transfer_id or '<anonymous>'}: {reason}")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TransferCancelled(self.reason or "Upload cancelled")

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Awaits `awaitable` unless the controller is cancelled first.

        Raises:
            TransferCancelled: If cancellation wins the race. The in-flight
                task is cancelled before this is raised.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            # A result that raced the cancel still counts; the server already has it
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"In-flight call of transfer {self.transfer_id} ended with {e!r} after cancel")
        raise TransferCancelled(self.reason or "Upload cancelled")

    async def sleep(self, seconds: float) -> None:
        """A pause that ends early (with TransferCancelled) on cancellation."""
        await self.run(asyncio.sleep(seconds))
