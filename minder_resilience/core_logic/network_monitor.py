import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkState:
    """Connectivity snapshot passed to subscribers."""
    online: bool
    connection_type: Optional[str] = None


class NetworkMonitor:
    """Tracks online/offline transitions from an external connectivity signal.

    The monitor does not poll. Whatever observes the platform's connectivity
    (an OS hook, a test, the CLI) feeds it through `set_online()`, and only
    actual transitions are forwarded to subscribers.
    """

    def __init__(self, online: bool = True, connection_type: Optional[str] = None):
        self._state = NetworkState(online=online, connection_type=connection_type)
        self._listeners: List[Callable[[NetworkState], Any]] = []
        self._tasks: Set["asyncio.Task[Any]"] = set()

    @property
    def online(self) -> bool:
        return self._state.online

    @property
    def state(self) -> NetworkState:
        return self._state

    def subscribe(self, listener: Callable[[NetworkState], Any]) -> Callable[[], None]:
        """Registers a transition listener and returns its unsubscribe handle.

        Listeners may be coroutine functions; their coroutines are scheduled
        on the running event loop.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool, connection_type: Optional[str] = None) -> bool:
        """Feeds a connectivity signal. Returns True if it was a transition."""
        if online == self._state.online:
            return False
        self._state = NetworkState(online=online, connection_type=connection_type)
        if online:
            logger.info("Network connection restored")
        else:
            logger.warning("Network connection lost")
        for listener in list(self._listeners):
            self._notify(listener)
        return True

    async def wait_idle(self) -> None:
        """Waits for every coroutine listener scheduled so far to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _notify(self, listener: Callable[[NetworkState], Any]) -> None:
        try:
            outcome = listener(self._state)
        except Exception as e:
            logger.error(f"Network listener {listener!r} raised: {e}", exc_info=True)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Network listener task failed: {task.exception()}")
