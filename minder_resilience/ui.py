"""Displays upload progress, either as a rich terminal UI or as plain log lines.

It follows an interface-based approach (`BaseUIManager`) with two
implementations:

1.  `UIManagerV2`: A live `rich` progress display with one bar per transfer,
    showing bytes sent, speed and time remaining. This is the default UI.

2.  `SimpleUIManager`: Logs progress through the standard `logging` module.
    Suitable for `tmux`, `screen`, cron jobs and CI logs.

Both subscribe to an `UploadSession` and react to its transfer events, so the
upload code never has to know which UI is active.
"""
import abc
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from .core_logic.progress import CANCELLED, COMPLETED, FAILED, PROGRESS, TransferEvent, progress_as_dict
from .utils import format_bytes


def smart_truncate(text: str, max_width: int) -> str:
    """Truncates `text` to `max_width`, keeping the file extension visible."""
    if len(text) <= max_width:
        return text
    if '.' in text and max_width > 12:
        stem, ext = text.rsplit('.', 1)
        if len(ext) <= 5:
            return stem[:max_width - len(ext) - 4] + "..." + "." + ext
    return text[:max_width - 3] + "..."


class UMLoggingHandler(logging.Handler):
    """Forwards log records to the `UIManagerV2` while its live display runs."""

    def __init__(self, ui_manager: "UIManagerV2"):
        super().__init__()
        self.ui_manager = ui_manager

    def emit(self, record: logging.LogRecord) -> None:
        if "minder_resilience.ui" in record.name:
            return
        self.ui_manager.log(record.getMessage())


class BaseUIManager(abc.ABC):
    """Defines the interface for all UI manager implementations.

    This ensures that any UI implementation (rich or simple) provides a
    consistent set of methods for the command line to call, so the UI can be
    swapped without altering the upload logic.
    """

    def __init__(self):
        self._unsubscribe: List[Callable[[], None]] = []
        self._names: Dict[str, str] = {}
        self._stats: Dict[str, Any] = {
            "start_time": time.time(),
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "bytes_sent": 0,
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    def attach(self, session: Any) -> None:
        """Subscribes to every transfer event of `session` (an `UploadSession`)."""
        def on_event(event: TransferEvent) -> None:
            if event.transfer_id not in self._names:
                transfer = session.get_transfer(event.transfer_id)
                name = transfer.name if transfer else event.transfer_id
                total = event.progress.total if event.progress else 0
                self._names[event.transfer_id] = name
                self.start_transfer(event.transfer_id, name, total)
            self.handle_event(event)

        self._unsubscribe.append(session.subscribe(on_event))

    def handle_event(self, event: TransferEvent) -> None:
        if event.is_terminal and event.progress:
            logging.debug(f"Transfer {event.transfer_id} {event.kind}: {progress_as_dict(event.progress)}")
        if event.kind == PROGRESS and event.progress:
            self.update_transfer(event.transfer_id, event.progress.loaded, event.progress.speed)
        elif event.kind == COMPLETED:
            self._stats["completed"] += 1
            if event.progress:
                self._stats["bytes_sent"] += event.progress.total
            self.complete_transfer(event.transfer_id, success=True)
        elif event.kind in (FAILED, CANCELLED):
            self._stats["failed" if event.kind == FAILED else "cancelled"] += 1
            self.complete_transfer(event.transfer_id, success=False, message=str(event.error or event.kind))

    @abc.abstractmethod
    def start_transfer(self, transfer_id: str, name: str, total_bytes: int) -> None:
        pass

    @abc.abstractmethod
    def update_transfer(self, transfer_id: str, loaded: int, speed: Optional[float] = None) -> None:
        pass

    @abc.abstractmethod
    def complete_transfer(self, transfer_id: str, success: bool = True, message: str = "") -> None:
        pass

    @abc.abstractmethod
    def log(self, message: str) -> None:
        pass

    def summary(self) -> str:
        elapsed = time.time() - self._stats["start_time"]
        return (
            f"{self._stats['completed']} completed, {self._stats['failed']} failed, "
            f"{self._stats['cancelled']} cancelled, {format_bytes(self._stats['bytes_sent'])} sent "
            f"in {elapsed:.1f}s"
        )


class SimpleUIManager(BaseUIManager):
    """A non-interactive UI that logs progress via `logging`.

    Progress lines are throttled to one per 10% step per transfer.
    """

    def __init__(self):
        super().__init__()
        self._totals: Dict[str, int] = {}
        self._last_step: Dict[str, int] = {}
        logging.info("Using simple UI (standard logging).")

    def __exit__(self, exc_type, exc_val, exc_tb):
        super().__exit__(exc_type, exc_val, exc_tb)
        if exc_type:
            logging.error(f"An error occurred: {exc_val}")
        logging.info(f"Uploads finished: {self.summary()}")

    def start_transfer(self, transfer_id: str, name: str, total_bytes: int) -> None:
        self._totals[transfer_id] = total_bytes
        self._last_step[transfer_id] = -1
        logging.info(f"Upload started: {name} ({format_bytes(total_bytes)})")

    def update_transfer(self, transfer_id: str, loaded: int, speed: Optional[float] = None) -> None:
        total = self._totals.get(transfer_id) or 0
        if total <= 0:
            return
        step = int(loaded * 10 / total)
        if step <= self._last_step.get(transfer_id, -1):
            return
        self._last_step[transfer_id] = step
        speed_str = f" @ {format_bytes(int(speed))}/s" if speed else ""
        logging.info(f"{self._names.get(transfer_id, transfer_id)}: {step * 10}%{speed_str}")

    def complete_transfer(self, transfer_id: str, success: bool = True, message: str = "") -> None:
        name = self._names.get(transfer_id, transfer_id)
        if success:
            logging.info(f"Upload complete: {name}")
        else:
            logging.error(f"Upload failed: {name}: {message}")

    def log(self, message: str) -> None:
        """Logs a message, stripping any `rich` markup for clean output."""
        logging.info(re.sub(r"\[.*?\]", "", message))


class UIManagerV2(BaseUIManager):
    """A live `rich` progress display with one bar per transfer.

    While the display runs, the console `RichHandler` is swapped for a
    handler that prints log lines above the progress bars.
    """

    def __init__(self, version: str = "", rich_handler: Optional[logging.Handler] = None,
                 console: Optional[Console] = None):
        """Initializes the UIManagerV2.

        Args:
            version: The application version string, displayed in the title.
            rich_handler: A reference to the RichHandler, which is temporarily
                removed and replaced by the UI's internal handler during display.
            console: Console to render on. Defaults to stderr.
        """
        super().__init__()
        self.version = version
        self.console = console or Console(stderr=True)
        self._rich_handler_ref = rich_handler
        self._um_log_handler = UMLoggingHandler(self)
        self._tasks: Dict[str, TaskID] = {}
        self._totals: Dict[str, int] = {}
        self.progress = Progress(
            TextColumn("[bold]{task.description}", justify="left"),
            BarColumn(bar_width=None, complete_style="green", finished_style="bold green"),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            "•",
            DownloadColumn(binary_units=True),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=self.console,
            expand=True,
        )

    def __enter__(self):
        super().__enter__()
        root_logger = logging.getLogger()
        if self._rich_handler_ref:
            root_logger.removeHandler(self._rich_handler_ref)
        root_logger.addHandler(self._um_log_handler)
        self.progress.start()
        if self.version:
            self.log(f"[bold magenta]Minder resilience v{self.version}[/]")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        super().__exit__(exc_type, exc_val, exc_tb)
        try:
            self.progress.stop()
        except Exception as e:
            logging.error(f"Error stopping progress display: {e}")
        root_logger = logging.getLogger()
        root_logger.removeHandler(self._um_log_handler)
        if self._rich_handler_ref:
            root_logger.addHandler(self._rich_handler_ref)
        self.console.print(f"[bold]Uploads finished:[/] {self.summary()}")

    def start_transfer(self, transfer_id: str, name: str, total_bytes: int) -> None:
        self._totals[transfer_id] = max(total_bytes, 1)
        self._tasks[transfer_id] = self.progress.add_task(
            f"[cyan]{smart_truncate(name, 40)}", total=self._totals[transfer_id]
        )

    def update_transfer(self, transfer_id: str, loaded: int, speed: Optional[float] = None) -> None:
        task_id = self._tasks.get(transfer_id)
        if task_id is not None:
            self.progress.update(task_id, completed=loaded)

    def complete_transfer(self, transfer_id: str, success: bool = True, message: str = "") -> None:
        task_id = self._tasks.get(transfer_id)
        if task_id is None:
            return
        name = smart_truncate(self._names.get(transfer_id, transfer_id), 40)
        if success:
            self.progress.update(task_id, completed=self._totals[transfer_id], description=f"[green]✓ {name}")
        else:
            self.progress.update(task_id, description=f"[red]✗ {name}")
            self.log(f"[red]Upload failed:[/] {name}: {message}")

    def log(self, message: str) -> None:
        self.progress.console.print(message)


__all__ = ["BaseUIManager", "SimpleUIManager", "UIManagerV2", "smart_truncate"]
