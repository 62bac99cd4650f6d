"""Manages system-level setup for the command line tool.

Its responsibilities include:
- Setting up and configuring file-based logging.
- Quietening chatty third-party loggers.
"""
import logging
import time
from pathlib import Path


def setup_logging(log_dir: Path, debug: bool) -> Path:
    """Configures the root logger for file-based logging.

    This function sets up a `FileHandler` that logs messages to a timestamped
    file in `log_dir`. Console-specific logging handlers (like RichHandler)
    are configured separately in the main entry point.

    Args:
        log_dir: Directory receiving the log files. Created if missing.
        debug: If `True`, sets the logging level to `DEBUG`, otherwise `INFO`.

    Returns:
        The path of the log file.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = time.strftime("%Y-%m-%d_%H-%M-%S")
    log_file_path = log_dir / f"minder_resilience_{timestamp}.log"

    logger = logging.getLogger()
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)

    if logger.hasHandlers():
        logger.handlers.clear()

    file_handler = logging.FileHandler(log_file_path, mode='w', encoding='utf-8')
    file_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    file_handler.setFormatter(file_formatter)
    logger.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.info("--- Minder resilience file logging started ---")
    return log_file_path
