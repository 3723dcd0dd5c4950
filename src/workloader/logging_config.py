"""Logging configuration for workloader."""

import logging
from pathlib import Path

from rich.logging import RichHandler

DEFAULT_LOG_FILE = "workloader.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] - %(message)s"


def setup_logging(log_file: str | Path | None = DEFAULT_LOG_FILE, debug: bool = False) -> None:
    """Configure the workloader logger.

    Row-level detail goes to the log file; the console only shows warnings
    and errors unless debug is enabled.

    Args:
        log_file: Path of the log file, or None to log to the console only.
        debug: If True, log DEBUG records to both the file and the console.
    """
    workloader_logger = logging.getLogger("workloader")
    workloader_logger.setLevel(logging.DEBUG if debug else logging.INFO)

    # Re-running setup (tests, repeated CLI invocations) must not stack handlers
    for handler in list(workloader_logger.handlers):
        workloader_logger.removeHandler(handler)
        handler.close()

    # Silence third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        workloader_logger.addHandler(file_handler)

    console_handler = RichHandler(
        show_time=debug,
        show_path=debug,
        markup=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    workloader_logger.addHandler(console_handler)
