"""Unit tests for logging setup."""

from __future__ import annotations

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
from rich.logging import RichHandler

from workloader.logging_config import setup_logging


@pytest.fixture(autouse=True)
def reset_logger() -> Generator[None, None, None]:
    """Remove handlers added by setup_logging after each test."""
    yield
    logger = logging.getLogger("workloader")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


class TestSetupLogging:
    """Test setup_logging."""

    def test_file_and_console_handlers(self, temp_dir: Path) -> None:
        """Test the file gets INFO and the console only WARNING."""
        log_file = temp_dir / "workloader.log"
        setup_logging(log_file)

        logger = logging.getLogger("workloader")
        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        console_handlers = [h for h in logger.handlers if isinstance(h, RichHandler)]

        assert logger.level == logging.INFO
        assert len(file_handlers) == 1
        assert file_handlers[0].level == logging.INFO
        assert len(console_handlers) == 1
        assert console_handlers[0].level == logging.WARNING

        logging.getLogger("workloader.test").info("csv line 2 - something happened")
        file_handlers[0].flush()
        assert "[INFO] - csv line 2 - something happened" in log_file.read_text()

    def test_debug_lowers_levels(self, temp_dir: Path) -> None:
        """Test debug logging on both handlers."""
        setup_logging(temp_dir / "workloader.log", debug=True)

        logger = logging.getLogger("workloader")
        assert logger.level == logging.DEBUG
        assert all(h.level == logging.DEBUG for h in logger.handlers)

    def test_repeated_setup_does_not_stack_handlers(self, temp_dir: Path) -> None:
        """Test calling setup twice leaves one handler of each kind."""
        setup_logging(temp_dir / "a.log")
        setup_logging(temp_dir / "b.log")

        assert len(logging.getLogger("workloader").handlers) == 2

    def test_console_only(self) -> None:
        """Test log_file=None skips the file handler."""
        setup_logging(None)

        handlers = logging.getLogger("workloader").handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], RichHandler)
