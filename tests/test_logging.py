"""Tests for logging module."""

import logging
import re

from castlink.config import Config
from castlink.logging import RedactPinFilter, reset_logging, setup_logging


class TestSetupLogging:
    """Test logging setup."""

    def test_setup_logging_returns_logger(self):
        """Setup returns the castlink logger."""
        logger = setup_logging(Config())

        assert isinstance(logger, logging.Logger)
        assert logger.name == "castlink"

    def test_setup_logging_is_cached(self):
        """Second call returns the same logger without adding handlers."""
        first = setup_logging(Config())
        handler_count = len(first.handlers)

        second = setup_logging(Config(log_level="DEBUG"))

        assert second is first
        assert len(second.handlers) == handler_count

    def test_setup_logging_creates_log_file(self, tmp_path):
        """Logging setup creates log file."""
        log_file = tmp_path / "test.log"
        logger = setup_logging(Config(log_file=str(log_file)))
        logger.info("test message")

        assert "test message" in log_file.read_text()

    def test_setup_logging_creates_log_directory(self, tmp_path):
        """Logging setup creates log directory if needed."""
        log_file = tmp_path / "subdir" / "test.log"
        logger = setup_logging(Config(log_file=str(log_file)))
        logger.info("test message")

        assert log_file.exists()

    def test_log_levels_respected(self, tmp_path):
        """Only logs at configured level and above."""
        log_file = tmp_path / "test.log"
        logger = setup_logging(Config(log_file=str(log_file), log_level="WARNING"))
        logger.debug("debug message")
        logger.info("info message")
        logger.warning("warning message")

        content = log_file.read_text()
        assert "debug message" not in content
        assert "info message" not in content
        assert "warning message" in content

    def test_verbose_forces_debug(self, tmp_path):
        log_file = tmp_path / "test.log"
        logger = setup_logging(Config(log_file=str(log_file), log_level="WARNING"), verbose=True)
        logging.getLogger("castlink.channel").debug("channel detail")

        assert logger.level == logging.DEBUG
        assert "channel detail" in log_file.read_text()

    def test_log_format_includes_timestamp_and_module(self, tmp_path):
        """Log entries have timestamp, level, logger name, message."""
        log_file = tmp_path / "test.log"
        setup_logging(Config(log_file=str(log_file)))
        logging.getLogger("castlink.auth").info("test message")

        # Format: 2026-01-27 10:30:45 [INFO] castlink.auth: test message
        pattern = r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} \[INFO\] castlink\.auth: test message"
        assert re.search(pattern, log_file.read_text())

    def test_pin_values_are_redacted(self, tmp_path):
        """A raw auth payload that reaches a log line has its pin masked."""
        log_file = tmp_path / "test.log"
        logger = setup_logging(Config(log_file=str(log_file)))
        logger.info('sent {"type": "auth", "pin": "123456"}')

        content = log_file.read_text()
        assert "123456" not in content
        assert '"pin": "***"' in content

    def test_reset_logging_restores_propagation(self):
        logger = setup_logging(Config())
        assert logger.propagate is False

        reset_logging()

        assert logger.handlers == []
        assert logger.propagate is True


class TestRedactPinFilter:
    """Test the credential filter on its own."""

    def test_leaves_other_records_untouched(self):
        record = logging.LogRecord("castlink", logging.INFO, __file__, 1, "hello %s", ("world",), None)

        assert RedactPinFilter().filter(record) is True
        assert record.getMessage() == "hello world"

    def test_redacts_formatted_args(self):
        record = logging.LogRecord("castlink", logging.INFO, __file__, 1, "payload %s", ('{"pin": "9999"}',), None)

        RedactPinFilter().filter(record)

        assert record.getMessage() == 'payload {"pin": "***"}'
