"""Logging configuration for castlink."""

import logging
import re
from pathlib import Path

from castlink.config import Config

# Module-level logger cache
_logger: logging.Logger | None = None

_PIN_PATTERN = re.compile(r'("pin"\s*:\s*")[^"]*(")')


class RedactPinFilter(logging.Filter):
    """Mask credential values that end up in a formatted log line."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if '"pin"' in message:
            record.msg = _PIN_PATTERN.sub(r"\1***\2", message)
            record.args = None
        return True


def setup_logging(config: Config, verbose: bool = False) -> logging.Logger:
    """Set up the castlink logger from configuration.

    Safe to call more than once; later calls return the cached logger.

    Args:
        config: Configuration object with log settings.
        verbose: Force DEBUG level regardless of config.log_level.

    Returns:
        Configured logger instance.
    """
    global _logger

    if _logger is not None:
        return _logger

    logger = logging.getLogger("castlink")
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logger.setLevel(level)
    logger.handlers.clear()

    # 2026-01-27 10:30:45 [INFO] castlink.channel: message
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    formatter.datefmt = "%Y-%m-%d %H:%M:%S"
    redact = RedactPinFilter()

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redact)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redact)
    logger.addHandler(console_handler)

    logger.propagate = False

    _logger = logger
    return logger


def reset_logging() -> None:
    """Reset logging state. Used for testing."""
    global _logger
    if _logger is not None:
        _logger.handlers.clear()
        _logger.setLevel(logging.NOTSET)
        _logger.propagate = True
        _logger = None
