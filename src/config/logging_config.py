"""
Logging configuration.

Console logging in a human-readable format during development and as
structured JSON everywhere else, so billing events can be searched by
event id, subscription id or student id in the log aggregator.
"""

import json
import logging
import sys

from src.config.config import Config

logger = logging.getLogger(__name__)

# Attributes present on every LogRecord; anything else was passed through ``extra=``
_RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Fields passed with ``logger.info(..., extra={...})`` are merged into the
    emitted document.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging() -> None:
    """
    Configure application logging.

    Sets up:
    - Console handler on stdout
    - Plain text format in development, JSON otherwise
    - Quieter log levels for chatty HTTP and SDK libraries
    """
    level = getattr(logging, (Config.LOG_LEVEL or "INFO").upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if Config.IS_DEVELOPMENT:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    else:
        console_handler.setFormatter(StructuredFormatter())

    root_logger.addHandler(console_handler)

    # Set log levels for noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)

    logger.info(f"Logging configured (level={logging.getLevelName(level)}, env={Config.APP_ENV})")
