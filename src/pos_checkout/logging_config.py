"""Configure checkout logging using the Python standard library.

The root logger gets a console handler and a rotating file handler,
both emitting one JSON object per record.  Callers attach context via
``extra``: ``request_id`` (cart id or receipt number) and an ``extra``
dict whose keys are merged into the top level of the record.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, UTC

LOG_FILE_NAME = "checkout.log"


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "request_id"):
            log_record["request_id"] = getattr(record, "request_id")
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            log_record.update(extra)
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        # Decimal amounts and enums serialise as their string form
        return json.dumps(log_record, default=str)


def configure_logging(log_dir: str = "logs", level: int = logging.INFO) -> None:
    """Configure the root logger with JSON console and rotating file output.

    Args:
        log_dir: Directory for ``checkout.log``; created if missing.
        level: Logging level for the root logger and both handlers.
    """
    os.makedirs(log_dir, exist_ok=True)
    logger = logging.getLogger()
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    formatter = JsonFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    logger.addHandler(console_handler)

    file_handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    logger.addHandler(file_handler)
