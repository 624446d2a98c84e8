"""
Structured JSON logging.
Outputs JSON lines in production, human-readable in development.
"""
import logging
import sys
from typing import Any, Optional

import json_log_formatter


class JsonFormatter(json_log_formatter.JSONFormatter):
    """JSON lines with level and logger name next to the ``extra`` fields."""

    def json_record(
        self,
        message: str,
        extra: dict[str, Any],
        record: logging.LogRecord,
    ) -> dict[str, Any]:
        payload = super().json_record(message, extra, record)
        payload["level"] = record.levelname
        payload["logger"] = record.name
        return payload


def setup_logging(level: Optional[str] = None) -> None:
    from app.config.settings import settings

    root_logger = logging.getLogger()
    level_name = (level or settings.LOG_LEVEL).upper()
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)

    if settings.ENV == "production":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Quiet noisy libraries
    for lib in ("aiohttp", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(lib).setLevel(logging.WARNING)
