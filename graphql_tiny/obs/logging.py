"""JSON Lines logging: one object per entry with ts, level, run_id, event, logger, module, msg and extra."""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class LogSettings:
    level: str
    run_id: str
    log_file: Path | None
    jsonl: bool


class JsonLineFormatter(logging.Formatter):
    """Logging formatter that outputs one JSON object per record."""

    def __init__(self, run_id: str):
        super().__init__()
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, "event", "log")
        extra = getattr(record, "extra", {})
        if not isinstance(extra, dict):
            extra = {"value": extra}

        payload = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "run_id": self._run_id,
            "event": event,
            "logger": record.name,
            "module": record.module,
            "msg": record.getMessage(),
            "extra": extra,
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def build_logger(settings: LogSettings) -> logging.Logger:
    """
    Create an isolated (non-propagating) logger for one CLI run.

    Logs go to stderr so stdout stays free for query results, and to
    ``settings.log_file`` when given.
    """
    logger = logging.getLogger(f"graphql_tiny.{settings.run_id}")
    logger.setLevel(settings.level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = JsonLineFormatter(settings.run_id) if settings.jsonl else None

    stream_handler = logging.StreamHandler(sys.stderr)
    if formatter:
        stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if settings.log_file:
        file_handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        if formatter:
            file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    message: str,
    *,
    exc_info: Any = None,
    **extra: Any,
) -> None:
    """Log ``message`` tagged with ``event``; keyword arguments land in ``extra``."""
    logger.log(level, message, extra={"event": event, "extra": extra}, exc_info=exc_info)
