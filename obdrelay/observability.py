from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


@dataclass
class JsonLogConfig:
    service_name: str = "obd-relay"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers on the device."""

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
        }

        # Attach any explicit structured extra payload under "fields".
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; structured fields are appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict) and fields:
            extras = " ".join(f"{k}={v}" for k, v in fields.items())
            head, sep, tail = line.partition("\n")
            line = f"{head} {extras}{sep}{tail}"
        return line


def resolve_log_level(raw: str | None, *, default: int = logging.INFO) -> int:
    if not raw or not raw.strip():
        return default
    value = raw.strip().upper()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value)
    return level if isinstance(level, int) else default


def configure_logging(*, level: int, log_format: str, service_name: str = "obd-relay") -> None:
    """Configure relay logging.

    - log_format="json": structured JSON lines
    - log_format="text": standard human-readable
    """

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler()
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig(service_name=service_name)))
    else:
        handler.setFormatter(TextFormatter())

    root.addHandler(handler)


def configure_logging_from_env() -> None:
    configure_logging(
        level=resolve_log_level(os.getenv("LOG_LEVEL")),
        log_format=os.getenv("LOG_FORMAT", "text"),
    )
