"""
Structured JSON logging for the agent (stdlib `logging` only).

Every line on stdout is one JSON object carrying:
- service identity: service, env, version, sha
- correlation_id: bound per tick, per ingestion poll and per inbound command
- event_type + severity: stable names for dashboards and alerts
- any `extra=` fields passed by the caller
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

_CORRELATION_ID: ContextVar[Optional[str]] = ContextVar("veiled_agent_correlation_id", default=None)

# Attributes every LogRecord has; anything else on a record came from `extra=`.
_RECORD_BUILTINS: frozenset[str] = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}
_INJECTED = frozenset({"event_type", "severity", "correlation_id"})

_SEVERITIES = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _one_line(v: Any, *, limit: int = 2000) -> str:
    s = "" if v is None else str(v)
    s = " ".join(s.splitlines()).strip()
    return s if len(s) <= limit else s[: limit - 1] + "…"


def _first_env(*names: str, default: str = "unknown") -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return _one_line(v, limit=128)
    return default


def _severity(level: str | int | None) -> str:
    name = logging.getLevelName(level) if isinstance(level, int) else str(level or "INFO")
    s = name.strip().upper()
    if s == "WARN":
        return "WARNING"
    return s if s in _SEVERITIES else "INFO"


@dataclass(frozen=True)
class ServiceInfo:
    service: str
    env: str = "unknown"
    version: str = "unknown"
    sha: str = "unknown"

    @classmethod
    def from_env(cls, service: str) -> "ServiceInfo":
        return cls(
            service=service,
            env=_first_env("ENVIRONMENT", "ENV", "APP_ENV"),
            version=_first_env("AGENT_VERSION", "APP_VERSION", "IMAGE_TAG"),
            sha=_first_env("GIT_SHA", "COMMIT_SHA", "BUILD_SHA"),
        )


def get_correlation_id() -> Optional[str]:
    return _CORRELATION_ID.get()


@contextmanager
def bind_correlation_id(*, correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind a correlation id for the lifetime of the block.
    """
    cid = _one_line(correlation_id, limit=128) or uuid.uuid4().hex
    token = _CORRELATION_ID.set(cid)
    try:
        yield cid
    finally:
        _CORRELATION_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, info: ServiceInfo) -> None:
        super().__init__()
        self._info = info

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": _severity(getattr(record, "severity", None) or record.levelno),
            "service": self._info.service,
            "env": self._info.env,
            "version": self._info.version,
            "sha": self._info.sha,
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "event_type": _one_line(getattr(record, "event_type", None), limit=128) or "log",
            "message": _one_line(record.getMessage(), limit=4000),
            "logger": record.name,
        }
        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]

        for k, v in record.__dict__.items():
            if k in _RECORD_BUILTINS or k in _INJECTED or k.startswith("_") or k in payload:
                continue
            payload[k] = v

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def init_structured_logging(*, service: str, level: str | int | None = None) -> None:
    """
    Route the root logger to stdout as JSON lines. Last call wins.
    """
    lvl = level or os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(ServiceInfo.from_env(service)))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
    logging.captureWarnings(True)

    # Per-request chatter from the HTTP and websocket stacks.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    **fields: Any,
) -> None:
    """
    Log a semantic event with a stable `event_type`.
    """
    lvl = logging.getLevelName(_severity(severity))
    logger.log(lvl, message or event_type, extra={"event_type": event_type, **fields})
