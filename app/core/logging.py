"""Logging configuration for the verification service.

Two output modes, picked by LOG_JSON:

  _ContainerFormatter: one readable line per event for local dev and
    `docker compose logs`.  Domain fields attached with ``extra=`` are
    appended as ``key=value`` pairs, so a payment's trail is still
    greppable without a log pipeline.

  _JsonFormatter: one JSON object per line.  The same fields become
    top-level keys, and the history of one payment is a single filter:

      payment_id == "pi_9" AND level >= "WARNING"

Metrics live in app/core/metrics.py; logs answer "what happened to
THIS request", metrics answer "how often does it happen".
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar

# Set by RequestContextMiddleware on every request log line.
REQUEST_FIELDS = (
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
)

# Attached by the services and the worker via ``extra=``.
DOMAIN_FIELDS = (
    "user_id",
    "credential_id",
    "verification_request_id",
    "action_type",
    "feature",
    "payment_id",
    "from_status",
    "to_status",
    "task",
)

# Set per request by RequestContextMiddleware.  A ContextVar, not a
# thread-local: concurrent requests share the event-loop thread.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

_QUIET_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "httpcore",
    "httpx",
    "sqlalchemy.engine",
)


class _RequestIdFilter(logging.Filter):
    """Stamp the current request id on records that do not carry one.

    Attached to the HANDLER: filters on the root logger never see
    records propagated up from child loggers.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()  # type: ignore[attr-defined]
        return True


def _present(record: logging.LogRecord, fields: tuple[str, ...]) -> dict[str, object]:
    present = {}
    for key in fields:
        value = getattr(record, key, None)
        if value is not None:
            present[key] = value
    return present


class _ContainerFormatter(logging.Formatter):
    """Single-line formatter for container stdout.

    WARNING and above carry [filename:lineno]; tracebacks are appended
    when the caller logged with exc_info.
    """

    _BASE_FMT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"
    _LOC_SUFFIX = "  [%(filename)s:%(lineno)d]"

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        base = super().formatTime(record, datefmt)
        # Milliseconds go before the +0000 offset.
        return f"{base[:-5]}.{int(record.msecs):03d}{base[-5:]}"

    def formatMessage(self, record: logging.LogRecord) -> str:
        self._style._fmt = (
            self._BASE_FMT + self._LOC_SUFFIX
            if record.levelno >= logging.WARNING
            else self._BASE_FMT
        )
        line = super().formatMessage(record)
        fields = _present(record, DOMAIN_FIELDS)
        if fields:
            line += "  " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


class _JsonFormatter(logging.Formatter):
    """JSON Lines formatter.

    Request fields and domain fields are emitted as top-level keys when
    set; absent fields are omitted rather than written as null.
    """

    def __init__(self) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_present(record, REQUEST_FIELDS))
        entry.update(_present(record, DOMAIN_FIELDS))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level_name: str, *, json_format: bool = False) -> None:
    """Send everything to stdout with the formatter LOG_JSON selects.

    Unknown level names fall back to INFO.  Third-party loggers never go
    below WARNING, so LOG_LEVEL=debug shows our debug lines only.
    """
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if json_format else _ContainerFormatter())
    handler.addFilter(_RequestIdFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
