"""
Structured JSON logging for fortune batch runs.

Every record becomes one JSON object: a fixed header (ts, level, logger,
message), the run fields bound in LogContext, the record's ``extra``
fields and, when present, the exception.

Run fields live in a single ContextVar holding an immutable mapping.  An
asyncio task copies the context it was created in, so the per-user tasks
a fortune refresh fans out carry the run that spawned them, and a bind()
inside a child task never leaks back into its parent.

``extra`` keys must not reuse LogRecord attribute names (``created``,
``name``, ``message`` ...); ``Logger.makeRecord`` raises KeyError for
those.  RESERVED_EXTRA_KEYS lists them.
"""

from __future__ import annotations

__all__ = [
    "RUN_FIELDS",
    "RESERVED_EXTRA_KEYS",
    "LOGGER_NAMESPACE",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from enum import Enum
from types import MappingProxyType
from typing import IO, Any
from uuid import UUID

LOGGER_NAMESPACE = "fortune_kernel"

RUN_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "run_id",
    "job_type",
    "job_name",
    "actor_id",
)

RESERVED_EXTRA_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------

_NO_FIELDS: Mapping[str, str] = MappingProxyType({})

_run_fields: ContextVar[Mapping[str, str]] = ContextVar(
    "fortune_log_run_fields", default=_NO_FIELDS
)


def _merged(fields: Mapping[str, object]) -> Mapping[str, str]:
    unknown = set(fields).difference(RUN_FIELDS)
    if unknown:
        raise TypeError(f"unknown log context field(s): {', '.join(sorted(unknown))}")
    merged = dict(_run_fields.get())
    merged.update((k, str(v)) for k, v in fields.items() if v is not None)
    return MappingProxyType(merged)


class LogContext:
    """Run-scoped fields stamped onto every record (see RUN_FIELDS).

    ``None`` values are ignored, so callers can pass optional ids through
    without checking them first.
    """

    @staticmethod
    def set(**fields: object) -> None:
        """Add or replace fields for the rest of the current context."""
        _run_fields.set(_merged(fields))

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_run_fields.get())

    @staticmethod
    def clear() -> None:
        _run_fields.set(_NO_FIELDS)

    @staticmethod
    @contextmanager
    def bind(**fields: object) -> Iterator[dict[str, str]]:
        """Bind fields for the duration of a block, then restore the previous set.

        Raises:
            TypeError: A field name outside RUN_FIELDS.
        """
        token = _run_fields.set(_merged(fields))
        try:
            yield dict(_run_fields.get())
        finally:
            _run_fields.reset(token)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    """exc_type / exc_message plus a FortuneKernelError's code and attributes."""
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Formats each record as a single JSON line.

    Run fields win over an ``extra`` key of the same name.  Non-ASCII text
    (stem and branch characters) is written as-is.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_run_fields.get(),
        }
        for key, value in vars(record).items():
            if key not in RESERVED_EXTRA_KEYS:
                payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(payload, default=_jsonable, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger under the fortune_kernel namespace, e.g. ``batch.scheduler``."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    number = logging.getLevelNamesMapping().get(level.upper())
    if number is None:
        raise ValueError(f"unknown log level {level!r}")
    return number


_installed: logging.Handler | None = None
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: IO[str] | None = None,
    handler: logging.Handler | None = None,
) -> logging.Handler:
    """Attach one JSON handler to the fortune_kernel namespace.

    Only the first call takes effect; later calls return the handler that
    is already installed.  ``level`` accepts a number or a name such as
    ``"INFO"`` (BatchSettings.log_level).
    """
    global _installed
    with _lock:
        if _installed is not None:
            return _installed
        namespace = logging.getLogger(LOGGER_NAMESPACE)
        namespace.setLevel(_level_number(level))
        namespace.propagate = False
        _installed = handler or logging.StreamHandler(stream or sys.stderr)
        _installed.setFormatter(StructuredFormatter())
        namespace.addHandler(_installed)
        return _installed


def reset_logging() -> None:
    """Detach the installed handler and restore defaults.  Tests only."""
    global _installed
    with _lock:
        namespace = logging.getLogger(LOGGER_NAMESPACE)
        if _installed is not None:
            namespace.removeHandler(_installed)
            _installed = None
        namespace.setLevel(logging.WARNING)
        namespace.propagate = True
