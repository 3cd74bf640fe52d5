from __future__ import annotations

import contextvars
import logging
import uuid

# Task-local request id; stamped on every log record of the operation
_cid = contextvars.ContextVar("correlation_id", default="")


def set_correlation_id(value: str | None = None) -> str:
    """Bind a correlation id to the current task (generated when not given)."""
    cid = value or uuid.uuid4().hex
    _cid.set(cid)
    return cid


def get_correlation_id() -> str:
    return _cid.get("")


def clear_correlation_id() -> None:
    _cid.set("")


class CorrelationIdFilter(logging.Filter):
    """Expose the current correlation id as ``record.correlation_id``."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        record.correlation_id = get_correlation_id()
        return True
