"""Structured event logging and request correlation helpers."""

from __future__ import annotations

import contextvars
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("course_manager.events")

DB_QUERY = "DB_QUERY"
FILE_OP = "FILE_OP"
TASK_STATE = "TASK_STATE"
APP_EVENT = "APP_EVENT"

_MAX_VALUE_LENGTH = 200

REQUEST_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "course_manager_request_id", default=None
)
JOB_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "course_manager_job_id", default=None
)
ACTOR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "course_manager_actor", default=None
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def current_correlation() -> Dict[str, str]:
    """Return the request, job and actor identifiers bound to this context."""

    context: Dict[str, str] = {}
    for key, variable in (("request_id", REQUEST_ID), ("job_id", JOB_ID), ("actor", ACTOR)):
        value = variable.get()
        if value:
            context[key] = str(value)
    return context


def sanitize_context_value(value: Any) -> Any:
    """Return a log-friendly representation for *value*."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return normalize_context(value)
    if isinstance(value, (list, tuple, set)):
        text = ", ".join(str(item) for item in value)
    else:
        text = str(value)
    text = text.strip()
    if not text:
        return None
    if len(text) > _MAX_VALUE_LENGTH:
        return text[:_MAX_VALUE_LENGTH] + "…"
    return text


def normalize_context(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty entries and sanitise the rest."""

    normalised: Dict[str, Any] = {}
    for key, raw_value in (values or {}).items():
        if not key:
            continue
        value = sanitize_context_value(raw_value)
        if value is None or value == "" or value == {}:
            continue
        normalised[str(key)] = value
    return normalised


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log ``[TYPE] message (key=value, ...)`` with the details attached as extras."""

    base_message = str(message).strip()
    correlation = current_correlation()
    details = {**correlation, **normalize_context(context), **normalize_context(payload)}
    if duration_ms is not None:
        details["duration_ms"] = round(float(duration_ms), 2)
    display = f"[{event_type}] {base_message}" if event_type else base_message
    if details:
        rendered = ", ".join(f"{key}={value}" for key, value in details.items())
        display = f"{display} ({rendered})"
    extra = {
        "event_type": event_type or "",
        "event_message": base_message,
        "event_details": details,
    }
    logger.log(level, display, extra=extra)


def emit_db_event(action: str, **kwargs: Any) -> None:
    """Emit a structured database event."""

    kwargs.setdefault("level", logging.DEBUG)
    emit_structured_event(DB_QUERY, action, **kwargs)


def emit_file_event(operation: str, **kwargs: Any) -> None:
    """Emit a structured file-system event."""

    emit_structured_event(FILE_OP, operation, **kwargs)


def emit_task_event(phase: str, message: str = "", **kwargs: Any) -> None:
    """Emit a structured background job lifecycle event."""

    payload = dict(kwargs.pop("payload", None) or {})
    payload.setdefault("phase", phase)
    emit_structured_event(TASK_STATE, message or phase, payload=payload, **kwargs)


def log_app_event(message: str, **context: Any) -> None:
    emit_structured_event(APP_EVENT, message, context=context)


__all__ = [
    "ACTOR",
    "DEFAULT_EVENT_LOGGER",
    "JOB_ID",
    "REQUEST_ID",
    "current_correlation",
    "emit_db_event",
    "emit_file_event",
    "emit_structured_event",
    "emit_task_event",
    "log_app_event",
    "new_correlation_id",
    "normalize_context",
    "sanitize_context_value",
]
