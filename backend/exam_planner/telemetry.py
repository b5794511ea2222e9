"""Structured telemetry events for scheduling and planner instrumentation."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from threading import RLock
from time import perf_counter
from typing import Any, Callable, Dict, Iterator, List

logger = logging.getLogger("exam_planner.telemetry")


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]


_listeners: List[Callable[[TelemetryEvent], None]] = []
_lock = RLock()


def register_listener(listener: Callable[[TelemetryEvent], None]) -> None:
    """Register an in-process listener (used in tests)."""
    with _lock:
        _listeners.append(listener)


def clear_listeners() -> None:
    """Remove all registered listeners."""
    with _lock:
        _listeners.clear()


def emit_event(name: str, **fields: Any) -> None:
    """Emit a structured telemetry event and fan it out to listeners."""
    payload = _sanitize(fields)
    event = TelemetryEvent(name=name, payload=payload)

    with _lock:
        listeners = list(_listeners)

    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", name)

    structured = {"event": name, **payload}
    logger.info("TELEMETRY %s", json.dumps(structured, default=_json_default))


@contextmanager
def timed_event(name: str, **fields: Any) -> Iterator[Dict[str, Any]]:
    """Emit ``name`` when the block exits, with ``duration_ms`` and any fields the block adds.

    The event is emitted with ``status="error"`` when the block raises; the
    exception is re-raised unchanged.
    """
    payload: Dict[str, Any] = dict(fields)
    started_at = perf_counter()
    status = "success"
    try:
        yield payload
    except Exception as exc:
        status = "error"
        payload.setdefault("exception_type", exc.__class__.__name__)
        raise
    finally:
        payload.setdefault("status", status)
        payload["duration_ms"] = round((perf_counter() - started_at) * 1000.0, 2)
        emit_event(name, **payload)


def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, (datetime, date)):
            sanitized[key] = value.isoformat()
        else:
            sanitized[key] = value
    return sanitized


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


__all__ = [
    "TelemetryEvent",
    "clear_listeners",
    "emit_event",
    "register_listener",
    "timed_event",
]
