"""Telemetry listener that persists planner mutations to the audit table."""

from __future__ import annotations

import logging
from typing import Set

from .config import get_settings
from .db.session import session_scope, uses_database
from .repositories.exam_sessions import exam_sessions
from .telemetry import TelemetryEvent, register_listener

logger = logging.getLogger(__name__)

_MONITORED_EVENTS: Set[str] = {
    "planner_mutation",
}


def _persist_event(event: TelemetryEvent) -> None:
    if event.name not in _MONITORED_EVENTS:
        return
    if not uses_database(get_settings()):
        return
    username = event.payload.get("username")
    if not isinstance(username, str) or not username.strip():
        return
    try:
        with session_scope() as session:
            exam_sessions.record_telemetry_event(session, username, event.name, event.payload)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to persist telemetry event for username=%s", username)


register_listener(_persist_event)

__all__ = ["_MONITORED_EVENTS"]
