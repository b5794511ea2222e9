"""Connection pool counters for the session store engine."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Dict

from sqlalchemy import event
from sqlalchemy.engine import Engine

from ..telemetry import emit_event


@dataclass
class PoolCounters:
    connects: int = 0
    checkouts: int = 0
    checkins: int = 0
    last_emit: float = 0.0


_COUNTERS: Dict[int, PoolCounters] = {}
_TELEMETRY_INTERVAL = float(os.getenv("EXAM_PLANNER_DB_TELEMETRY_INTERVAL", "30"))
_POOL_EVENTS = {
    "connect": "connects",
    "checkout": "checkouts",
    "checkin": "checkins",
}


def instrument_engine(engine: Engine) -> None:
    """Count pool events on ``engine`` and emit throttled ``db_pool_status`` events."""
    key = id(engine)
    if key in _COUNTERS:
        return
    counters = PoolCounters()
    _COUNTERS[key] = counters

    def _listener(pool_event: str, counter: str):
        def _on_event(*_args) -> None:  # type: ignore[no-untyped-def]
            setattr(counters, counter, getattr(counters, counter) + 1)
            now = time.time()
            if _TELEMETRY_INTERVAL > 0 and (now - counters.last_emit) < _TELEMETRY_INTERVAL:
                return
            counters.last_emit = now
            emit_event("db_pool_status", trigger=pool_event, **get_pool_snapshot(engine))

        return _on_event

    for pool_event, counter in _POOL_EVENTS.items():
        event.listen(engine, pool_event, _listener(pool_event, counter))


def get_pool_snapshot(engine: Engine) -> Dict[str, object]:
    counters = _COUNTERS.get(id(engine))
    return {
        "status": _pool_status(engine),
        "connects": counters.connects if counters else 0,
        "checkouts": counters.checkouts if counters else 0,
        "checkins": counters.checkins if counters else 0,
    }


def _pool_status(engine: Engine) -> str:
    try:
        return engine.pool.status()  # type: ignore[no-untyped-call]
    except Exception as exc:  # noqa: BLE001
        return f"unavailable: {exc}"


__all__ = [
    "get_pool_snapshot",
    "instrument_engine",
]
