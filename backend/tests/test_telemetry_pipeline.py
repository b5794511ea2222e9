from __future__ import annotations

import importlib
import os

import pytest

os.environ.setdefault("EXAM_PLANNER_DATABASE_URL", "sqlite://")

from exam_planner.config import get_settings  # noqa: E402
from exam_planner.db.base import Base  # noqa: E402
from exam_planner.db.session import dispose_engine, get_engine  # noqa: E402
from exam_planner.session_store import ExamSessionStore  # noqa: E402
from exam_planner.telemetry import clear_listeners, emit_event  # noqa: E402


@pytest.fixture()
def pipeline(monkeypatch, tmp_path):
    dispose_engine()
    engine = get_engine()
    Base.metadata.create_all(engine)
    clear_listeners()
    module = importlib.reload(importlib.import_module("exam_planner.telemetry_pipeline"))
    store = ExamSessionStore(tmp_path / "exam_sessions.json")
    store._mode = "database"  # type: ignore[attr-defined]
    try:
        yield module, store
    finally:
        clear_listeners()
        Base.metadata.drop_all(engine)
        dispose_engine()


def _use_mode(monkeypatch, module, mode: str) -> None:
    settings = get_settings().model_copy(update={"persistence_mode": mode})
    monkeypatch.setattr(module, "get_settings", lambda: settings)


def test_planner_mutations_persist(pipeline, monkeypatch) -> None:
    module, store = pipeline
    _use_mode(monkeypatch, module, "database")

    emit_event("planner_mutation", username="Telemetry-User", action="move_module", revision=3)
    emit_event("rebalance", session_count=1, placed=4)

    events = store.recent_telemetry_events("telemetry-user")
    assert [event.event_type for event in events] == ["planner_mutation"]
    assert events[0].payload["action"] == "move_module"
    assert events[0].payload["revision"] == 3


def test_legacy_mode_skips_persistence(pipeline, monkeypatch) -> None:
    module, store = pipeline
    _use_mode(monkeypatch, module, "legacy")

    emit_event("planner_mutation", username="telemetry-user", action="rebalance", revision=1)

    assert store.recent_telemetry_events("telemetry-user") == []


def test_events_without_username_are_ignored(pipeline, monkeypatch) -> None:
    module, store = pipeline
    _use_mode(monkeypatch, module, "database")

    emit_event("planner_mutation", username="  ", action="rebalance", revision=1)
    emit_event("planner_mutation", action="rebalance", revision=1)

    assert store.recent_telemetry_events("telemetry-user") == []
