"""Tests for the exam session persistence facade."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Dict, List, Sequence

import pytest

os.environ.setdefault("EXAM_PLANNER_DATABASE_URL", "sqlite://")
os.environ.setdefault("EXAM_PLANNER_DATA_DIR", tempfile.mkdtemp(prefix="exam-planner-tests-"))

from sqlalchemy import func, select  # noqa: E402

from exam_planner.db import models  # noqa: E402
from exam_planner.db.base import Base  # noqa: E402
from exam_planner.db.session import dispose_engine, get_engine, session_scope  # noqa: E402
from exam_planner.planner import StudyPlanner  # noqa: E402
from exam_planner.session_store import ExamSessionStore, _normalize_username  # noqa: E402
from exam_planner.study_plan import ExamSession, StudyMaterial, StudyModule  # noqa: E402


def _session(session_id: str, exam_date: str = "2024-06-10") -> ExamSession:
    return ExamSession(
        id=session_id,
        course=f"Course {session_id}",
        exam_date=exam_date,
        day_offs=["2024-06-02"],
        data=StudyMaterial(
            study_plan=[
                StudyModule(
                    uid=f"{session_id}-0",
                    day=1,
                    topics=["Intro"],
                    tasks=["[THEORY] Read - 1h"],
                    assigned_date="2024-06-01",
                    completed_tasks=[False],
                )
            ]
        ),
    )


def _dump(sessions: Sequence[ExamSession]) -> List[dict]:
    return [session.model_dump() for session in sessions]


class _FakeDBStore:
    def __init__(self) -> None:
        self.raise_errors = True
        self.storage: Dict[str, List[ExamSession]] = {}

    def load(self, username: str) -> List[ExamSession]:
        if self.raise_errors:
            raise RuntimeError("db unavailable")
        return [session.model_copy(deep=True) for session in self.storage.get(_normalize_username(username), [])]

    def save(self, username: str, sessions: Sequence[ExamSession]) -> List[ExamSession]:
        if self.raise_errors:
            raise RuntimeError("db unavailable")
        self.storage[_normalize_username(username)] = [session.model_copy(deep=True) for session in sessions]
        return list(sessions)

    def delete(self, username: str) -> bool:
        if self.raise_errors:
            raise RuntimeError("db unavailable")
        return self.storage.pop(_normalize_username(username), None) is not None


@pytest.fixture()
def legacy_store(tmp_path: Path) -> ExamSessionStore:
    store = ExamSessionStore(tmp_path / "exam_sessions.json")
    store._mode = "legacy"  # type: ignore[attr-defined]
    return store


@pytest.fixture()
def hybrid_store(tmp_path: Path) -> ExamSessionStore:
    store = ExamSessionStore(tmp_path / "exam_sessions.json")
    store._mode = "hybrid"  # type: ignore[attr-defined]
    store._db_store = _FakeDBStore()  # type: ignore[attr-defined]
    return store


@pytest.fixture()
def database_store(tmp_path: Path):
    dispose_engine()
    engine = get_engine()
    Base.metadata.create_all(engine)
    store = ExamSessionStore(tmp_path / "exam_sessions.json")
    store._mode = "database"  # type: ignore[attr-defined]
    try:
        yield store
    finally:
        Base.metadata.drop_all(engine)
        dispose_engine()


def test_legacy_store_round_trip(legacy_store: ExamSessionStore, tmp_path: Path) -> None:
    assert legacy_store.load("alice") == []

    sessions = [_session("A"), _session("B", "2024-06-05")]
    legacy_store.save("  Alice ", sessions)

    loaded = legacy_store.load("ALICE")
    assert _dump(loaded) == _dump(sessions)
    raw = json.loads((tmp_path / "exam_sessions.json").read_text(encoding="utf-8"))
    assert list(raw) == ["alice"]
    assert [entry["id"] for entry in raw["alice"]] == ["A", "B"]


def test_legacy_store_save_replaces_the_whole_set(legacy_store: ExamSessionStore) -> None:
    legacy_store.save("alice", [_session("A"), _session("B")])
    legacy_store.save("alice", [_session("B")])

    assert [session.id for session in legacy_store.load("alice")] == ["B"]


def test_legacy_store_delete(legacy_store: ExamSessionStore) -> None:
    legacy_store.save("alice", [_session("A")])

    assert legacy_store.delete("alice") is True
    assert legacy_store.delete("alice") is False
    assert legacy_store.load("alice") == []


def test_legacy_store_skips_unreadable_sessions(legacy_store: ExamSessionStore, tmp_path: Path) -> None:
    path = tmp_path / "exam_sessions.json"
    path.write_text(
        json.dumps({"alice": [_session("A").model_dump(mode="json"), {"id": "broken"}]}),
        encoding="utf-8",
    )

    assert [session.id for session in legacy_store.load("alice")] == ["A"]


def test_empty_username_is_rejected(legacy_store: ExamSessionStore) -> None:
    with pytest.raises(ValueError):
        legacy_store.load("   ")


def test_hybrid_store_falls_back_and_resyncs(hybrid_store: ExamSessionStore) -> None:
    store = hybrid_store
    fake_db: _FakeDBStore = store._db_store  # type: ignore[assignment]

    store.save("resync-user", [_session("A")])
    assert fake_db.storage == {}
    assert [session.id for session in store._legacy_store.load("resync-user")] == ["A"]  # type: ignore[attr-defined]
    assert "resync-user" in store._pending_resync  # type: ignore[attr-defined]

    fake_db.raise_errors = False

    loaded = store.load("resync-user")
    assert [session.id for session in loaded] == ["A"]
    assert "resync-user" not in store._pending_resync  # type: ignore[attr-defined]
    assert [session.id for session in fake_db.storage["resync-user"]] == ["A"]


def test_database_mode_propagates_errors(hybrid_store: ExamSessionStore) -> None:
    hybrid_store._mode = "database"  # type: ignore[attr-defined]

    with pytest.raises(RuntimeError):
        hybrid_store.load("alice")


def test_database_store_round_trip(database_store: ExamSessionStore) -> None:
    sessions = [_session("A"), _session("B", "2024-06-05")]

    stored = database_store.save("Alice", sessions)

    assert _dump(stored) == _dump(sessions)
    assert _dump(database_store.load("alice")) == _dump(sessions)


def test_database_store_replaces_and_reorders(database_store: ExamSessionStore) -> None:
    database_store.save("alice", [_session("A"), _session("B"), _session("C")])
    database_store.save("alice", [_session("C"), _session("A")])
    database_store.save("bob", [_session("A")])

    assert [session.id for session in database_store.load("alice")] == ["C", "A"]
    assert [session.id for session in database_store.load("bob")] == ["A"]


def test_database_store_delete_records_audit_events(database_store: ExamSessionStore) -> None:
    database_store.save("alice", [_session("A")])

    assert database_store.delete("alice") is True
    assert database_store.delete("alice") is False
    assert database_store.load("alice") == []

    with session_scope(commit=False) as session:
        event_types = session.execute(
            select(models.PersistenceAuditEventModel.event_type)
        ).scalars().all()
        row_count = session.execute(select(func.count()).select_from(models.ExamSessionModel)).scalar_one()
    assert sorted(event_types) == ["sessions_delete", "sessions_save"]
    assert row_count == 0


def _undated(session_id: str, **extra) -> dict:
    payload = {
        "id": session_id,
        "course": "History",
        "data": {
            "study_plan": [
                {"uid": f"{session_id}-0", "day": 1, "topics": ["Treaties"], "tasks": ["[THEORY] Read - 1h"]},
            ]
        },
    }
    payload.update(extra)
    return payload


def test_sessions_without_an_exam_date_survive_load_and_save(
    legacy_store: ExamSessionStore, tmp_path: Path
) -> None:
    path = tmp_path / "exam_sessions.json"
    path.write_text(
        json.dumps(
            {
                "alice": [
                    _session("A").model_dump(mode="json"),
                    _undated("nodate"),
                    _undated("nulldate", exam_date=None),
                ]
            }
        ),
        encoding="utf-8",
    )

    planner = StudyPlanner(legacy_store, clock=lambda: date(2024, 6, 1))
    loaded = planner.load("alice")

    assert [session.id for session in loaded] == ["A", "nodate", "nulldate"]
    undated = [session for session in loaded if session.id != "A"]
    assert all(session.exam_date == "" for session in undated)
    assert all(
        module.assigned_date is None for session in undated for module in session.data.study_plan
    )

    persisted = legacy_store.load("alice")
    assert [session.id for session in persisted] == ["A", "nodate", "nulldate"]
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert [entry["id"] for entry in raw["alice"]] == ["A", "nodate", "nulldate"]


def test_database_rows_without_an_exam_date_load(database_store: ExamSessionStore) -> None:
    with session_scope() as session:
        session.add(
            models.ExamSessionModel(
                session_id="nodate",
                username="alice",
                position=0,
                course="History",
                exam_date="",
                is_passed=False,
                payload=_undated("nodate"),
            )
        )

    planner = StudyPlanner(database_store, clock=lambda: date(2024, 6, 1))
    loaded = planner.load("alice")

    assert [session.id for session in loaded] == ["nodate"]
    assert loaded[0].course == "History"
    assert loaded[0].exam_date == ""
    assert [session.id for session in database_store.load("alice")] == ["nodate"]
