"""Tests for the planner REST endpoints."""

from __future__ import annotations

import os
import tempfile
import threading
from datetime import date
from pathlib import Path
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("EXAM_PLANNER_DATABASE_URL", "sqlite://")
os.environ.setdefault("EXAM_PLANNER_DATA_DIR", tempfile.mkdtemp(prefix="exam-planner-tests-"))

from exam_planner import session_routes  # noqa: E402
from exam_planner.main import app  # noqa: E402
from exam_planner.material_analysis import MaterialAnalysisError  # noqa: E402
from exam_planner.planner import StudyPlanner  # noqa: E402
from exam_planner.session_routes import get_planner  # noqa: E402
from exam_planner.session_store import ExamSessionStore  # noqa: E402
from exam_planner.study_plan import StudyMaterial, StudyModule  # noqa: E402

TODAY = date(2024, 6, 1)


def _material_payload(count: int = 3) -> Dict[str, Any]:
    return {
        "study_plan": [
            {
                "uid": f"m{index}",
                "day": index + 1,
                "topics": [f"Topic {index}"],
                "tasks": ["[THEORY] Read - 1h", "[PRACTICE] Solve - 1h"],
            }
            for index in range(count)
        ]
    }


def _analysed_material() -> StudyMaterial:
    return StudyMaterial(
        study_plan=[
            StudyModule(uid="", day=1, topics=["Analysed"], tasks=["[THEORY] Generated - 2h"]),
            StudyModule(uid="", day=2, topics=["Analysed 2"], tasks=["[PRACTICE] Generated - 2h"]),
        ]
    )


@pytest.fixture()
def client(tmp_path: Path):
    store = ExamSessionStore(tmp_path / "exam_sessions.json")
    store._mode = "legacy"  # type: ignore[attr-defined]
    planner = StudyPlanner(store, clock=lambda: TODAY)
    app.dependency_overrides[get_planner] = lambda: planner
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_planner, None)


def _create(client: TestClient, **overrides: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "course": "Physics",
        "exam_date": "2024-06-10",
        "material": _material_payload(),
    }
    body.update(overrides)
    response = client.post("/api/planner/alice/sessions", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def _modules(payload: Dict[str, Any], index: int = 0) -> List[Dict[str, Any]]:
    return payload["sessions"][index]["data"]["study_plan"]


def test_list_sessions_for_new_student(client: TestClient) -> None:
    response = client.get("/api/planner/alice/sessions")

    assert response.status_code == 200
    assert response.json() == {"today": "2024-06-01", "sessions": [], "unscheduled": []}


def test_create_session_with_explicit_material(client: TestClient) -> None:
    payload = _create(client)

    modules = _modules(payload)
    assert [module["uid"] for module in modules] == ["m0", "m1", "m2", "auto-sim-" + payload["sessions"][0]["id"]]
    assert all(module["assigned_date"] for module in modules)
    assert modules[-1]["assigned_date"] == "2024-06-09"
    assert payload["unscheduled"] == []

    listed = client.get("/api/planner/alice/sessions").json()
    assert [session["id"] for session in listed["sessions"]] == [payload["sessions"][0]["id"]]


def test_create_session_analyses_content(client: TestClient, monkeypatch) -> None:
    captured: Dict[str, Any] = {}

    async def fake_analyze(text: str, **kwargs: Any) -> StudyMaterial:
        captured["text"] = text
        captured.update(kwargs)
        return _analysed_material()

    monkeypatch.setattr(session_routes, "analyze_materials", fake_analyze)

    payload = _create(client, material=None, content="Chapter one covers vectors.", faculty="Science")

    assert captured["text"] == "Chapter one covers vectors."
    assert captured["course"] == "Physics"
    session = payload["sessions"][0]
    assert session["content"] == "Chapter one covers vectors."
    assert session["faculty"] == "Science"
    assert [module["topics"][0] for module in session["data"]["study_plan"][:2]] == ["Analysed", "Analysed 2"]


def test_create_session_requires_material_or_content(client: TestClient) -> None:
    response = client.post(
        "/api/planner/alice/sessions",
        json={"course": "Physics", "exam_date": "2024-06-10"},
    )

    assert response.status_code == 400


def test_create_session_rejects_malformed_exam_date(client: TestClient) -> None:
    response = client.post(
        "/api/planner/alice/sessions",
        json={"course": "Physics", "exam_date": "10/06/2024", "material": _material_payload()},
    )

    assert response.status_code == 400


def test_content_service_failure_maps_to_bad_gateway(client: TestClient, monkeypatch) -> None:
    async def failing_analyze(text: str, **kwargs: Any) -> StudyMaterial:
        raise MaterialAnalysisError("Content service quota exceeded.", code="quota_exceeded")

    monkeypatch.setattr(session_routes, "analyze_materials", failing_analyze)

    response = client.post(
        "/api/planner/alice/sessions",
        json={"course": "Physics", "exam_date": "2024-06-10", "content": "Some notes"},
    )

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "quota_exceeded"


def test_past_exam_reports_unscheduled_modules(client: TestClient) -> None:
    payload = _create(client, exam_date="2024-05-20")

    session_id = payload["sessions"][0]["id"]
    assert payload["unscheduled"] == [
        {"session_id": session_id, "uid": "m0"},
        {"session_id": session_id, "uid": "m1"},
        {"session_id": session_id, "uid": "m2"},
    ]


def test_move_module_endpoint(client: TestClient) -> None:
    session_id = _create(client)["sessions"][0]["id"]

    response = client.post(
        f"/api/planner/alice/sessions/{session_id}/modules/m2/move",
        json={"date": "2024-06-02"},
    )

    assert response.status_code == 200
    moved = next(module for module in _modules(response.json()) if module["uid"] == "m2")
    assert moved["assigned_date"] == "2024-06-02"
    assert moved["is_manually_placed"] is True

    missing = client.post(
        f"/api/planner/alice/sessions/{session_id}/modules/nope/move",
        json={"date": "2024-06-02"},
    )
    assert missing.status_code == 404

    malformed = client.post(
        f"/api/planner/alice/sessions/{session_id}/modules/m2/move",
        json={"date": "June 2nd"},
    )
    assert malformed.status_code == 400


def test_toggle_task_endpoint(client: TestClient) -> None:
    session_id = _create(client)["sessions"][0]["id"]

    response = client.post(f"/api/planner/alice/sessions/{session_id}/modules/m0/tasks/1/toggle")

    assert response.status_code == 200
    toggled = next(module for module in _modules(response.json()) if module["uid"] == "m0")
    assert toggled["completed_tasks"] == [False, True]

    out_of_range = client.post(f"/api/planner/alice/sessions/{session_id}/modules/m0/tasks/5/toggle")
    assert out_of_range.status_code == 400


def test_day_off_toggle_endpoint(client: TestClient) -> None:
    _create(client)

    response = client.post("/api/planner/alice/day-offs/toggle", json={"date": "2024-06-01"})

    assert response.status_code == 200
    session = response.json()["sessions"][0]
    assert session["day_offs"] == ["2024-06-01"]
    assert all(module["assigned_date"] != "2024-06-01" for module in session["data"]["study_plan"])


def test_mark_passed_and_delete_endpoints(client: TestClient) -> None:
    session_id = _create(client)["sessions"][0]["id"]

    passed = client.post(f"/api/planner/alice/sessions/{session_id}/passed")
    assert passed.status_code == 200
    assert passed.json()["sessions"][0]["is_passed"] is True

    deleted = client.delete(f"/api/planner/alice/sessions/{session_id}")
    assert deleted.status_code == 200
    assert deleted.json()["sessions"] == []

    again = client.delete(f"/api/planner/alice/sessions/{session_id}")
    assert again.status_code == 404


def test_update_material_appends_new_content(client: TestClient, monkeypatch) -> None:
    captured: Dict[str, Any] = {}

    async def fake_analyze(text: str, **kwargs: Any) -> StudyMaterial:
        captured["text"] = text
        return _analysed_material()

    monkeypatch.setattr(session_routes, "analyze_materials", fake_analyze)
    session_id = _create(client, content="Original lecture notes")["sessions"][0]["id"]

    response = client.put(
        f"/api/planner/alice/sessions/{session_id}/material",
        json={"content": "A long additional chapter on rotational dynamics"},
    )

    assert response.status_code == 200
    assert captured["text"] == "Original lecture notes\n\n[UPDATE]\nA long additional chapter on rotational dynamics"
    session = response.json()["sessions"][0]
    assert session["last_update_date"] == "2024-06-01"
    assert session["content"] == captured["text"]
    assert [module["topics"][0] for module in session["data"]["study_plan"][:2]] == ["Analysed", "Analysed 2"]


def test_update_material_for_unknown_session(client: TestClient) -> None:
    response = client.put(
        "/api/planner/alice/sessions/missing/material",
        json={"material": _material_payload()},
    )

    assert response.status_code == 404


def test_rebalance_endpoint(client: TestClient) -> None:
    _create(client)

    response = client.post("/api/planner/alice/rebalance")

    assert response.status_code == 200
    assert len(response.json()["sessions"]) == 1


class _ThreadRecordingPlanner(StudyPlanner):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.threads: Dict[str, int] = {}

    def sessions(self, username):  # type: ignore[override]
        self.threads["sessions"] = threading.get_ident()
        return super().sessions(username)

    def create_session(self, username, session):  # type: ignore[override]
        self.threads["create_session"] = threading.get_ident()
        return super().create_session(username, session)

    def update_material(self, username, session_id, material, **kwargs):  # type: ignore[override]
        self.threads["update_material"] = threading.get_ident()
        return super().update_material(username, session_id, material, **kwargs)


def test_analysed_mutations_run_off_the_event_loop(tmp_path: Path, monkeypatch) -> None:
    store = ExamSessionStore(tmp_path / "exam_sessions.json")
    store._mode = "legacy"  # type: ignore[attr-defined]
    planner = _ThreadRecordingPlanner(store, clock=lambda: TODAY)
    loop_threads: List[int] = []

    async def fake_analyze(text: str, **kwargs: Any) -> StudyMaterial:
        loop_threads.append(threading.get_ident())
        return _analysed_material()

    monkeypatch.setattr(session_routes, "analyze_materials", fake_analyze)
    app.dependency_overrides[get_planner] = lambda: planner
    try:
        client = TestClient(app)
        created = client.post(
            "/api/planner/alice/sessions",
            json={"course": "Physics", "exam_date": "2024-06-10", "content": "Kinematics"},
        )
        assert created.status_code == 201, created.text
        session_id = created.json()["sessions"][0]["id"]

        updated = client.put(
            f"/api/planner/alice/sessions/{session_id}/material",
            json={"content": "Dynamics"},
        )
        assert updated.status_code == 200, updated.text
    finally:
        app.dependency_overrides.pop(get_planner, None)

    assert len(set(loop_threads)) == 1
    assert set(planner.threads) == {"sessions", "create_session", "update_material"}
    assert loop_threads[0] not in set(planner.threads.values())
