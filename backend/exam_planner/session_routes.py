"""Exam session REST endpoints: every mutation answers with the rebalanced plan."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .config import get_settings
from .material_analysis import MaterialAnalysisError, analyze_materials, merge_update_content
from .planner import StudyPlanner
from .scheduler import unscheduled_modules
from .session_store import session_store
from .study_plan import DepthLevel, ExamSession, ExamType, StudyMaterial, format_day, require_day

router = APIRouter(prefix="/api/planner", tags=["planner"])
logger = logging.getLogger(__name__)

T = TypeVar("T")

_planner: Optional[StudyPlanner] = None


def get_planner() -> StudyPlanner:
    global _planner
    if _planner is None:
        _planner = StudyPlanner.from_settings(session_store, get_settings())
    return _planner


def reset_planner() -> None:
    global _planner
    if _planner is not None:
        _planner.close()
    _planner = None


class UnscheduledModulePayload(BaseModel):
    session_id: str
    uid: str


class PlannerResponse(BaseModel):
    today: str
    sessions: List[ExamSession] = Field(default_factory=list)
    unscheduled: List[UnscheduledModulePayload] = Field(default_factory=list)


class CreateSessionRequest(BaseModel):
    course: str = Field(..., min_length=1)
    exam_date: str = Field(..., min_length=1)
    faculty: str = ""
    exam_type: ExamType = "WRITTEN"
    depth: DepthLevel = "MEDIUM"
    content: str = ""
    past_exams_content: str = ""
    material: Optional[StudyMaterial] = None


class UpdateMaterialRequest(BaseModel):
    content: Optional[str] = None
    material: Optional[StudyMaterial] = None
    exam_date: Optional[str] = None
    exam_type: Optional[ExamType] = None
    depth: Optional[DepthLevel] = None
    past_exams_content: Optional[str] = None


class DateRequest(BaseModel):
    date: str = Field(..., min_length=1)


def _respond(planner: StudyPlanner, sessions: List[ExamSession]) -> PlannerResponse:
    today = planner.today()
    return PlannerResponse(
        today=format_day(today),
        sessions=sessions,
        unscheduled=[
            UnscheduledModulePayload(session_id=session_id, uid=uid)
            for session_id, uid in unscheduled_modules(sessions, today)
        ],
    )


def _apply(action: Callable[[], T]) -> T:
    try:
        return action()
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _find_session(planner: StudyPlanner, username: str, session_id: str) -> ExamSession:
    sessions = _apply(lambda: planner.sessions(username))
    match = next((session for session in sessions if session.id == session_id), None)
    if match is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Exam session '{session_id}' was not found.",
        )
    return match


def _material_error(exc: MaterialAnalysisError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={"code": exc.code, "message": str(exc)},
    )


@router.get("/{username}/sessions", response_model=PlannerResponse, status_code=status.HTTP_200_OK)
def list_sessions(username: str, planner: StudyPlanner = Depends(get_planner)) -> PlannerResponse:
    sessions = _apply(lambda: planner.load(username))
    return _respond(planner, sessions)


@router.post("/{username}/sessions", response_model=PlannerResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    username: str,
    payload: CreateSessionRequest,
    planner: StudyPlanner = Depends(get_planner),
) -> PlannerResponse:
    material = payload.material
    if material is None:
        if not payload.content.strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Provide either study material or course content to analyse.",
            )
        _apply(lambda: require_day(payload.exam_date))
        try:
            material = await analyze_materials(
                payload.content,
                faculty=payload.faculty,
                course=payload.course,
                exam_type=payload.exam_type,
                depth=payload.depth,
                exam_date=payload.exam_date,
            )
        except MaterialAnalysisError as exc:
            logger.warning("Material analysis failed for %s (%s): %s", username, payload.course, exc)
            raise _material_error(exc) from exc

    def _create() -> List[ExamSession]:
        session = planner.build_session(
            username,
            course=payload.course,
            exam_date=payload.exam_date,
            material=material,
            faculty=payload.faculty,
            exam_type=payload.exam_type,
            depth=payload.depth,
            content=payload.content,
            past_exams_content=payload.past_exams_content,
        )
        return planner.create_session(username, session)

    return _respond(planner, await run_in_threadpool(_apply, _create))


@router.put(
    "/{username}/sessions/{session_id}/material",
    response_model=PlannerResponse,
    status_code=status.HTTP_200_OK,
)
async def update_material(
    username: str,
    session_id: str,
    payload: UpdateMaterialRequest,
    planner: StudyPlanner = Depends(get_planner),
) -> PlannerResponse:
    existing = await run_in_threadpool(_find_session, planner, username, session_id)
    if payload.exam_date is not None:
        _apply(lambda: require_day(payload.exam_date))
    material = payload.material
    content = existing.content
    if material is None:
        content = merge_update_content(existing.content, payload.content)
        if not content.strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Provide either study material or course content to analyse.",
            )
        try:
            material = await analyze_materials(
                content,
                faculty=existing.faculty,
                course=existing.course,
                exam_type=payload.exam_type or existing.exam_type,
                depth=payload.depth or existing.depth,
                exam_date=payload.exam_date or existing.exam_date,
            )
        except MaterialAnalysisError as exc:
            logger.warning("Material re-analysis failed for %s (%s): %s", username, session_id, exc)
            raise _material_error(exc) from exc

    sessions = await run_in_threadpool(
        _apply,
        lambda: planner.update_material(
            username,
            session_id,
            material,
            exam_date=payload.exam_date,
            exam_type=payload.exam_type,
            depth=payload.depth,
            content=content,
            past_exams_content=payload.past_exams_content,
        )
    )
    return _respond(planner, sessions)


@router.delete("/{username}/sessions/{session_id}", response_model=PlannerResponse, status_code=status.HTTP_200_OK)
def delete_session(username: str, session_id: str, planner: StudyPlanner = Depends(get_planner)) -> PlannerResponse:
    sessions = _apply(lambda: planner.delete_session(username, session_id))
    return _respond(planner, sessions)


@router.post(
    "/{username}/sessions/{session_id}/passed",
    response_model=PlannerResponse,
    status_code=status.HTTP_200_OK,
)
def mark_passed(username: str, session_id: str, planner: StudyPlanner = Depends(get_planner)) -> PlannerResponse:
    sessions = _apply(lambda: planner.mark_passed(username, session_id))
    return _respond(planner, sessions)


@router.post(
    "/{username}/sessions/{session_id}/modules/{uid}/move",
    response_model=PlannerResponse,
    status_code=status.HTTP_200_OK,
)
def move_module(
    username: str,
    session_id: str,
    uid: str,
    payload: DateRequest,
    planner: StudyPlanner = Depends(get_planner),
) -> PlannerResponse:
    sessions = _apply(lambda: planner.move_module(username, session_id, uid, payload.date))
    return _respond(planner, sessions)


@router.post(
    "/{username}/sessions/{session_id}/modules/{uid}/tasks/{task_index}/toggle",
    response_model=PlannerResponse,
    status_code=status.HTTP_200_OK,
)
def toggle_task(
    username: str,
    session_id: str,
    uid: str,
    task_index: int,
    planner: StudyPlanner = Depends(get_planner),
) -> PlannerResponse:
    sessions = _apply(lambda: planner.toggle_task(username, session_id, uid, task_index))
    return _respond(planner, sessions)


@router.post("/{username}/day-offs/toggle", response_model=PlannerResponse, status_code=status.HTTP_200_OK)
def toggle_day_off(username: str, payload: DateRequest, planner: StudyPlanner = Depends(get_planner)) -> PlannerResponse:
    sessions = _apply(lambda: planner.toggle_day_off(username, payload.date))
    return _respond(planner, sessions)


@router.post("/{username}/rebalance", response_model=PlannerResponse, status_code=status.HTTP_200_OK)
def rebalance(username: str, planner: StudyPlanner = Depends(get_planner)) -> PlannerResponse:
    sessions = _apply(lambda: planner.rebalance(username))
    return _respond(planner, sessions)


__all__ = ["get_planner", "reset_planner", "router"]
