"""Exam session models, calendar-day helpers, and the module locking predicate."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

SENTINEL_TOPIC = "SIMULAZIONE"
SENTINEL_DAY = 9999
SENTINEL_TASKS = (
    "[PRACTICE] Full timed mock exam - 3h",
    "[PRACTICE] Final review of weak spots - 2h",
)
DAY_FORMAT = "%Y-%m-%d"

Importance = Literal["HIGH", "MEDIUM", "LOW"]
ExamType = Literal["WRITTEN", "ORAL", "MIXED"]
DepthLevel = Literal["BASIC", "MEDIUM", "ADVANCED"]


class SummaryUnit(BaseModel):
    title: str
    content: str = ""
    details: str = ""
    importance: Importance = "MEDIUM"


class Flashcard(BaseModel):
    question: str
    answer: str
    difficulty: int = Field(default=1, ge=1)
    topic: Optional[str] = None


class ExamQuestion(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    question: str
    type: Literal["OPEN", "SHORT", "CONNECT"] = "OPEN"
    model_answer: str = ""
    grading_criteria: List[str] = Field(default_factory=list)


class MockExam(BaseModel):
    title: str
    instructions: str = ""
    questions: List[ExamQuestion] = Field(default_factory=list)
    time_minutes: int = Field(default=120, ge=1)


class StudyModule(BaseModel):
    """One unit of study work that the scheduler assigns to a calendar day.

    ``uid`` is the join key between drag/drop moves, completion toggles and the
    locking logic, so it must survive every rebalance unchanged.
    """

    uid: str
    day: int = 0
    topics: List[str] = Field(default_factory=list)
    tasks: List[str] = Field(default_factory=list)
    priority: Importance = "MEDIUM"
    assigned_date: Optional[str] = None
    completed_tasks: Optional[List[bool]] = None
    is_manually_placed: bool = False


class StudyMaterial(BaseModel):
    """Structured study content produced for one exam by the content service."""

    summary: List[SummaryUnit] = Field(default_factory=list)
    questions: List[ExamQuestion] = Field(default_factory=list)
    flashcards: List[Flashcard] = Field(default_factory=list)
    study_plan: List[StudyModule] = Field(default_factory=list)
    mock_exam: Optional[MockExam] = None
    faculty: str = ""
    course: str = ""
    depth: DepthLevel = "MEDIUM"


class ExamSession(BaseModel):
    """One tracked exam. A missing or malformed ``exam_date`` leaves its modules unplaced."""

    id: str
    faculty: str = ""
    course: str = ""
    exam_type: ExamType = "WRITTEN"
    depth: DepthLevel = "MEDIUM"
    exam_date: str = ""
    is_postponed: bool = False
    is_passed: bool = False
    content: str = ""
    past_exams_content: str = ""
    data: StudyMaterial = Field(default_factory=StudyMaterial)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_update_date: Optional[str] = None
    color_index: int = Field(default=0, ge=0)
    day_offs: List[str] = Field(default_factory=list)

    @field_validator("faculty", "course", "exam_date", "content", "past_exams_content", mode="before")
    @classmethod
    def _blank_when_missing(cls, value: object) -> object:
        return "" if value is None else value


def new_session_id() -> str:
    return str(uuid.uuid4())


def new_module_uid() -> str:
    return uuid.uuid4().hex[:8]


def parse_day(value: Optional[str]) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` string, returning ``None`` for missing or malformed input."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), DAY_FORMAT).date()
    except (ValueError, AttributeError):
        return None


def format_day(value: date) -> str:
    return value.strftime(DAY_FORMAT)


def require_day(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` string supplied by a caller, raising ``ValueError`` when invalid."""
    parsed = parse_day(value)
    if parsed is None:
        raise ValueError(f"'{value}' is not a valid YYYY-MM-DD date.")
    return parsed


def parse_days(values: Iterable[str]) -> set[date]:
    return {day for day in (parse_day(value) for value in values) if day is not None}


def resolve_timezone(raw: Optional[str]) -> Optional[ZoneInfo]:
    if raw is None:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    try:
        return ZoneInfo(trimmed)
    except ZoneInfoNotFoundError:
        logger.warning("Ignoring unsupported timezone value: %s", trimmed)
    except Exception:  # noqa: BLE001
        logger.warning("Failed to parse timezone value: %s", trimmed)
    return None


def local_today(timezone_name: Optional[str] = None) -> date:
    """Return the current calendar day in the student's time zone (system local time by default)."""
    zone = resolve_timezone(timezone_name)
    if zone is None:
        return datetime.now().date()
    return datetime.now(zone).date()


def is_sentinel(module: StudyModule) -> bool:
    return bool(module.topics) and module.topics[0] == SENTINEL_TOPIC


def is_locked(module: StudyModule, today: date) -> bool:
    """Return True when the scheduler must never move ``module``.

    A module is locked when it was pinned by hand, when its assigned day is
    already in the past, or when at least one of its tasks has been completed.
    """
    if module.is_manually_placed:
        return True
    if module.completed_tasks and any(module.completed_tasks):
        return True
    assigned = parse_day(module.assigned_date)
    return assigned is not None and assigned < today


def build_sentinel_module(session_id: str, review_day: date) -> StudyModule:
    """Final mock exam and review placed on the day before the exam."""
    return StudyModule(
        uid=f"auto-sim-{session_id}",
        day=SENTINEL_DAY,
        topics=[SENTINEL_TOPIC],
        tasks=list(SENTINEL_TASKS),
        priority="HIGH",
        assigned_date=format_day(review_day),
        completed_tasks=[False] * len(SENTINEL_TASKS),
        is_manually_placed=False,
    )


def prepare_study_plan(modules: Iterable[StudyModule]) -> List[StudyModule]:
    """Fill in missing uids and size each completion array to its task list."""
    prepared: List[StudyModule] = []
    seen: set[str] = set()
    for module in modules:
        uid = module.uid.strip() if module.uid else ""
        if not uid or uid in seen:
            uid = new_module_uid()
        seen.add(uid)
        flags = list(module.completed_tasks or [])
        if len(flags) < len(module.tasks):
            flags.extend([False] * (len(module.tasks) - len(flags)))
        prepared.append(module.model_copy(update={"uid": uid, "completed_tasks": flags}))
    return prepared


__all__ = [
    "DAY_FORMAT",
    "DepthLevel",
    "ExamQuestion",
    "ExamSession",
    "ExamType",
    "Flashcard",
    "Importance",
    "MockExam",
    "SENTINEL_DAY",
    "SENTINEL_TASKS",
    "SENTINEL_TOPIC",
    "StudyMaterial",
    "StudyModule",
    "SummaryUnit",
    "build_sentinel_module",
    "format_day",
    "is_locked",
    "is_sentinel",
    "local_today",
    "new_module_uid",
    "new_session_id",
    "parse_day",
    "parse_days",
    "prepare_study_plan",
    "require_day",
    "resolve_timezone",
]
