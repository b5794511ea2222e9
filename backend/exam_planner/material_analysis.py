"""Content analysis agent that turns course material into structured study content."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, cast

from agents import Agent, ModelSettings, RunConfig, Runner
from openai import AuthenticationError, PermissionDeniedError, RateLimitError
from openai.types.shared.reasoning import Reasoning
from openai.types.shared.reasoning_effort import ReasoningEffort
from pydantic import BaseModel, Field, ValidationError

from .config import Settings, get_settings
from .study_plan import (
    DepthLevel,
    ExamQuestion,
    ExamType,
    Flashcard,
    Importance,
    StudyMaterial,
    StudyModule,
    SummaryUnit,
    prepare_study_plan,
)
from .telemetry import timed_event

logger = logging.getLogger(__name__)

UPDATE_MARKER = "[UPDATE]"
MIN_UPDATE_CHARS = 20
DEFAULT_TASK_HOURS = "2h"
_HOURS_PATTERN = re.compile(r"(\d+(?:[.,]\d+)?)\s*h\b", re.IGNORECASE)
_QUOTA_MARKERS = ("429", "quota", "exhausted", "rate limit")
_CREDENTIAL_MARKERS = ("401", "403", "api key", "invalid_api_key")

MATERIAL_ANALYSIS_INSTRUCTIONS = (
    "You are a senior university instructional designer. Turn the student's course material into a study kit:"
    " a summary of the core units, practice questions, flashcards, and a day-by-day study plan that covers every"
    " day up to, but excluding, the exam day. Each plan module is one 2-3 hour session with exactly two [THEORY]"
    " tasks and two [PRACTICE] tasks, and every task ends with an hour estimate such as ' - 1h'."
    " Output only JSON following the provided schema."
)


class MaterialAnalysisError(RuntimeError):
    """Raised when the content service cannot return usable study material."""

    def __init__(self, message: str, *, code: str = "analysis_failed") -> None:
        super().__init__(message)
        self.code = code


class SummaryPayload(BaseModel):
    title: str
    content: str = ""
    details: str = ""
    importance: str = "MEDIUM"


class QuestionPayload(BaseModel):
    question: str
    type: str = "OPEN"
    modelAnswer: str = ""
    gradingCriteria: List[str] = Field(default_factory=list)


class FlashcardPayload(BaseModel):
    question: str
    answer: str
    difficulty: int = 1
    topic: Optional[str] = None


class PlanModulePayload(BaseModel):
    uid: Optional[str] = None
    day: int = 0
    topics: List[str] = Field(default_factory=list)
    tasks: List[str] = Field(default_factory=list)
    priority: str = "MEDIUM"


class MaterialAnalysisPayload(BaseModel):
    summary: List[SummaryPayload] = Field(default_factory=list)
    questions: List[QuestionPayload] = Field(default_factory=list)
    flashcards: List[FlashcardPayload] = Field(default_factory=list)
    studyPlan: List[PlanModulePayload] = Field(default_factory=list)


_agent_cache: Dict[str, Agent[Any]] = {}


def _effort(value: str) -> ReasoningEffort:
    allowed = {"minimal", "low", "medium", "high"}
    effort = value if value in allowed else "low"
    return cast(ReasoningEffort, effort)


def _build_agent(model: str) -> Agent[Any]:
    return Agent(
        name="Exam Planner Material Analyst",
        instructions=MATERIAL_ANALYSIS_INSTRUCTIONS,
        model=model,
        tools=[],
        model_settings=ModelSettings(store=False),
    )


def get_material_agent(settings: Settings) -> Agent[Any]:
    model = settings.agent_model or "gpt-5"
    if model not in _agent_cache:
        _agent_cache[model] = _build_agent(model)
    return _agent_cache[model]


def truncate_text(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def merge_update_content(base: str, addition: Optional[str], settings: Optional[Settings] = None) -> str:
    """Combine stored material with newly supplied text for a re-analysis.

    Short or empty additions leave the stored material untouched; otherwise the
    base is cut down and the new text follows an ``[UPDATE]`` marker.
    """
    resolved = settings or get_settings()
    if not addition or len(addition.strip()) <= MIN_UPDATE_CHARS:
        return base
    head = truncate_text(base, resolved.content_update_base_chars)
    return f"{head}\n\n{UPDATE_MARKER}\n{addition}"


def normalize_task(task: str) -> str:
    """Append the default hour estimate to a task label that has none."""
    cleaned = task.strip()
    if not cleaned or _HOURS_PATTERN.search(cleaned):
        return cleaned
    return f"{cleaned} - {DEFAULT_TASK_HOURS}"


def _importance(value: str) -> Importance:
    upper = (value or "").strip().upper()
    return cast(Importance, upper if upper in {"HIGH", "MEDIUM", "LOW"} else "MEDIUM")


def _question_type(value: str) -> str:
    upper = (value or "").strip().upper()
    return upper if upper in {"OPEN", "SHORT", "CONNECT"} else "OPEN"


def coerce_payload(payload: Any) -> MaterialAnalysisPayload:
    if isinstance(payload, MaterialAnalysisPayload):
        return payload
    if isinstance(payload, dict):
        return MaterialAnalysisPayload.model_validate(payload)
    if isinstance(payload, BaseModel):
        return MaterialAnalysisPayload.model_validate(payload.model_dump())
    if isinstance(payload, str):
        data = json.loads(payload)
        return MaterialAnalysisPayload.model_validate(data)
    raise TypeError(f"Unsupported material payload type: {type(payload).__name__}")


def convert_payload(
    payload: MaterialAnalysisPayload,
    *,
    faculty: str,
    course: str,
    depth: DepthLevel,
) -> StudyMaterial:
    """Map the agent's JSON onto domain models, cleansing tasks and filling module ids."""
    modules = [
        StudyModule(
            uid=(entry.uid or "").strip(),
            day=entry.day,
            topics=[topic.strip() for topic in entry.topics if topic.strip()],
            tasks=[normalize_task(task) for task in entry.tasks if task.strip()],
            priority=_importance(entry.priority),
        )
        for entry in payload.studyPlan
    ]
    return StudyMaterial(
        summary=[
            SummaryUnit(
                title=unit.title,
                content=unit.content,
                details=unit.details,
                importance=_importance(unit.importance),
            )
            for unit in payload.summary
        ],
        questions=[
            ExamQuestion(
                question=item.question,
                type=_question_type(item.type),  # type: ignore[arg-type]
                model_answer=item.modelAnswer,
                grading_criteria=list(item.gradingCriteria),
            )
            for item in payload.questions
        ],
        flashcards=[
            Flashcard(
                question=card.question,
                answer=card.answer,
                difficulty=max(card.difficulty, 1),
                topic=card.topic,
            )
            for card in payload.flashcards
        ],
        study_plan=prepare_study_plan(modules),
        faculty=faculty,
        course=course,
        depth=depth,
    )


def _is_quota_error(exc: Exception) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _QUOTA_MARKERS)


def _is_credential_error(exc: Exception) -> bool:
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CREDENTIAL_MARKERS)


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    *,
    attempts: int,
    delay_seconds: float,
) -> Any:
    """Run ``operation``, retrying quota failures ``attempts`` more times after a fixed delay."""
    remaining = attempts
    while True:
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            if _is_quota_error(exc):
                if remaining > 0:
                    remaining -= 1
                    logger.warning(
                        "Content service quota exhausted; retrying in %.1fs (%s attempt(s) left)",
                        delay_seconds,
                        remaining,
                    )
                    await asyncio.sleep(delay_seconds)
                    continue
                raise MaterialAnalysisError("Content service quota exceeded.", code="quota_exceeded") from exc
            if _is_credential_error(exc):
                raise MaterialAnalysisError("Content service API key is invalid.", code="api_key_invalid") from exc
            raise


async def analyze_materials(
    text: str,
    *,
    faculty: str,
    course: str,
    exam_type: ExamType,
    depth: DepthLevel,
    exam_date: str,
    settings: Optional[Settings] = None,
) -> StudyMaterial:
    """Run the material analysis agent and return validated study material."""
    resolved = settings or get_settings()
    agent = get_material_agent(resolved)
    material_text = truncate_text(text, resolved.content_max_chars)

    schema_description = (
        "Respond strictly as JSON with keys: summary (array of {title, content, details, importance}), "
        "questions (array of {question, type ('OPEN' | 'SHORT' | 'CONNECT'), modelAnswer, gradingCriteria}), "
        "flashcards (array of {question, answer, difficulty, topic}), and studyPlan (array of "
        "{day (int, authoring order), topics (string array), tasks (string array), priority ('HIGH' | 'MEDIUM' | 'LOW')})."
    )
    message = (
        f"COURSE: \"{course}\" ({faculty}). EXAM TYPE: {exam_type}. DEPTH: {depth}. EXAM DATE: {exam_date}.\n"
        f"Create enough plan modules to fill every day up to {exam_date}, excluding the exam day.\n\n"
        f"{schema_description}\n\n"
        f"MATERIAL:\n{material_text}"
    )

    async def _run() -> Any:
        return await Runner.run(
            agent,
            message,
            context=None,
            run_config=RunConfig(
                model_settings=ModelSettings(
                    reasoning=Reasoning(effort=_effort(resolved.agent_reasoning), summary="auto"),
                )
            ),
        )

    with timed_event(
        "material_analysis",
        course=course,
        input_chars=len(text),
        truncated=len(material_text) < len(text),
    ) as metrics:
        try:
            result = await call_with_retry(
                _run,
                attempts=resolved.content_retry_attempts,
                delay_seconds=resolved.content_retry_delay_seconds,
            )
        except MaterialAnalysisError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise MaterialAnalysisError(f"Content service call failed: {exc}") from exc
        try:
            payload = coerce_payload(result.final_output)
        except (ValidationError, ValueError, TypeError, json.JSONDecodeError) as exc:
            logger.warning("Material analysis returned invalid payload for %s: %s", course, exc)
            raise MaterialAnalysisError(f"Content service returned an invalid payload: {exc}") from exc
        material = convert_payload(payload, faculty=faculty, course=course, depth=depth)
        metrics["module_count"] = len(material.study_plan)
    return material


__all__ = [
    "MaterialAnalysisError",
    "MaterialAnalysisPayload",
    "UPDATE_MARKER",
    "analyze_materials",
    "call_with_retry",
    "coerce_payload",
    "convert_payload",
    "get_material_agent",
    "merge_update_content",
    "normalize_task",
    "truncate_text",
]
