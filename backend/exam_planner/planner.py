"""Mutation orchestration: applies student actions, rebalances, and persists the result."""

from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .config import Settings
from .scheduler import StudyScheduler, unscheduled_modules
from .study_plan import (
    DepthLevel,
    ExamSession,
    ExamType,
    StudyMaterial,
    StudyModule,
    format_day,
    local_today,
    new_session_id,
    prepare_study_plan,
    require_day,
)
from .telemetry import emit_event

logger = logging.getLogger(__name__)

COLOR_PALETTE_SIZE = 6


class SessionPersistence(Protocol):
    def load(self, username: str) -> List[ExamSession]:  # pragma: no cover - protocol definition
        ...

    def save(self, username: str, sessions: Sequence[ExamSession]) -> List[ExamSession]:  # pragma: no cover
        ...


def _normalize_username(username: str) -> str:
    normalized = username.strip().lower()
    if not normalized:
        raise ValueError("Username cannot be empty.")
    return normalized


def _find_session(sessions: Sequence[ExamSession], session_id: str) -> int:
    for index, session in enumerate(sessions):
        if session.id == session_id:
            return index
    raise LookupError(f"Exam session '{session_id}' was not found.")


def _find_module(session: ExamSession, uid: str) -> int:
    for index, module in enumerate(session.data.study_plan):
        if module.uid == uid:
            return index
    raise LookupError(f"Study module '{uid}' was not found in session '{session.id}'.")


def _with_module(session: ExamSession, index: int, module: StudyModule) -> ExamSession:
    plan = list(session.data.study_plan)
    plan[index] = module
    data = session.data.model_copy(update={"study_plan": plan})
    return session.model_copy(update={"data": data}, deep=True)


class StudyPlanner:
    """Holds each student's working set of sessions and decides when to rebalance it.

    Every structural mutation (create, update, delete, pass, move, day-off
    toggle) runs a full rebalance before the set is handed to persistence, so
    the store only ever sees post-rebalance state. With ``save_delay_seconds``
    set, saves are debounced: a newer mutation supersedes any pending save.
    """

    def __init__(
        self,
        store: SessionPersistence,
        *,
        scheduler: Optional[StudyScheduler] = None,
        clock: Optional[Callable[[], date]] = None,
        timezone: Optional[str] = None,
        save_delay_seconds: float = 0.0,
        rebalance_on_create: bool = True,
        rebalance_on_task_toggle: bool = False,
    ) -> None:
        self._store = store
        self._scheduler = scheduler or StudyScheduler()
        self._clock = clock or (lambda: local_today(timezone))
        self._save_delay = max(save_delay_seconds, 0.0)
        self._rebalance_on_create = rebalance_on_create
        self._rebalance_on_task_toggle = rebalance_on_task_toggle
        self._lock = threading.RLock()
        self._working: Dict[str, List[ExamSession]] = {}
        self._revisions: Dict[str, int] = {}
        self._saved_revisions: Dict[str, int] = {}
        self._timers: Dict[str, threading.Timer] = {}

    @classmethod
    def from_settings(cls, store: SessionPersistence, settings: Settings) -> "StudyPlanner":
        return cls(
            store,
            scheduler=StudyScheduler(
                max_subjects_per_day=settings.max_subjects_per_day,
                window_limit_days=settings.window_limit_days,
            ),
            timezone=settings.student_timezone,
            save_delay_seconds=settings.save_delay_seconds,
            rebalance_on_create=settings.rebalance_on_create,
            rebalance_on_task_toggle=settings.rebalance_on_task_toggle,
        )

    def today(self) -> date:
        return self._clock()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def load(self, username: str) -> List[ExamSession]:
        """Load the persisted set, rebalance it against today, and persist the result."""
        key = _normalize_username(username)
        with self._lock:
            self.flush(key)
            stored = self._store.load(key)
            rebalanced = self._scheduler.rebalance(stored, self.today())
            self._commit(key, rebalanced, action="load")
            return self._snapshot(key)

    def sessions(self, username: str) -> List[ExamSession]:
        key = _normalize_username(username)
        with self._lock:
            self._ensure_loaded(key)
            return self._snapshot(key)

    def unscheduled(self, username: str) -> List[Tuple[str, str]]:
        return unscheduled_modules(self.sessions(username), self.today())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def build_session(
        self,
        username: str,
        *,
        course: str,
        exam_date: str,
        material: Optional[StudyMaterial] = None,
        faculty: str = "",
        exam_type: ExamType = "WRITTEN",
        depth: DepthLevel = "MEDIUM",
        content: str = "",
        past_exams_content: str = "",
    ) -> ExamSession:
        """Assemble a new session from setup fields; the color cycles through the palette."""
        require_day(exam_date)
        existing = self.sessions(username)
        data = (material or StudyMaterial()).model_copy(deep=True)
        data.faculty = data.faculty or faculty
        data.course = data.course or course
        return ExamSession(
            id=new_session_id(),
            faculty=faculty,
            course=course,
            exam_type=exam_type,
            depth=depth,
            exam_date=exam_date,
            content=content,
            past_exams_content=past_exams_content,
            data=data,
            color_index=len(existing) % COLOR_PALETTE_SIZE,
        )

    def create_session(self, username: str, session: ExamSession) -> List[ExamSession]:
        key = _normalize_username(username)
        with self._lock:
            current = self._ensure_loaded(key)
            if any(existing.id == session.id for existing in current):
                raise ValueError(f"Exam session '{session.id}' already exists.")
            today = self.today()
            prepared = self._with_prepared_plan(session, session.data)
            seeded = self._scheduler.seed_dates(prepared, today)
            sessions = current + [seeded]
            if self._rebalance_on_create:
                sessions = self._scheduler.rebalance(sessions, today)
            self._commit(key, sessions, action="create_session", session_id=session.id)
            return self._snapshot(key)

    def update_material(
        self,
        username: str,
        session_id: str,
        material: StudyMaterial,
        *,
        exam_date: Optional[str] = None,
        exam_type: Optional[ExamType] = None,
        depth: Optional[DepthLevel] = None,
        content: Optional[str] = None,
        past_exams_content: Optional[str] = None,
    ) -> List[ExamSession]:
        """Replace a session's material with a fresh module list and rebalance."""
        key = _normalize_username(username)
        if exam_date is not None:
            require_day(exam_date)
        with self._lock:
            sessions = self._ensure_loaded(key)
            index = _find_session(sessions, session_id)
            today = self.today()
            update: Dict[str, object] = {"last_update_date": format_day(today)}
            if exam_date is not None:
                update["exam_date"] = exam_date
            if exam_type is not None:
                update["exam_type"] = exam_type
            if depth is not None:
                update["depth"] = depth
            if content is not None:
                update["content"] = content
            if past_exams_content is not None:
                update["past_exams_content"] = past_exams_content
            updated = self._with_prepared_plan(sessions[index].model_copy(update=update), material)
            sessions[index] = updated
            self._rebalance_and_commit(key, sessions, today, action="update_material", session_id=session_id)
            return self._snapshot(key)

    def delete_session(self, username: str, session_id: str) -> List[ExamSession]:
        key = _normalize_username(username)
        with self._lock:
            sessions = self._ensure_loaded(key)
            del sessions[_find_session(sessions, session_id)]
            self._rebalance_and_commit(key, sessions, self.today(), action="delete_session", session_id=session_id)
            return self._snapshot(key)

    def mark_passed(self, username: str, session_id: str) -> List[ExamSession]:
        key = _normalize_username(username)
        with self._lock:
            sessions = self._ensure_loaded(key)
            index = _find_session(sessions, session_id)
            sessions[index] = sessions[index].model_copy(update={"is_passed": True})
            self._rebalance_and_commit(key, sessions, self.today(), action="mark_passed", session_id=session_id)
            return self._snapshot(key)

    def move_module(self, username: str, session_id: str, uid: str, day: str) -> List[ExamSession]:
        """Pin a module to ``day``; pinned modules are locked from then on."""
        key = _normalize_username(username)
        target = require_day(day)
        with self._lock:
            sessions = self._ensure_loaded(key)
            index = _find_session(sessions, session_id)
            module_index = _find_module(sessions[index], uid)
            module = sessions[index].data.study_plan[module_index].model_copy(
                update={"assigned_date": format_day(target), "is_manually_placed": True}
            )
            sessions[index] = _with_module(sessions[index], module_index, module)
            self._rebalance_and_commit(key, sessions, self.today(), action="move_module", session_id=session_id)
            return self._snapshot(key)

    def toggle_day_off(self, username: str, day: str) -> List[ExamSession]:
        """Toggle ``day`` as a day off for every active session at once.

        When any session already has the day off it is cleared everywhere;
        otherwise it is added to every session that is not passed.
        """
        key = _normalize_username(username)
        label = format_day(require_day(day))
        with self._lock:
            sessions = self._ensure_loaded(key)
            already_off = any(label in session.day_offs for session in sessions)
            toggled: List[ExamSession] = []
            for session in sessions:
                if already_off:
                    day_offs = [value for value in session.day_offs if value != label]
                elif session.is_passed:
                    day_offs = list(session.day_offs)
                else:
                    day_offs = list(session.day_offs) + [label]
                toggled.append(session.model_copy(update={"day_offs": day_offs}))
            self._rebalance_and_commit(key, toggled, self.today(), action="toggle_day_off", day=label)
            return self._snapshot(key)

    def toggle_task(self, username: str, session_id: str, uid: str, task_index: int) -> List[ExamSession]:
        """Flip one completion flag; a completed task locks its module in place."""
        key = _normalize_username(username)
        with self._lock:
            sessions = self._ensure_loaded(key)
            index = _find_session(sessions, session_id)
            module_index = _find_module(sessions[index], uid)
            module = sessions[index].data.study_plan[module_index]
            if task_index < 0 or task_index >= len(module.tasks):
                raise ValueError(
                    f"Task index {task_index} is out of range for module '{uid}' with {len(module.tasks)} task(s)."
                )
            flags = list(module.completed_tasks or [])
            if len(flags) < len(module.tasks):
                flags.extend([False] * (len(module.tasks) - len(flags)))
            flags[task_index] = not flags[task_index]
            sessions[index] = _with_module(
                sessions[index],
                module_index,
                module.model_copy(update={"completed_tasks": flags}),
            )
            if self._rebalance_on_task_toggle:
                sessions = self._scheduler.rebalance(sessions, self.today())
            self._commit(key, sessions, action="toggle_task", session_id=session_id)
            return self._snapshot(key)

    def rebalance(self, username: str) -> List[ExamSession]:
        key = _normalize_username(username)
        with self._lock:
            sessions = self._ensure_loaded(key)
            self._rebalance_and_commit(key, sessions, self.today(), action="rebalance")
            return self._snapshot(key)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def pending_saves(self) -> List[str]:
        with self._lock:
            return [
                username
                for username, revision in self._revisions.items()
                if revision > self._saved_revisions.get(username, 0)
            ]

    def flush(self, username: Optional[str] = None) -> None:
        """Write pending saves now instead of waiting for the debounce timer."""
        with self._lock:
            targets = [_normalize_username(username)] if username else self.pending_saves()
            for key in targets:
                timer = self._timers.pop(key, None)
                if timer is not None:
                    timer.cancel()
                if key in self._revisions:
                    self._write(key, self._revisions[key])

    def close(self) -> None:
        self.flush()

    def _ensure_loaded(self, key: str) -> List[ExamSession]:
        if key not in self._working:
            stored = self._store.load(key)
            rebalanced = self._scheduler.rebalance(stored, self.today())
            self._commit(key, rebalanced, action="load")
        return [session.model_copy(deep=True) for session in self._working[key]]

    def _snapshot(self, key: str) -> List[ExamSession]:
        return [session.model_copy(deep=True) for session in self._working.get(key, [])]

    def _with_prepared_plan(self, session: ExamSession, material: StudyMaterial) -> ExamSession:
        plan = prepare_study_plan(material.study_plan)
        data = material.model_copy(update={"study_plan": plan}, deep=True)
        return session.model_copy(update={"data": data}, deep=True)

    def _rebalance_and_commit(
        self,
        key: str,
        sessions: Sequence[ExamSession],
        today: date,
        *,
        action: str,
        **fields: object,
    ) -> None:
        rebalanced = self._scheduler.rebalance(sessions, today)
        self._commit(key, rebalanced, action=action, **fields)

    def _commit(self, key: str, sessions: Sequence[ExamSession], *, action: str, **fields: object) -> None:
        """Make ``sessions`` the working set; without a save delay the store must accept it first."""
        staged = [session.model_copy(deep=True) for session in sessions]
        revision = self._revisions.get(key, 0) + 1
        pending = self._timers.pop(key, None)
        if pending is not None:
            pending.cancel()
        if self._save_delay <= 0:
            self._persist(key, staged, revision)
        self._working[key] = staged
        self._revisions[key] = revision
        emit_event(
            "planner_mutation",
            username=key,
            action=action,
            revision=revision,
            session_count=len(sessions),
            **fields,
        )
        if self._save_delay > 0:
            self._schedule_save(key, revision)

    def _schedule_save(self, key: str, revision: int) -> None:
        timer = threading.Timer(self._save_delay, self._write, args=(key, revision))
        timer.daemon = True
        self._timers[key] = timer
        timer.start()

    def _write(self, key: str, revision: int) -> None:
        with self._lock:
            if revision != self._revisions.get(key):
                logger.debug("Skipping stale save for %s (revision %s)", key, revision)
                return
            if revision <= self._saved_revisions.get(key, 0):
                return
            self._timers.pop(key, None)
            try:
                self._persist(key, self._snapshot(key), revision)
            except Exception:  # noqa: BLE001
                # stays pending; the next flush or mutation retries it
                logger.exception("Failed to persist exam sessions for %s", key)

    def _persist(self, key: str, sessions: List[ExamSession], revision: int) -> None:
        self._store.save(key, sessions)
        self._saved_revisions[key] = revision
        logger.debug("Persisted %s exam session(s) for %s (revision %s)", len(sessions), key, revision)


__all__ = [
    "COLOR_PALETTE_SIZE",
    "SessionPersistence",
    "StudyPlanner",
]
