"""Rebalancing engine that assigns calendar days to study modules across exam sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

from .study_plan import (
    ExamSession,
    StudyModule,
    build_sentinel_module,
    format_day,
    is_locked,
    is_sentinel,
    parse_day,
    parse_days,
)
from .telemetry import timed_event

logger = logging.getLogger(__name__)


MAX_SUBJECTS_PER_DAY = 2
WINDOW_LIMIT_DAYS = 180

Occupancy = Mapping[date, FrozenSet[str]]


@dataclass
class _Placement:
    """Result of placing one session, kept for telemetry."""

    session: ExamSession
    placed: int = 0
    unplaced: int = 0
    sentinel_added: bool = False
    window_size: int = 0
    locked: int = 0
    dropped_sentinels: List[str] = field(default_factory=list)


def occupy(occupancy: Occupancy, day: date, session_id: str) -> Dict[date, FrozenSet[str]]:
    """Return a copy of ``occupancy`` with ``session_id`` registered on ``day``."""
    updated = dict(occupancy)
    updated[day] = occupancy.get(day, frozenset()) | {session_id}
    return updated


def spread_indices(count: int, window_size: int) -> List[int]:
    """Evenly spread ``count`` items over ``window_size`` slots.

    Item ``i`` lands on ``floor(i * window_size / count)``, clamped to the last
    slot, so 3 items over 9 slots use slots 0, 3 and 6.
    """
    if count <= 0 or window_size <= 0:
        return []
    return [min((index * window_size) // count, window_size - 1) for index in range(count)]


def walk_window(today: date, exam_day: Optional[date], limit: int = WINDOW_LIMIT_DAYS) -> List[date]:
    """Every day from ``today`` up to, but excluding, ``exam_day``, capped at ``limit`` steps."""
    if exam_day is None:
        return []
    days: List[date] = []
    cursor = today
    steps = 0
    while cursor < exam_day and steps < limit:
        days.append(cursor)
        cursor += timedelta(days=1)
        steps += 1
    return days


def partition_modules(
    modules: Sequence[StudyModule],
    today: date,
) -> Tuple[List[StudyModule], List[StudyModule], List[StudyModule]]:
    """Split a plan into locked modules, floating modules, and stale sentinels.

    Floating modules come back ordered by their authoring ``day``; the sort is
    stable so modules sharing a day keep their plan order.
    """
    locked: List[StudyModule] = []
    floating: List[StudyModule] = []
    stale_sentinels: List[StudyModule] = []
    for module in modules:
        if is_locked(module, today):
            locked.append(module)
        elif is_sentinel(module):
            stale_sentinels.append(module)
        else:
            floating.append(module)
    floating.sort(key=lambda module: module.day)
    return locked, floating, stale_sentinels


class StudyScheduler:
    """Assigns study modules to days while respecting locks, exam days and daily subject capacity."""

    def __init__(
        self,
        *,
        max_subjects_per_day: int = MAX_SUBJECTS_PER_DAY,
        window_limit_days: int = WINDOW_LIMIT_DAYS,
    ) -> None:
        self._max_subjects = max(max_subjects_per_day, 1)
        self._window_limit = max(window_limit_days, 1)

    @property
    def max_subjects_per_day(self) -> int:
        return self._max_subjects

    def rebalance(self, sessions: Sequence[ExamSession], today: date) -> List[ExamSession]:
        """Recompute day assignments for every floating module in ``sessions``.

        Sessions are placed in exam-date order so earlier exams claim capacity
        first; the result keeps the input order. Inputs are never mutated.
        """
        if not sessions:
            return []

        with timed_event("rebalance", today=today, session_count=len(sessions)) as metrics:
            blocked = self.blocked_exam_days(sessions)
            occupancy: Occupancy = self.locked_occupancy(sessions, today)

            placements: Dict[int, _Placement] = {}
            for index in self._placement_order(sessions):
                placement, occupancy = self.place_session(sessions[index], today, blocked, occupancy)
                placements[index] = placement

            results = [placements[index].session for index in range(len(sessions))]
            metrics.update(
                placed=sum(p.placed for p in placements.values()),
                unplaced=sum(p.unplaced for p in placements.values()),
                sentinels_added=sum(1 for p in placements.values() if p.sentinel_added),
                locked=sum(p.locked for p in placements.values()),
                dropped_sentinels=sum(len(p.dropped_sentinels) for p in placements.values()),
                window_days=sum(p.window_size for p in placements.values()),
                passed=sum(1 for session in sessions if session.is_passed),
            )
            if metrics["unplaced"]:
                logger.warning(
                    "Rebalance left %s module(s) without a day (today=%s)",
                    metrics["unplaced"],
                    format_day(today),
                )
        return results

    def seed_dates(self, session: ExamSession, today: date) -> ExamSession:
        """Spread every module of a brand-new session over the days before its exam.

        Other sessions, exam days and capacity are ignored; the first full
        rebalance supersedes these dates.
        """
        window = walk_window(today, parse_day(session.exam_date), self._window_limit)
        modules = session.data.study_plan
        if not window or not modules:
            return session.model_copy(deep=True)

        ordered = sorted(range(len(modules)), key=lambda position: modules[position].day)
        seeded: List[StudyModule] = list(modules)
        for slot, position in zip(spread_indices(len(ordered), len(window)), ordered):
            seeded[position] = modules[position].model_copy(
                update={"assigned_date": format_day(window[slot])},
                deep=True,
            )
        data = session.data.model_copy(update={"study_plan": seeded}, deep=True)
        return session.model_copy(update={"data": data}, deep=True)

    def blocked_exam_days(self, sessions: Sequence[ExamSession]) -> Set[date]:
        """Exam days of every active session; nobody studies on an exam day."""
        blocked: Set[date] = set()
        for session in sessions:
            if session.is_passed:
                continue
            exam_day = parse_day(session.exam_date)
            if exam_day is not None:
                blocked.add(exam_day)
        return blocked

    def locked_occupancy(self, sessions: Sequence[ExamSession], today: date) -> Dict[date, FrozenSet[str]]:
        """Occupancy contributed by locked modules, which always take precedence over floating ones."""
        occupancy: Dict[date, FrozenSet[str]] = {}
        for session in sessions:
            for module in session.data.study_plan:
                if not is_locked(module, today):
                    continue
                assigned = parse_day(module.assigned_date)
                if assigned is None:
                    continue
                occupancy = occupy(occupancy, assigned, session.id)
        return occupancy

    def available_days(
        self,
        session: ExamSession,
        today: date,
        blocked: Set[date],
        occupancy: Occupancy,
    ) -> List[date]:
        day_offs = parse_days(session.day_offs)
        available: List[date] = []
        for day in walk_window(today, parse_day(session.exam_date), self._window_limit):
            if day in blocked or day in day_offs:
                continue
            occupants = occupancy.get(day, frozenset())
            if len(occupants) < self._max_subjects or session.id in occupants:
                available.append(day)
        return available

    def place_session(
        self,
        session: ExamSession,
        today: date,
        blocked: Set[date],
        occupancy: Occupancy,
    ) -> Tuple[_Placement, Occupancy]:
        """Place one session's floating modules and return the updated occupancy."""
        if session.is_passed:
            return _Placement(session=session.model_copy(deep=True)), occupancy

        locked, floating, stale_sentinels = partition_modules(session.data.study_plan, today)
        sentinel = self._sentinel_for(session, locked, blocked, today)
        if sentinel is not None:
            occupancy = occupy(occupancy, parse_day(sentinel.assigned_date), session.id)  # type: ignore[arg-type]

        window = self.available_days(session, today, blocked, occupancy)
        reserved = {
            parse_day(module.assigned_date)
            for module in locked + ([sentinel] if sentinel else [])
            if is_sentinel(module)
        }
        trimmed = [day for day in window if day not in reserved]
        if trimmed:
            window = trimmed

        placed: List[StudyModule] = []
        if floating and window:
            for module, slot in zip(floating, spread_indices(len(floating), len(window))):
                chosen = window[slot]
                placed.append(
                    module.model_copy(
                        update={"assigned_date": format_day(chosen), "is_manually_placed": False},
                        deep=True,
                    )
                )
                occupancy = occupy(occupancy, chosen, session.id)
        elif floating:
            logger.info(
                "No available days for session %s (%s); %s module(s) left unplaced",
                session.id,
                session.course,
                len(floating),
            )
            placed = [
                module.model_copy(update={"assigned_date": None, "is_manually_placed": False}, deep=True)
                for module in floating
            ]

        plan = [module.model_copy(deep=True) for module in locked] + placed
        if sentinel is not None:
            plan.append(sentinel)

        data = session.data.model_copy(update={"study_plan": plan}, deep=True)
        updated = session.model_copy(update={"data": data}, deep=True)
        placement = _Placement(
            session=updated,
            placed=len(placed) if window else 0,
            unplaced=0 if window else len(placed),
            sentinel_added=sentinel is not None,
            window_size=len(window),
            locked=len(locked),
            dropped_sentinels=[module.uid for module in stale_sentinels],
        )
        return placement, occupancy

    def _sentinel_for(
        self,
        session: ExamSession,
        locked: Sequence[StudyModule],
        blocked: Set[date],
        today: date,
    ) -> Optional[StudyModule]:
        if any(is_sentinel(module) for module in locked):
            return None
        exam_day = parse_day(session.exam_date)
        if exam_day is None:
            return None
        review_day = exam_day - timedelta(days=1)
        if review_day in blocked or review_day < today:
            return None
        return build_sentinel_module(session.id, review_day)

    @staticmethod
    def _placement_order(sessions: Sequence[ExamSession]) -> List[int]:
        def sort_key(index: int) -> Tuple[date, int]:
            exam_day = parse_day(sessions[index].exam_date)
            return (exam_day or date.max, index)

        return sorted(range(len(sessions)), key=sort_key)


scheduler = StudyScheduler()


def rebalance_sessions(sessions: Sequence[ExamSession], today: date) -> List[ExamSession]:
    """Run one full rebalance with the default scheduler."""
    return scheduler.rebalance(sessions, today)


def seed_session_dates(session: ExamSession, today: date) -> ExamSession:
    return scheduler.seed_dates(session, today)


def unscheduled_modules(sessions: Sequence[ExamSession], today: date) -> List[Tuple[str, str]]:
    """``(session_id, uid)`` pairs for floating modules of active sessions that have no day."""
    missing: List[Tuple[str, str]] = []
    for session in sessions:
        if session.is_passed:
            continue
        for module in session.data.study_plan:
            if module.assigned_date is None and not is_locked(module, today):
                missing.append((session.id, module.uid))
    return missing


__all__ = [
    "MAX_SUBJECTS_PER_DAY",
    "Occupancy",
    "StudyScheduler",
    "WINDOW_LIMIT_DAYS",
    "occupy",
    "partition_modules",
    "rebalance_sessions",
    "scheduler",
    "seed_session_dates",
    "spread_indices",
    "unscheduled_modules",
    "walk_window",
]
