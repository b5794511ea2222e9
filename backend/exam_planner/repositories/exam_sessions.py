"""Database-backed exam session repository."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..db.models import ExamSessionModel, PersistenceAuditEventModel
from ..study_plan import ExamSession


def _normalize_username(username: str) -> str:
    normalized = username.strip().lower()
    if not normalized:
        raise ValueError("Username cannot be empty.")
    return normalized


class ExamSessionRepository:
    """Persistence helper that mirrors the JSON-backed session store API."""

    def load(self, session: Session, username: str) -> List[ExamSession]:
        normalized = _normalize_username(username)
        stmt = (
            select(ExamSessionModel)
            .where(ExamSessionModel.username == normalized)
            .order_by(ExamSessionModel.position.asc())
        )
        models = session.execute(stmt).scalars().all()
        return [self._to_domain(model) for model in models]

    def save(self, session: Session, username: str, sessions: Sequence[ExamSession]) -> List[ExamSession]:
        """Replace the stored set for ``username`` with ``sessions``, keeping their order."""
        normalized = _normalize_username(username)
        stmt = select(ExamSessionModel).where(ExamSessionModel.username == normalized)
        existing: Dict[str, ExamSessionModel] = {
            model.session_id: model for model in session.execute(stmt).scalars().all()
        }

        keep_ids = {exam.id for exam in sessions}
        removed = [session_id for session_id in existing if session_id not in keep_ids]
        if removed:
            session.execute(
                delete(ExamSessionModel).where(
                    ExamSessionModel.username == normalized,
                    ExamSessionModel.session_id.in_(removed),
                )
            )

        for position, exam in enumerate(sessions):
            model = existing.get(exam.id)
            if model is None:
                model = ExamSessionModel(session_id=exam.id, username=normalized)
                session.add(model)
            self._apply_session(model, exam, position)

        session.flush()
        self._record_audit(
            session,
            normalized,
            "sessions_save",
            {"session_count": len(sessions), "removed": len(removed)},
        )
        return self.load(session, normalized)

    def delete(self, session: Session, username: str) -> bool:
        normalized = _normalize_username(username)
        result = session.execute(delete(ExamSessionModel).where(ExamSessionModel.username == normalized))
        session.flush()
        deleted = bool(result.rowcount)
        if deleted:
            self._record_audit(session, normalized, "sessions_delete", {"session_count": result.rowcount})
        return deleted

    def record_telemetry_event(
        self,
        session: Session,
        username: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> None:
        self._record_audit(session, _normalize_username(username), event_type, dict(payload))
        session.flush()

    def recent_telemetry_events(
        self,
        session: Session,
        username: str,
        *,
        limit: int = 50,
    ) -> List[PersistenceAuditEventModel]:
        """Most recent audit rows for ``username``, newest first."""
        stmt = (
            select(PersistenceAuditEventModel)
            .where(PersistenceAuditEventModel.username == _normalize_username(username))
            .order_by(PersistenceAuditEventModel.created_at.desc(), PersistenceAuditEventModel.id.desc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply_session(self, model: ExamSessionModel, exam: ExamSession, position: int) -> None:
        model.position = position
        model.course = exam.course
        model.exam_date = exam.exam_date
        model.is_passed = exam.is_passed
        model.payload = exam.model_dump(mode="json")

    def _to_domain(self, model: ExamSessionModel) -> ExamSession:
        payload: Dict[str, Any] = dict(model.payload or {})
        payload.setdefault("id", model.session_id)
        if not payload.get("course"):
            payload["course"] = model.course or ""
        if not payload.get("exam_date"):
            payload["exam_date"] = model.exam_date or ""
        return ExamSession.model_validate(payload)

    def _record_audit(self, session: Session, username: str, event_type: str, payload: Dict[str, Any]) -> None:
        event = PersistenceAuditEventModel(
            username=username,
            event_type=event_type,
            payload=payload,
            actor="system",
        )
        session.add(event)


exam_sessions = ExamSessionRepository()

__all__ = ["ExamSessionRepository", "exam_sessions"]
