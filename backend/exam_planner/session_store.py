"""Persistence facade for each student's set of exam sessions."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Set, Tuple

from .config import get_settings
from .db.session import session_scope
from .study_plan import ExamSession

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
LEGACY_FILENAME = "exam_sessions.json"


if TYPE_CHECKING:
    from .repositories.exam_sessions import ExamSessionRepository


def _repo() -> "ExamSessionRepository":
    from .repositories.exam_sessions import exam_sessions as repository

    return repository


def _normalize_username(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise ValueError("Username cannot be empty.")
    return normalized


def _clone_all(sessions: Sequence[ExamSession]) -> List[ExamSession]:
    return [session.model_copy(deep=True) for session in sessions]


def _default_legacy_path() -> Path:
    configured = get_settings().data_dir
    base = Path(configured).expanduser() if configured else DATA_DIR
    return base / LEGACY_FILENAME


class _DatabaseExamSessionStore:
    """Database-backed persistence layer mirroring the legacy store API."""

    def load(self, username: str) -> List[ExamSession]:
        with session_scope(commit=False) as session:
            return _clone_all(_repo().load(session, username))

    def save(self, username: str, sessions: Sequence[ExamSession]) -> List[ExamSession]:
        with session_scope() as session:
            return _clone_all(_repo().save(session, username, sessions))

    def delete(self, username: str) -> bool:
        with session_scope() as session:
            return _repo().delete(session, username)

    def recent_telemetry_events(self, username: str, limit: int = 50):
        with session_scope(commit=False) as session:
            return _repo().recent_telemetry_events(session, username, limit=limit)


class _LegacyExamSessionStore:
    """JSON-backed persistence used for offline mode and database fallbacks."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path or _default_legacy_path()
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_unlocked(self) -> Dict[str, List[ExamSession]]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        stored: Dict[str, List[ExamSession]] = {}
        for key, payloads in raw.items():
            sessions: List[ExamSession] = []
            for payload in payloads or []:
                try:
                    sessions.append(ExamSession.model_validate(payload))
                except Exception:  # noqa: BLE001
                    logger.exception("Failed to parse stored exam session for %s", key)
            stored[key] = sessions
        return stored

    def _write_unlocked(self, stored: Dict[str, List[ExamSession]]) -> None:
        payload = {
            username: [session.model_dump(mode="json") for session in sessions]
            for username, sessions in stored.items()
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        tmp_path.replace(self._path)

    def load(self, username: str) -> List[ExamSession]:
        normalized = _normalize_username(username)
        with self._lock:
            stored = self._load_unlocked()
            return _clone_all(stored.get(normalized, []))

    def save(self, username: str, sessions: Sequence[ExamSession]) -> List[ExamSession]:
        normalized = _normalize_username(username)
        with self._lock:
            stored = self._load_unlocked()
            stored[normalized] = _clone_all(sessions)
            self._write_unlocked(stored)
            return _clone_all(stored[normalized])

    def delete(self, username: str) -> bool:
        normalized = _normalize_username(username)
        with self._lock:
            stored = self._load_unlocked()
            if normalized not in stored:
                return False
            del stored[normalized]
            self._write_unlocked(stored)
            return True

    def recent_telemetry_events(self, username: str, limit: int = 50):
        return []


class ExamSessionStore:
    """Facade that delegates to database or legacy persistence based on configuration."""

    def __init__(self, legacy_path: Path | None = None) -> None:
        settings = get_settings()
        self._mode = settings.persistence_mode
        self._db_store = _DatabaseExamSessionStore()
        self._legacy_store = _LegacyExamSessionStore(path=legacy_path)
        self._pending_resync: Set[str] = set()

    @property
    def mode(self) -> str:
        return self._mode

    def _call(self, method: str, *args, **kwargs):
        username = self._extract_username(args)
        if self._mode == "hybrid" and username is not None:
            self._try_resync(username)
        if self._mode == "legacy":
            return getattr(self._legacy_store, method)(*args, **kwargs)
        try:
            return getattr(self._db_store, method)(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            if self._mode == "hybrid":
                logger.warning(
                    "Database persistence error during %s; falling back to legacy store: %s",
                    method,
                    exc,
                )
                self._mark_for_resync(username)
                return getattr(self._legacy_store, method)(*args, **kwargs)
            raise

    def _extract_username(self, args: Tuple[Any, ...]) -> Optional[str]:
        if args and isinstance(args[0], str):
            return args[0]
        return None

    def _mark_for_resync(self, username: Optional[str]) -> None:
        if username is None:
            return
        try:
            normalized = _normalize_username(username)
        except ValueError:
            return
        self._pending_resync.add(normalized)

    def _try_resync(self, username: str) -> None:
        try:
            normalized = _normalize_username(username)
        except ValueError:
            return
        if normalized not in self._pending_resync:
            return
        self._resync_from_legacy(username, normalized)

    def _resync_from_legacy(self, username: str, normalized: str) -> None:
        legacy_sessions = self._legacy_store.load(username)
        try:
            if legacy_sessions:
                self._db_store.save(username, legacy_sessions)
            else:
                self._db_store.delete(username)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to resync legacy exam sessions for %s: %s", username, exc)
            return
        self._pending_resync.discard(normalized)
        logger.info("Resynced %s exam session(s) for %s from the legacy store", len(legacy_sessions), normalized)

    def load(self, username: str) -> List[ExamSession]:
        """Return the stored sessions for ``username``; an unknown student has none."""
        return self._call("load", username)

    def save(self, username: str, sessions: Sequence[ExamSession]) -> List[ExamSession]:
        """Replace the stored set for ``username``."""
        return self._call("save", username, list(sessions))

    def delete(self, username: str) -> bool:
        deleted = self._call("delete", username)
        if deleted:
            try:
                self._pending_resync.discard(_normalize_username(username))
            except ValueError:
                pass
        return deleted

    def recent_telemetry_events(self, username: str, limit: int = 50):
        return self._call("recent_telemetry_events", username, limit=limit)


session_store = ExamSessionStore()

__all__ = [
    "DATA_DIR",
    "ExamSessionStore",
    "session_store",
]
