"""Lazily built SQLAlchemy engine for the ``database`` and ``hybrid`` persistence modes."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings, get_settings
from .monitoring import instrument_engine

logger = logging.getLogger(__name__)


def uses_database(settings: Settings) -> bool:
    """Legacy mode keeps everything in the JSON file and never opens a connection."""
    return settings.persistence_mode != "legacy"


class ExamSessionDatabase:
    """Owns one engine per process, rebuilt after :meth:`dispose`."""

    def __init__(self, settings_provider: Callable[[], Settings] = get_settings) -> None:
        self._settings_provider = settings_provider
        self._lock = threading.Lock()
        self._engine: Optional[Engine] = None
        self._factory: Optional[sessionmaker[Session]] = None

    def engine(self) -> Engine:
        with self._lock:
            if self._engine is None:
                settings = self._settings_provider()
                self._engine = self._connect(settings)
                self._factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
                logger.info(
                    "Exam session database ready (mode=%s, dialect=%s)",
                    settings.persistence_mode,
                    self._engine.dialect.name,
                )
            return self._engine

    def session_factory(self) -> sessionmaker[Session]:
        self.engine()
        assert self._factory is not None
        return self._factory

    @contextmanager
    def session(self, *, commit: bool = True) -> Iterator[Session]:
        """Yield a session that commits on success and always rolls back on error."""
        session = self.session_factory()()
        try:
            yield session
            if commit:
                session.commit()
        except Exception:  # noqa: BLE001
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        with self._lock:
            engine, self._engine, self._factory = self._engine, None, None
        if engine is not None:
            engine.dispose()

    @staticmethod
    def _connect(settings: Settings) -> Engine:
        url = settings.database_url
        if not url:
            raise RuntimeError(
                f"Persistence mode '{settings.persistence_mode}' needs EXAM_PLANNER_DATABASE_URL to be set."
            )
        options: dict[str, object] = {"echo": settings.database_echo, "pool_pre_ping": True}
        if url.startswith("sqlite"):
            # the debounced save timer writes from its own thread
            options["connect_args"] = {"check_same_thread": False}
        else:
            options.update(pool_size=settings.database_pool_size, max_overflow=settings.database_max_overflow)
        engine = create_engine(url, **options)
        instrument_engine(engine)
        return engine


database = ExamSessionDatabase()


def get_engine() -> Engine:
    return database.engine()


def get_session_factory() -> sessionmaker[Session]:
    return database.session_factory()


def session_scope(*, commit: bool = True):
    return database.session(commit=commit)


def dispose_engine() -> None:
    database.dispose()


__all__ = [
    "ExamSessionDatabase",
    "database",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "uses_database",
]
