"""Database utilities for the exam planner."""

from .session import (
    ExamSessionDatabase,
    database,
    dispose_engine,
    get_engine,
    get_session_factory,
    session_scope,
    uses_database,
)

__all__ = [
    "ExamSessionDatabase",
    "database",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "uses_database",
]
