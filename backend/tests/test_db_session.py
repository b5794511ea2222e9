from __future__ import annotations

import os

import pytest
from sqlalchemy import text

os.environ.setdefault("EXAM_PLANNER_DATABASE_URL", "sqlite://")

from exam_planner.config import get_settings  # noqa: E402
from exam_planner.db.session import ExamSessionDatabase, uses_database  # noqa: E402


def _settings(**update):
    return get_settings().model_copy(update=update)


def test_missing_url_names_the_persistence_mode() -> None:
    database = ExamSessionDatabase(lambda: _settings(database_url=None, persistence_mode="hybrid"))

    with pytest.raises(RuntimeError, match="hybrid"):
        database.engine()


def test_engine_is_shared_until_disposed(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'planner.db'}"
    database = ExamSessionDatabase(lambda: _settings(database_url=url, persistence_mode="database"))
    try:
        first = database.engine()
        assert database.engine() is first
        assert database.session_factory().kw["bind"] is first

        database.dispose()
        assert database.engine() is not first
    finally:
        database.dispose()


def test_session_rolls_back_on_error(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'planner.db'}"
    database = ExamSessionDatabase(lambda: _settings(database_url=url, persistence_mode="database"))
    try:
        with database.session() as session:
            session.execute(text("CREATE TABLE notes (body TEXT)"))

        with pytest.raises(ValueError):
            with database.session() as session:
                session.execute(text("INSERT INTO notes (body) VALUES ('draft')"))
                raise ValueError("abort")

        with database.session(commit=False) as session:
            assert session.execute(text("SELECT COUNT(*) FROM notes")).scalar_one() == 0
    finally:
        database.dispose()


def test_only_legacy_mode_skips_the_database() -> None:
    assert uses_database(_settings(persistence_mode="legacy")) is False
    assert uses_database(_settings(persistence_mode="hybrid")) is True
    assert uses_database(_settings(persistence_mode="database")) is True
