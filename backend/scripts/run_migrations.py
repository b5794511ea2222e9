"""Bring the exam session schema up to date before the API starts.

Nothing happens in ``legacy`` persistence mode unless ``--force`` is given;
``database`` and ``hybrid`` deploys wait for the server, upgrade, and then
check that the planner's tables exist.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Iterable, Optional

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

LOGGER = logging.getLogger("exam_planner.migrations")
URL_ENV_VAR = "EXAM_PLANNER_DATABASE_URL"
MODE_ENV_VAR = "EXAM_PLANNER_PERSISTENCE_MODE"
URL_PLACEHOLDER = f"%({URL_ENV_VAR})s"
REQUIRED_TABLES = ("exam_sessions", "persistence_audit_events")
BACKEND_ROOT = Path(__file__).resolve().parent.parent


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade the exam planner schema.")
    parser.add_argument("--revision", default=os.getenv("EXAM_PLANNER_DB_MIGRATION_REVISION", "head"))
    parser.add_argument(
        "--timeout",
        type=int,
        default=int(os.getenv("EXAM_PLANNER_DB_MIGRATION_TIMEOUT", "60")),
        help="Seconds to wait for the database server.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=float(os.getenv("EXAM_PLANNER_DB_MIGRATION_POLL_INTERVAL", "3")),
    )
    parser.add_argument("--config", default=str(BACKEND_ROOT / "alembic.ini"))
    parser.add_argument("--wait-only", action="store_true", help="Stop once the database answers.")
    parser.add_argument("--force", action="store_true", help="Migrate even in legacy persistence mode.")
    return parser.parse_args(argv)


def get_alembic_config(config_path: str) -> Config:
    config = Config(config_path)
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    """An explicit ``sqlalchemy.url`` wins; a blank or templated one falls back to the environment."""
    url = config.get_main_option("sqlalchemy.url")
    if url and url != URL_PLACEHOLDER:
        return url
    env_url = os.getenv(URL_ENV_VAR)
    if not env_url:
        raise RuntimeError(f"{URL_ENV_VAR} must be set before running migrations.")
    config.set_main_option("sqlalchemy.url", env_url)
    return env_url


def _ping(engine: Engine) -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def wait_for_database(database_url: str, *, timeout: int, poll_interval: float) -> None:
    """Retry ``SELECT 1`` while the server refuses connections; give up after ``timeout`` seconds."""
    engine = create_engine(database_url, pool_pre_ping=True)
    deadline = time.monotonic() + timeout
    attempts = 0
    try:
        while True:
            attempts += 1
            try:
                _ping(engine)
            except OperationalError as exc:
                if time.monotonic() + poll_interval >= deadline:
                    raise RuntimeError(f"Database unreachable after {attempts} attempt(s).") from exc
                LOGGER.warning("Database not ready (attempt %s): %s", attempts, exc)
                time.sleep(poll_interval)
            except SQLAlchemyError as exc:
                raise RuntimeError(f"Database rejected the readiness check: {exc}") from exc
            else:
                LOGGER.info("Database reachable after %s attempt(s)", attempts)
                return
    finally:
        engine.dispose()


def verify_schema(database_url: str, required: Iterable[str] = REQUIRED_TABLES) -> None:
    engine = create_engine(database_url)
    try:
        present = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    missing = sorted(set(required) - present)
    if missing:
        raise RuntimeError(f"Migration finished but tables are missing: {', '.join(missing)}")


def run_migrations(
    revision: str,
    *,
    timeout: int,
    poll_interval: float,
    config: Optional[Config] = None,
    wait_only: bool = False,
    persistence_mode: Optional[str] = None,
    force: bool = False,
) -> bool:
    """Return ``True`` when the database was touched, ``False`` when legacy mode skipped it."""
    mode = persistence_mode or os.getenv(MODE_ENV_VAR, "legacy")
    if mode == "legacy" and not force:
        LOGGER.info("Persistence mode is legacy; no schema to migrate.")
        return False
    config = config or get_alembic_config(str(BACKEND_ROOT / "alembic.ini"))
    database_url = resolve_database_url(config)
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)
    if wait_only:
        return True
    LOGGER.info("Upgrading exam planner schema to %s (mode=%s)", revision, mode)
    command.upgrade(config, revision)
    verify_schema(database_url)
    LOGGER.info("Exam planner schema is current")
    return True


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=os.getenv("EXAM_PLANNER_DB_MIGRATION_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv)
    try:
        run_migrations(
            args.revision,
            timeout=args.timeout,
            poll_interval=args.poll_interval,
            config=get_alembic_config(args.config),
            wait_only=args.wait_only,
            force=args.force,
        )
    except Exception:  # noqa: BLE001
        LOGGER.exception("Schema migration failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
