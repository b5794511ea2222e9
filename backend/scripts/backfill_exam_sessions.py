from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Dict, List

from pydantic import ValidationError

from exam_planner.db.base import Base
from exam_planner.db.session import get_engine, session_scope
from exam_planner.repositories.exam_sessions import exam_sessions
from exam_planner.session_store import DATA_DIR, LEGACY_FILENAME
from exam_planner.study_plan import ExamSession


logger = logging.getLogger("backfill")


def _ensure_database() -> None:
    engine = get_engine()
    Base.metadata.create_all(engine)


def _load_json(path: Path) -> Dict[str, object] | list[object]:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


def backfill_sessions(path: Path, *, overwrite: bool = False) -> int:
    """Copy every student's legacy exam sessions into the database.

    Students who already have rows are left alone unless ``overwrite`` is set.
    """
    if not path.exists():
        logger.info("No legacy exam sessions found at %s", path)
        return 0
    payload = _load_json(path)
    if not isinstance(payload, dict):
        logger.warning("Legacy exam session payload was not a mapping; skipping")
        return 0

    imported = 0
    with session_scope() as session:
        for username, entries in payload.items():
            if not isinstance(entries, list) or not username.strip():
                continue
            if not overwrite and exam_sessions.load(session, username):
                logger.info("Skipping %s; sessions already stored in the database", username)
                continue
            sessions: List[ExamSession] = []
            for entry in entries:
                try:
                    sessions.append(ExamSession.model_validate(entry))
                except ValidationError as exc:
                    logger.warning("Skipping invalid exam session for %s: %s", username, exc)
            exam_sessions.save(session, username, sessions)
            imported += len(sessions)
    logger.info("Imported %d exam sessions", imported)
    return imported


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill the legacy exam session JSON store into the database.")
    parser.add_argument("--sessions", type=Path, default=DATA_DIR / LEGACY_FILENAME)
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace sessions for students that already have database rows.",
    )
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    args = parse_args()
    _ensure_database()
    total = backfill_sessions(args.sessions, overwrite=args.overwrite)
    logger.info("Backfill completed: %d exam sessions", total)


if __name__ == "__main__":
    main()
