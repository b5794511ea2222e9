"""Exam session and audit tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261019_01_exam_sessions"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "exam_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("course", sa.Text(), nullable=False, server_default=""),
        sa.Column("exam_date", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("is_passed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.UniqueConstraint("username", "session_id", name="uq_exam_sessions_username_session"),
    )
    op.create_index("ix_exam_sessions_username", "exam_sessions", ["username"])

    op.create_table(
        "persistence_audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("username", sa.String(length=128), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_persistence_audit_events_username", "persistence_audit_events", ["username"])


def downgrade() -> None:
    op.drop_index("ix_persistence_audit_events_username", table_name="persistence_audit_events")
    op.drop_table("persistence_audit_events")
    op.drop_index("ix_exam_sessions_username", table_name="exam_sessions")
    op.drop_table("exam_sessions")
