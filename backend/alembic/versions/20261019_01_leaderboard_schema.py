"""Attempt, profile, summary and reconciliation tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20261019_01_leaderboard_schema"
down_revision = None
branch_labels = None
depends_on = None

_SCOPE_COLUMNS = ("school_id", "union_id", "upazila_id", "district_id", "division_id")


def _scope_columns(include_group: bool = True) -> list:
    columns = [sa.Column(name, sa.String(length=128), nullable=True) for name in _SCOPE_COLUMNS]
    if include_group:
        columns.append(sa.Column("group_id", sa.String(length=128), nullable=True))
    return columns


def upgrade() -> None:
    op.create_table(
        "test_attempts",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("test_id", sa.String(length=128), nullable=True),
        sa.Column("display_name", sa.String(length=256), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_questions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("time_taken_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("remaining_time_seconds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("combined_score", sa.Float(), nullable=False),
        sa.Column("period", sa.String(length=16), nullable=False),
        *_scope_columns(),
        sa.Column("user_answers", sa.JSON(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index(
        "ix_test_attempts_period_order",
        "test_attempts",
        ["period", "combined_score", "time_taken_seconds", "finished_at"],
    )
    for scope in ("school", "group", "union", "upazila", "district", "division"):
        op.create_index(
            f"ix_test_attempts_period_{scope}",
            "test_attempts",
            ["period", f"{scope}_id", "combined_score"],
        )
    op.create_index("ix_test_attempts_user_period", "test_attempts", ["user_id", "period"])

    op.create_table(
        "user_profiles",
        sa.Column("user_id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        *_scope_columns(include_group=False),
        sa.Column("groups", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )

    op.create_table(
        "user_rank_summaries",
        sa.Column("user_id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("total_questions", sa.Integer(), nullable=True),
        sa.Column("combined_score", sa.Float(), nullable=True),
        sa.Column("period", sa.String(length=16), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )

    op.create_table(
        "leaderboard_members",
        sa.Column("board_id", sa.String(length=192), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), primary_key=True, nullable=False),
        sa.Column("period", sa.String(length=16), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("display_name", sa.String(length=256), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("attempt_id", sa.String(length=36), nullable=True),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("total_questions", sa.Integer(), nullable=True),
        sa.Column("combined_score", sa.Float(), nullable=True),
        sa.Column("time_taken_seconds", sa.Float(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        *_scope_columns(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_leaderboard_members_board_rank", "leaderboard_members", ["board_id", "rank"])

    op.create_table(
        "reconciliation_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("target", sa.String(length=16), nullable=False),
        sa.Column("board_id", sa.String(length=192), nullable=True),
        sa.Column("scope", sa.String(length=16), nullable=True),
        sa.Column("scope_value", sa.String(length=128), nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("period", sa.String(length=16), nullable=False),
        sa.Column("attempt_id", sa.String(length=36), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_reconciliation_jobs_pending", "reconciliation_jobs", ["resolved_at", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_reconciliation_jobs_pending", table_name="reconciliation_jobs")
    op.drop_table("reconciliation_jobs")
    op.drop_index("ix_leaderboard_members_board_rank", table_name="leaderboard_members")
    op.drop_table("leaderboard_members")
    op.drop_table("user_rank_summaries")
    op.drop_table("user_profiles")
    op.drop_index("ix_test_attempts_user_period", table_name="test_attempts")
    for scope in ("school", "group", "union", "upazila", "district", "division"):
        op.drop_index(f"ix_test_attempts_period_{scope}", table_name="test_attempts")
    op.drop_index("ix_test_attempts_period_order", table_name="test_attempts")
    op.drop_table("test_attempts")
