"""add_absences_and_ladder_challenges

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 15:00:00.000000

- leagues.absence_policy and leagues.challenge_range
- box_league_weeks.absences
- matches.cancel_reason (cancelled postponements no longer reuse dispute_reason)
- ladder_challenges table

Every step is guarded: databases created by 001 from the current models
already have these columns.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import text


# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _column_exists(conn, table_name: str, column_name: str) -> bool:
    """Check if a column exists in a table."""
    result = conn.execute(
        text(
            "SELECT EXISTS (SELECT FROM information_schema.columns WHERE table_name = :table_name AND column_name = :column_name)"
        ),
        {"table_name": table_name, "column_name": column_name},
    )
    return result.scalar()


def _table_exists(conn, table_name: str) -> bool:
    """Check if a table exists."""
    result = conn.execute(
        text("SELECT EXISTS (SELECT FROM information_schema.tables WHERE table_name = :table_name)"),
        {"table_name": table_name},
    )
    return result.scalar()


def upgrade() -> None:
    conn = op.get_bind()

    if not _column_exists(conn, "leagues", "absence_policy"):
        absence_policy = sa.Enum("FREEZE", "GHOST_SCORE", "AVERAGE_POINTS", "AUTO_RELEGATE", name="absencepolicy")
        absence_policy.create(conn, checkfirst=True)
        op.add_column(
            "leagues",
            sa.Column("absence_policy", absence_policy, nullable=False, server_default="FREEZE"),
        )
    if not _column_exists(conn, "leagues", "challenge_range"):
        op.add_column(
            "leagues", sa.Column("challenge_range", sa.Integer(), nullable=False, server_default="3")
        )
    if not _column_exists(conn, "box_league_weeks", "absences"):
        op.add_column(
            "box_league_weeks", sa.Column("absences", sa.JSON(), nullable=False, server_default="[]")
        )
    if not _column_exists(conn, "matches", "cancel_reason"):
        op.add_column("matches", sa.Column("cancel_reason", sa.String(200), nullable=True))

    # Cancelled postponements used to keep their reason in dispute_reason
    op.execute(
        text("""
        UPDATE matches
        SET cancel_reason = dispute_reason, dispute_reason = NULL
        WHERE status = 'CANCELLED' AND disputed_by IS NULL AND dispute_reason IS NOT NULL
    """)
    )

    # New enum value for substitute members
    op.execute(text("ALTER TYPE memberstatus ADD VALUE IF NOT EXISTS 'SUBSTITUTE'"))

    if not _table_exists(conn, "ladder_challenges"):
        op.create_table(
            "ladder_challenges",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("league_id", sa.Integer(), sa.ForeignKey("leagues.id"), nullable=False),
            sa.Column("challenger_member_id", sa.Integer(), sa.ForeignKey("league_members.id"), nullable=False),
            sa.Column("challenged_member_id", sa.Integer(), sa.ForeignKey("league_members.id"), nullable=False),
            sa.Column(
                "status",
                sa.Enum("PENDING", "ACCEPTED", "DECLINED", "COMPLETED", "CANCELLED", name="challengestatus"),
                nullable=False,
            ),
            sa.Column("challenger_rank", sa.Integer(), nullable=False),
            sa.Column("challenged_rank", sa.Integer(), nullable=False),
            sa.Column("match_id", sa.Integer(), sa.ForeignKey("matches.id", ondelete="SET NULL"), nullable=True),
            sa.Column("completion_deadline", sa.DateTime(timezone=True), nullable=True),
            sa.Column("winner_member_id", sa.Integer(), nullable=True),
            sa.Column("created_by", sa.String(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("responded_by", sa.String(), nullable=True),
            sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index(
            "idx_ladder_challenges_league_status", "ladder_challenges", ["league_id", "status"]
        )


def downgrade() -> None:
    conn = op.get_bind()

    if _table_exists(conn, "ladder_challenges"):
        op.drop_index("idx_ladder_challenges_league_status", table_name="ladder_challenges")
        op.drop_table("ladder_challenges")
        op.execute(text("DROP TYPE IF EXISTS challengestatus"))

    # PostgreSQL cannot drop a single enum value; SUBSTITUTE stays on memberstatus
    if _column_exists(conn, "matches", "cancel_reason"):
        op.drop_column("matches", "cancel_reason")
    if _column_exists(conn, "box_league_weeks", "absences"):
        op.drop_column("box_league_weeks", "absences")
    if _column_exists(conn, "leagues", "challenge_range"):
        op.drop_column("leagues", "challenge_range")
    if _column_exists(conn, "leagues", "absence_policy"):
        op.drop_column("leagues", "absence_policy")
        op.execute(text("DROP TYPE IF EXISTS absencepolicy"))
