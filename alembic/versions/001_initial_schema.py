"""Initial schema — Midnight Protocol pipeline tables.

Revision ID: 001_initial
Revises:
Create Date: 2025-06-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    # ── 1. users (owned by onboarding) ──────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("handle", sa.String, unique=True, nullable=False),
        sa.Column("email", sa.String, index=True, nullable=True),
        sa.Column("full_name", sa.String, nullable=True),
        sa.Column(
            "is_test_user",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        _created_at(),
    )

    # ── 2. agent_profiles ───────────────────────────────────────────
    op.create_table(
        "agent_profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("agent_name", sa.String, nullable=False),
        sa.Column(
            "communication_style",
            sa.String,
            nullable=False,
            server_default="professional_focused",
            comment="professional_focused / warm_conversational / direct_efficient",
        ),
        sa.Column(
            "status",
            sa.String,
            nullable=False,
            server_default="pending",
            comment="pending / approved / rejected",
        ),
        _created_at(),
    )

    # ── 3. personal_stories ─────────────────────────────────────────
    op.create_table(
        "personal_stories",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            unique=True,
            nullable=False,
        ),
        sa.Column("narrative", sa.Text, nullable=False, server_default=""),
        sa.Column("current_focus", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("seeking_connections", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("offering_expertise", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column(
            "sharing_preferences",
            postgresql.JSONB,
            nullable=True,
            comment="field -> shareable with counterpart agents",
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ── 4. matches ──────────────────────────────────────────────────
    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("run_date", sa.Date, nullable=False, index=True),
        sa.Column(
            "user_a_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_b_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "match_type",
            sa.String,
            nullable=False,
            comment="targeted / exploratory / serendipitous",
        ),
        sa.Column("compatibility_score", sa.Float, nullable=False),
        sa.Column("status", sa.String, nullable=False, comment="completed / failed"),
        sa.Column("transcript", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("turn_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("early_stopped", sa.Boolean, nullable=False, server_default="false"),
        sa.Column(
            "outcome",
            sa.String,
            nullable=True,
            comment="STRONG_MATCH / EXPLORATORY_VALUE / FUTURE_POTENTIAL / NO_MATCH",
        ),
        sa.Column("opportunity_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("synergies", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("reasoning", sa.Text, nullable=True),
        sa.Column("introduction_rationale_a", sa.Text, nullable=True),
        sa.Column("introduction_rationale_b", sa.Text, nullable=True),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("reported", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("reported_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint("run_date", "user_a_id", "user_b_id", name="uq_match_run_pair"),
    )
    op.create_index("ix_matches_run_date_reported", "matches", ["run_date", "reported"])

    # ── 5. morning_reports ──────────────────────────────────────────
    op.create_table(
        "morning_reports",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("report_date", sa.Date, nullable=False, index=True),
        sa.Column("notification_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_opportunity_score", sa.Float, nullable=False, server_default="0"),
        sa.Column("match_notifications", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("match_summaries", postgresql.JSONB, nullable=True),
        sa.Column(
            "agent_insights",
            postgresql.JSONB,
            nullable=True,
            comment="{patterns_observed, top_opportunities, recommended_actions}",
        ),
        sa.Column("email_sent", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_to", sa.String, nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "report_date", name="uq_morning_report_user_date"),
    )

    # ── 6. processing_logs (append-only audit) ──────────────────────
    op.create_table(
        "processing_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("run_date", sa.Date, nullable=True, index=True),
        sa.Column(
            "process_type",
            sa.String,
            nullable=False,
            comment="batch / pairing / conversation / evaluation / report / email",
        ),
        sa.Column("action", sa.String, nullable=False),
        sa.Column(
            "status",
            sa.String,
            nullable=False,
            comment="started / completed / failed / skipped / anomaly",
        ),
        sa.Column("processing_time_ms", sa.Integer, nullable=True),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_processing_logs_type_status",
        "processing_logs",
        ["process_type", "status"],
    )

    # ── 7. batch_runs (run lock + pair plan) ────────────────────────
    op.create_table(
        "batch_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("run_date", sa.Date, unique=True, nullable=False),
        sa.Column(
            "status",
            sa.String,
            nullable=False,
            comment="running / completed / partial / failed / aborted",
        ),
        sa.Column("lock_token", sa.String, nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pair_plan", postgresql.JSONB, nullable=True),
        sa.Column("summary", postgresql.JSONB, nullable=True),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── 8. run_progress (resume markers) ────────────────────────────
    op.create_table(
        "run_progress",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("run_date", sa.Date, nullable=False, index=True),
        sa.Column("unit_type", sa.String, nullable=False, comment="pair / report"),
        sa.Column("unit_key", sa.String, nullable=False),
        sa.Column("status", sa.String, nullable=False, comment="done / failed"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("run_date", "unit_type", "unit_key", name="uq_run_progress_unit"),
    )

    # ── 9. system_config (admin overrides) ──────────────────────────
    op.create_table(
        "system_config",
        sa.Column("config_key", sa.String, primary_key=True),
        sa.Column("config_value", sa.Text, nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_table("system_config")
    op.drop_table("run_progress")
    op.drop_table("batch_runs")

    op.drop_index("ix_processing_logs_type_status", table_name="processing_logs")
    op.drop_table("processing_logs")

    op.drop_table("morning_reports")

    op.drop_index("ix_matches_run_date_reported", table_name="matches")
    op.drop_table("matches")

    op.drop_table("personal_stories")
    op.drop_table("agent_profiles")
    op.drop_table("users")
