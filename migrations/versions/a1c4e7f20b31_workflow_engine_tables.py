"""workflow_engine_tables

Creates the project workflow engine schema:
  - workflow_phases                   - phase library
  - workflow_service_types            - service code → default phase keys
  - phase_requirements                - per-phase required / optional actions
  - phase_automation_rules            - automatic transition rules
  - project_phase_tracking            - one workflow state row per project
  - project_requirement_completions   - one row per (project, requirement)
  - project_payment_signals           - billing confirmations
  - phase_transition_history          - append-only transition audit
  - phase_automation_log              - append-only automation audit
  - scheduled_jobs                    - sweep job registry

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all().

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-10-18 09:12:44.120871
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c4e7f20b31'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Reference data ────────────────────────────────────────────────────
    if "workflow_phases" not in existing:
        op.create_table(
            "workflow_phases",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("key", sa.String(length=20), nullable=False,
                      comment="Stable short code: ONB, IDEA, DSGN, ..."),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("icon", sa.String(length=50), nullable=True),
            sa.Column("category", sa.String(length=20), nullable=False, server_default="standard",
                      comment="onboarding | standard | delivery"),
            sa.Column("requires_client_action", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("key"),
        )

    if "workflow_service_types" not in existing:
        op.create_table(
            "workflow_service_types",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=10), nullable=False),
            sa.Column("display_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("default_phase_keys", sa.JSON(), nullable=False,
                      comment="Ordered list of Phase.key"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "phase_requirements" not in existing:
        op.create_table(
            "phase_requirements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("phase_key", sa.String(length=20), nullable=False),
            sa.Column("requirement_key", sa.String(length=100), nullable=False),
            sa.Column("requirement_type", sa.String(length=50), nullable=False),
            sa.Column("requirement_text", sa.Text(), nullable=False),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            *_timestamps(),
            sa.ForeignKeyConstraint(["phase_key"], ["workflow_phases.key"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("phase_key", "requirement_key", name="uq_phase_requirement_key"),
        )
        op.create_index("ix_phase_requirements_phase_key", "phase_requirements", ["phase_key"])
        op.create_index("ix_phase_requirements_requirement_key", "phase_requirements", ["requirement_key"])

    if "phase_automation_rules" not in existing:
        op.create_table(
            "phase_automation_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("from_phase_key", sa.String(length=20), nullable=False),
            sa.Column("to_phase_key", sa.String(length=20), nullable=True,
                      comment="NULL = next phase in the project's composition"),
            sa.Column("condition_type", sa.String(length=50), nullable=False),
            sa.Column("condition_params", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["from_phase_key"], ["workflow_phases.key"]),
            sa.ForeignKeyConstraint(["to_phase_key"], ["workflow_phases.key"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("from_phase_key", "to_phase_key", "condition_type",
                                name="uq_automation_rule_from_to_type"),
        )
        op.create_index("ix_automation_rules_from_active", "phase_automation_rules",
                        ["from_phase_key", "is_active"])

    # ── Per-project state ─────────────────────────────────────────────────
    if "project_phase_tracking" not in existing:
        op.create_table(
            "project_phase_tracking",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.String(length=64), nullable=False),
            sa.Column("services", sa.JSON(), nullable=False),
            sa.Column("phase_keys", sa.JSON(), nullable=False,
                      comment="Frozen ordered phase composition"),
            sa.Column("current_phase_key", sa.String(length=20), nullable=False),
            sa.Column("current_phase_index", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("phase_started_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("phase_completions", sa.JSON(), nullable=False),
            sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_project_phase_tracking_project_id", "project_phase_tracking",
                        ["project_id"], unique=True)

    if "project_requirement_completions" not in existing:
        op.create_table(
            "project_requirement_completions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.String(length=64), nullable=False),
            sa.Column("requirement_id", sa.Integer(), nullable=False),
            sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_by", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=False,
                      comment="Linked form_id / document_id / payment_id / file_id"),
            *_timestamps(),
            sa.ForeignKeyConstraint(["requirement_id"], ["phase_requirements.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "requirement_id", name="uq_project_requirement"),
        )
        op.create_index("ix_project_requirement_completions_project_id",
                        "project_requirement_completions", ["project_id"])
        op.create_index("ix_requirement_completions_project_completed",
                        "project_requirement_completions", ["project_id", "completed"])

    if "project_payment_signals" not in existing:
        op.create_table(
            "project_payment_signals",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.String(length=64), nullable=False),
            sa.Column("payment_id", sa.String(length=100), nullable=False),
            sa.Column("amount", sa.Numeric(precision=12, scale=2), nullable=True),
            sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("recorded_by", sa.String(length=64), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "payment_id", name="uq_payment_signal_project_payment"),
        )
        op.create_index("ix_project_payment_signals_project_id", "project_payment_signals", ["project_id"])

    # ── Append-only audit ─────────────────────────────────────────────────
    if "phase_transition_history" not in existing:
        op.create_table(
            "phase_transition_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.String(length=64), nullable=False),
            sa.Column("from_phase_key", sa.String(length=20), nullable=True),
            sa.Column("to_phase_key", sa.String(length=20), nullable=False),
            sa.Column("transition_type", sa.String(length=20), nullable=False, server_default="advance",
                      comment="initial | advance | override | completion"),
            sa.Column("is_override", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("transitioned_by", sa.String(length=64), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phase_transition_history_project_id", "phase_transition_history", ["project_id"])
        op.create_index("ix_phase_history_project_created", "phase_transition_history",
                        ["project_id", "created_at"])

    if "phase_automation_log" not in existing:
        op.create_table(
            "phase_automation_log",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=True),
            sa.Column("project_id", sa.String(length=64), nullable=False),
            sa.Column("from_phase_key", sa.String(length=20), nullable=True),
            sa.Column("to_phase_key", sa.String(length=20), nullable=True),
            sa.Column("outcome", sa.String(length=20), nullable=False,
                      comment="completed | failed | test"),
            sa.Column("input_snapshot", sa.JSON(), nullable=False),
            sa.Column("error_detail", sa.Text(), nullable=True),
            sa.Column("details", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["rule_id"], ["phase_automation_rules.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_phase_automation_log_rule_id", "phase_automation_log", ["rule_id"])
        op.create_index("ix_automation_log_project_created", "phase_automation_log",
                        ["project_id", "created_at"])

    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs",
        "phase_automation_log",
        "phase_transition_history",
        "project_payment_signals",
        "project_requirement_completions",
        "project_phase_tracking",
        "phase_automation_rules",
        "phase_requirements",
        "workflow_service_types",
        "workflow_phases",
    ):
        op.drop_table(table)
