"""compliance_engine_schema

Create checklist, trigger, reminder, reminder event, audit log and
scheduled job tables.

Revision ID: 5c0a9e2d7b41
Revises:
Create Date: 2024-02-12 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5c0a9e2d7b41"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "compliance_checklists" not in existing_tables:
        op.create_table(
            "compliance_checklists",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("branch_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=75), nullable=True),
            sa.Column("status", sa.String(length=25), nullable=False),
            sa.Column("frequency_type", sa.String(length=25), nullable=False),
            sa.Column("frequency_interval", sa.Integer(), nullable=False),
            sa.Column("custom_frequency_unit", sa.String(length=25), nullable=True),
            sa.Column("custom_frequency_value", sa.Integer(), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("due_time", sa.Time(), nullable=True),
            sa.Column("is_recurring", sa.Boolean(), nullable=False),
            sa.Column("next_due_at", sa.DateTime(), nullable=True),
            sa.Column("last_triggered_at", sa.DateTime(), nullable=True),
            sa.Column("last_completed_at", sa.DateTime(), nullable=True),
            sa.Column("assigned_user_id", sa.Integer(), nullable=True),
            sa.Column("assigned_role", sa.String(length=75), nullable=True),
            sa.Column("escalate_to_user_id", sa.Integer(), nullable=True),
            sa.Column("escalate_to_role", sa.String(length=75), nullable=True),
            sa.Column("escalation_offset_hours", sa.Integer(), nullable=True),
            sa.Column("advance_reminder_offsets", sa.JSON(), nullable=False),
            sa.Column("requires_acknowledgement", sa.Boolean(), nullable=False),
            sa.Column("allow_partial_completion", sa.Boolean(), nullable=False),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )
        op.create_index("ix_compliance_checklists_branch_id", "compliance_checklists", ["branch_id"])
        op.create_index("ix_compliance_checklists_frequency_type", "compliance_checklists", ["frequency_type"])
        op.create_index("ix_compliance_checklists_next_due_at", "compliance_checklists", ["next_due_at"])
        op.create_index("ix_compliance_checklists_deleted_at", "compliance_checklists", ["deleted_at"])
        op.create_index("ix_checklists_branch_status", "compliance_checklists", ["branch_id", "status"])

    if "compliance_checklist_items" not in existing_tables:
        op.create_table(
            "compliance_checklist_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("checklist_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_required", sa.Boolean(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["checklist_id"], ["compliance_checklists.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_compliance_checklist_items_checklist_id",
                        "compliance_checklist_items", ["checklist_id"])

    if "compliance_checklist_triggers" not in existing_tables:
        op.create_table(
            "compliance_checklist_triggers",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("checklist_id", sa.Integer(), nullable=False),
            sa.Column("trigger_type", sa.String(length=25), nullable=False),
            sa.Column("offset_hours", sa.Integer(), nullable=False),
            sa.Column("channels", sa.JSON(), nullable=False),
            sa.Column("escalate_to_user_id", sa.Integer(), nullable=True),
            sa.Column("escalate_to_role", sa.String(length=75), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["checklist_id"], ["compliance_checklists.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_compliance_checklist_triggers_checklist_id",
                        "compliance_checklist_triggers", ["checklist_id"])
        op.create_index("ix_compliance_checklist_triggers_is_active",
                        "compliance_checklist_triggers", ["is_active"])
        op.create_index("ix_ck_triggers_type", "compliance_checklist_triggers",
                        ["checklist_id", "trigger_type"])

    if "compliance_reminders" not in existing_tables:
        op.create_table(
            "compliance_reminders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("branch_id", sa.Integer(), nullable=True),
            sa.Column("checklist_id", sa.Integer(), nullable=True),
            sa.Column("source_key", sa.String(length=50), nullable=True),
            sa.Column("cycle_due_at", sa.DateTime(), nullable=True),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("reminder_type", sa.String(length=50), nullable=False),
            sa.Column("priority", sa.String(length=25), nullable=False),
            sa.Column("delivery_channel", sa.String(length=25), nullable=False),
            sa.Column("delivery_channels", sa.JSON(), nullable=False),
            sa.Column("remind_at", sa.DateTime(), nullable=True),
            sa.Column("due_at", sa.DateTime(), nullable=True),
            sa.Column("escalate_at", sa.DateTime(), nullable=True),
            sa.Column("status", sa.String(length=25), nullable=False),
            sa.Column("auto_escalate", sa.Boolean(), nullable=False),
            sa.Column("escalate_to_user_id", sa.Integer(), nullable=True),
            sa.Column("escalate_to_role", sa.String(length=75), nullable=True),
            sa.Column("assigned_user_id", sa.Integer(), nullable=True),
            sa.Column("assigned_role", sa.String(length=75), nullable=True),
            sa.Column("sent_count", sa.Integer(), nullable=False),
            sa.Column("attempt_count", sa.Integer(), nullable=False),
            sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
            sa.Column("last_sent_at", sa.DateTime(), nullable=True),
            sa.Column("last_triggered_at", sa.DateTime(), nullable=True),
            sa.Column("last_escalated_at", sa.DateTime(), nullable=True),
            sa.Column("claim_token", sa.String(length=36), nullable=True),
            sa.Column("claimed_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["checklist_id"], ["compliance_checklists.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("checklist_id", "source_key", "cycle_due_at",
                                name="uq_reminder_checklist_source_cycle"),
        )
        op.create_index("ix_compliance_reminders_branch_id", "compliance_reminders", ["branch_id"])
        op.create_index("ix_compliance_reminders_checklist_id", "compliance_reminders", ["checklist_id"])
        op.create_index("ix_compliance_reminders_reminder_type", "compliance_reminders", ["reminder_type"])
        op.create_index("ix_compliance_reminders_deleted_at", "compliance_reminders", ["deleted_at"])
        op.create_index("ix_reminders_status_remind_at", "compliance_reminders", ["status", "remind_at"])
        op.create_index("ix_reminders_assigned_status", "compliance_reminders",
                        ["assigned_user_id", "status"])

    if "compliance_reminder_events" not in existing_tables:
        op.create_table(
            "compliance_reminder_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("reminder_id", sa.Integer(), nullable=False),
            sa.Column("event_type", sa.String(length=50), nullable=False),
            sa.Column("status", sa.String(length=25), nullable=False),
            sa.Column("channel", sa.String(length=25), nullable=True),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("event_metadata", sa.JSON(), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["reminder_id"], ["compliance_reminders.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_compliance_reminder_events_reminder_id",
                        "compliance_reminder_events", ["reminder_id"])
        op.create_index("ix_compliance_reminder_events_processed_at",
                        "compliance_reminder_events", ["processed_at"])
        op.create_index("ix_reminder_events_type_status", "compliance_reminder_events",
                        ["event_type", "status"])

    if "compliance_audit_logs" not in existing_tables:
        op.create_table(
            "compliance_audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("branch_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("details_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_compliance_audit_logs_branch_id", "compliance_audit_logs", ["branch_id"])
        op.create_index("idx_audit_entity", "compliance_audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_action", "compliance_audit_logs", ["action"])
        op.create_index("idx_audit_ts", "compliance_audit_logs", ["timestamp"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "scheduled_jobs",
        "compliance_audit_logs",
        "compliance_reminder_events",
        "compliance_reminders",
        "compliance_checklist_triggers",
        "compliance_checklist_items",
        "compliance_checklists",
    ):
        if table in existing_tables:
            op.drop_table(table)
