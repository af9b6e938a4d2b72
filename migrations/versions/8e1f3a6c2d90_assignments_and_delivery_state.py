"""assignments_and_delivery_state

Per-channel delivery state on reminders, overdue tracking on checklists,
and the checklist assignment tables.

Revision ID: 8e1f3a6c2d90
Revises: 5c0a9e2d7b41
Create Date: 2024-03-18 14:10:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "8e1f3a6c2d90"
down_revision = "5c0a9e2d7b41"
branch_labels = None
depends_on = None


def _table_names(bind) -> set[str]:
    return set(sa.inspect(bind).get_table_names())


def _columns(bind, table_name: str) -> set[str]:
    return {c["name"] for c in sa.inspect(bind).get_columns(table_name)}


def upgrade():
    bind = op.get_bind()

    if "delivered_channels" not in _columns(bind, "compliance_reminders"):
        with op.batch_alter_table("compliance_reminders") as batch_op:
            batch_op.add_column(
                sa.Column("delivered_channels", sa.JSON(), nullable=False, server_default="[]")
            )

    if "overdue_since" not in _columns(bind, "compliance_checklists"):
        with op.batch_alter_table("compliance_checklists") as batch_op:
            batch_op.add_column(sa.Column("overdue_since", sa.DateTime(), nullable=True))

    tables = _table_names(bind)

    if "compliance_checklist_assignments" not in tables:
        op.create_table(
            "compliance_checklist_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("checklist_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("branch_id", sa.Integer(), nullable=True),
            sa.Column("cycle_due_at", sa.DateTime(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False),
            sa.Column("progress_percentage", sa.Integer(), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("last_interaction_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("acknowledged_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["checklist_id"], ["compliance_checklists.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("checklist_id", "user_id", "cycle_due_at",
                                name="uq_ck_assignment_user_cycle"),
        )
        op.create_index("ix_compliance_checklist_assignments_checklist_id",
                        "compliance_checklist_assignments", ["checklist_id"])
        op.create_index("ix_compliance_checklist_assignments_user_id",
                        "compliance_checklist_assignments", ["user_id"])
        op.create_index("ix_compliance_checklist_assignments_last_interaction_at",
                        "compliance_checklist_assignments", ["last_interaction_at"])
        op.create_index("ix_ck_assignments_status_progress", "compliance_checklist_assignments",
                        ["status", "progress_percentage"])

    if "compliance_checklist_assignment_items" not in tables:
        op.create_table(
            "compliance_checklist_assignment_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("assignment_id", sa.Integer(), nullable=False),
            sa.Column("checklist_item_id", sa.Integer(), nullable=False),
            sa.Column("is_completed", sa.Boolean(), nullable=False),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("completed_by", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["assignment_id"], ["compliance_checklist_assignments.id"],
                                    ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["checklist_item_id"], ["compliance_checklist_items.id"],
                                    ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("assignment_id", "checklist_item_id", name="uq_ck_assignment_item"),
        )
        op.create_index("ix_compliance_checklist_assignment_items_assignment_id",
                        "compliance_checklist_assignment_items", ["assignment_id"])
        op.create_index("ix_compliance_checklist_assignment_items_is_completed",
                        "compliance_checklist_assignment_items", ["is_completed"])


def downgrade():
    op.drop_table("compliance_checklist_assignment_items")
    op.drop_table("compliance_checklist_assignments")
    with op.batch_alter_table("compliance_checklists") as batch_op:
        batch_op.drop_column("overdue_since")
    with op.batch_alter_table("compliance_reminders") as batch_op:
        batch_op.drop_column("delivered_channels")
