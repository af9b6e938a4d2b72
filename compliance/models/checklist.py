"""
Compliance Engine
Checklist domain models.

Models:
    - Checklist: recurring compliance checklist with its schedule rule
    - ChecklistItem: ordered line items of a checklist
    - ChecklistTrigger: explicit reminder trigger rules (advance / due / escalation)
"""

from compliance.models import db
from compliance.models.soft_delete import SoftDeleteMixin
from compliance.utils.clock import iso, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

CHECKLIST_STATUSES = {"active", "inactive", "archived"}

FREQUENCY_TYPES = ("daily", "weekly", "monthly", "quarterly", "yearly", "custom")
CUSTOM_FREQUENCY_UNITS = ("hours", "days", "weeks", "months", "years")

TRIGGER_TYPES = ("advance", "due", "escalation")

CHECKLIST_CATEGORIES = {
    "safety", "inventory", "environmental",
    "data_protection", "quality", "custom",
}


class Checklist(SoftDeleteMixin, db.Model):
    """
    Recurring compliance checklist.

    Owns its items and triggers. ``next_due_at`` is maintained by the
    scheduler tick; ``last_triggered_at`` is the last cycle the tick consumed.
    """

    __tablename__ = "compliance_checklists"
    __table_args__ = (
        db.Index("ix_checklists_branch_status", "branch_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, nullable=True, index=True)
    title = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(50), nullable=True, unique=True)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(75), nullable=True)
    status = db.Column(db.String(25), nullable=False, default="active")

    # Schedule rule
    frequency_type = db.Column(db.String(25), nullable=False, index=True)
    frequency_interval = db.Column(db.Integer, nullable=False, default=1)
    custom_frequency_unit = db.Column(db.String(25), nullable=True)
    custom_frequency_value = db.Column(db.Integer, nullable=True)
    start_date = db.Column(db.Date, nullable=False)
    due_time = db.Column(db.Time, nullable=True)
    is_recurring = db.Column(db.Boolean, nullable=False, default=True)

    next_due_at = db.Column(db.DateTime, nullable=True, index=True)
    last_triggered_at = db.Column(db.DateTime, nullable=True,
                                  comment="Last cycle consumed by the scheduler")
    last_completed_at = db.Column(db.DateTime, nullable=True)
    overdue_since = db.Column(db.DateTime, nullable=True,
                              comment="Earliest lapsed cycle nobody completed; cleared on completion")

    # Assignment & escalation
    assigned_user_id = db.Column(db.Integer, nullable=True)
    assigned_role = db.Column(db.String(75), nullable=True)
    escalate_to_user_id = db.Column(db.Integer, nullable=True)
    escalate_to_role = db.Column(db.String(75), nullable=True)
    escalation_offset_hours = db.Column(db.Integer, nullable=True)
    advance_reminder_offsets = db.Column(db.JSON, nullable=False, default=list,
                                         comment="Hours before due, unique positive ints")

    requires_acknowledgement = db.Column(db.Boolean, nullable=False, default=False)
    allow_partial_completion = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "ChecklistItem", backref="checklist", lazy="select",
        cascade="all, delete-orphan",
        order_by="[ChecklistItem.sort_order, ChecklistItem.id]",
    )
    triggers = db.relationship(
        "ChecklistTrigger", backref="checklist", lazy="select",
        cascade="all, delete-orphan",
        order_by="[ChecklistTrigger.trigger_type, ChecklistTrigger.offset_hours, ChecklistTrigger.id]",
    )

    @property
    def is_schedulable(self):
        """Active, not archived, with a cycle to work on."""
        return self.status == "active" and self.deleted_at is None

    @property
    def open_cycle(self):
        """Oldest cycle still waiting for completion."""
        return self.overdue_since or self.next_due_at

    def active_triggers(self):
        return [t for t in self.triggers if t.is_active]

    def to_dict(self, include_children=True):
        d = {
            "id": self.id,
            "branch_id": self.branch_id,
            "title": self.title,
            "code": self.code,
            "description": self.description,
            "category": self.category,
            "status": self.status,
            "frequency_type": self.frequency_type,
            "frequency_interval": self.frequency_interval,
            "custom_frequency_unit": self.custom_frequency_unit,
            "custom_frequency_value": self.custom_frequency_value,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "due_time": self.due_time.strftime("%H:%M") if self.due_time else None,
            "is_recurring": self.is_recurring,
            "next_due_at": iso(self.next_due_at),
            "last_triggered_at": iso(self.last_triggered_at),
            "last_completed_at": iso(self.last_completed_at),
            "overdue_since": iso(self.overdue_since),
            "assigned_user_id": self.assigned_user_id,
            "assigned_role": self.assigned_role,
            "escalate_to_user_id": self.escalate_to_user_id,
            "escalate_to_role": self.escalate_to_role,
            "escalation_offset_hours": self.escalation_offset_hours,
            "advance_reminder_offsets": list(self.advance_reminder_offsets or []),
            "requires_acknowledgement": self.requires_acknowledgement,
            "allow_partial_completion": self.allow_partial_completion,
            "deleted_at": iso(self.deleted_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_children:
            d["items"] = [i.to_dict() for i in self.items]
            d["triggers"] = [t.to_dict() for t in self.triggers]
        return d

    def __repr__(self):
        return f"<Checklist {self.id}: {self.title[:40]} [{self.frequency_type}]>"


class ChecklistItem(db.Model):
    """Single line item of a checklist. Order is significant."""

    __tablename__ = "compliance_checklist_items"

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.Integer, db.ForeignKey("compliance_checklists.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "title": self.title,
            "description": self.description,
            "is_required": self.is_required,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<ChecklistItem {self.id}: {self.title[:40]}>"


class ChecklistTrigger(db.Model):
    """
    Explicit reminder trigger of a checklist.

    advance    → remind ``offset_hours`` before the due cycle
    due        → remind at the due cycle
    escalation → remind and escalate ``offset_hours`` after the due cycle
    """

    __tablename__ = "compliance_checklist_triggers"
    __table_args__ = (
        db.Index("ix_ck_triggers_type", "checklist_id", "trigger_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.Integer, db.ForeignKey("compliance_checklists.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    trigger_type = db.Column(db.String(25), nullable=False)
    offset_hours = db.Column(db.Integer, nullable=False, default=0)
    channels = db.Column(db.JSON, nullable=False, default=list)
    escalate_to_user_id = db.Column(db.Integer, nullable=True)
    escalate_to_role = db.Column(db.String(75), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "trigger_type": self.trigger_type,
            "offset_hours": self.offset_hours,
            "channels": list(self.channels or []),
            "escalate_to_user_id": self.escalate_to_user_id,
            "escalate_to_role": self.escalate_to_role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<ChecklistTrigger {self.id}: {self.trigger_type}@{self.offset_hours}h>"
