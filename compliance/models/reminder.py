"""
Compliance Engine
Reminder domain models.

Models:
    - Reminder: a single scheduled notification, manual or generated from a
      checklist cycle, with its delivery/escalation bookkeeping
    - ReminderEvent: append-only delivery/transition history of a reminder

Reminder lifecycle:
    scheduled → sent | failed | escalated | cancelled
    sent      → escalated
    failed    → scheduled (retry) | cancelled
    escalated, cancelled → (terminal)
"""

from compliance.models import db
from compliance.models.soft_delete import SoftDeleteMixin
from compliance.utils.clock import iso, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

REMINDER_STATUSES = ("scheduled", "sent", "escalated", "failed", "cancelled")
TERMINAL_STATUSES = {"escalated", "cancelled"}
ESCALATABLE_STATUSES = ("scheduled", "sent")

REMINDER_PRIORITIES = ("low", "medium", "high", "critical")

REMINDER_TYPES = ("manual", "checklist_due", "checklist_overdue", "follow_up", "escalation")

# Closed enum; order is the canonical dispatch order for normalisation.
CHANNELS = ("email", "sms", "push", "in_app")

REMINDER_TRANSITIONS = {
    "scheduled": {"sent", "failed", "escalated", "cancelled"},
    "sent": {"escalated"},
    "failed": {"scheduled", "cancelled"},
    "escalated": set(),
    "cancelled": set(),
}

# Transition events default to the target status as their type.
EVENT_TYPES = set(REMINDER_STATUSES) | {
    "dispatched",          # primary channel attempt (carries the transition)
    "channel_delivery",    # additional channel attempt
    "retry_scheduled",
    "rescheduled",
}


class Reminder(SoftDeleteMixin, db.Model):
    """
    Compliance reminder.

    ``checklist_id`` is an optional back-reference resolved by id; generated
    reminders are unique per (checklist_id, source_key, cycle_due_at).
    """

    __tablename__ = "compliance_reminders"
    __table_args__ = (
        db.UniqueConstraint("checklist_id", "source_key", "cycle_due_at",
                            name="uq_reminder_checklist_source_cycle"),
        db.Index("ix_reminders_status_remind_at", "status", "remind_at"),
        db.Index("ix_reminders_assigned_status", "assigned_user_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, nullable=True, index=True)
    checklist_id = db.Column(
        db.Integer, db.ForeignKey("compliance_checklists.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    source_key = db.Column(db.String(50), nullable=True,
                           comment="offset:<hours> | trigger:<id>; NULL for manual reminders")
    cycle_due_at = db.Column(db.DateTime, nullable=True,
                             comment="Due cycle this reminder was generated for")

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    reminder_type = db.Column(db.String(50), nullable=False, default="manual", index=True)
    priority = db.Column(db.String(25), nullable=False, default="medium")

    delivery_channel = db.Column(db.String(25), nullable=False, default="email")
    delivery_channels = db.Column(db.JSON, nullable=False, default=list,
                                  comment="Additional channels, ordered, primary excluded")
    delivered_channels = db.Column(db.JSON, nullable=False, default=list,
                                   comment="Channels that accepted the notice; never sent again")

    remind_at = db.Column(db.DateTime, nullable=True)
    due_at = db.Column(db.DateTime, nullable=True)
    escalate_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(25), nullable=False, default="scheduled")

    auto_escalate = db.Column(db.Boolean, nullable=False, default=False)
    escalate_to_user_id = db.Column(db.Integer, nullable=True)
    escalate_to_role = db.Column(db.String(75), nullable=True)
    assigned_user_id = db.Column(db.Integer, nullable=True)
    assigned_role = db.Column(db.String(75), nullable=True)

    # Delivery bookkeeping
    sent_count = db.Column(db.Integer, nullable=False, default=0)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime, nullable=True)
    last_sent_at = db.Column(db.DateTime, nullable=True)
    last_triggered_at = db.Column(db.DateTime, nullable=True)
    last_escalated_at = db.Column(db.DateTime, nullable=True)

    # Worker claim
    claim_token = db.Column(db.String(36), nullable=True)
    claimed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    events = db.relationship(
        "ReminderEvent", backref="reminder", lazy="dynamic",
        order_by="ReminderEvent.id",
    )

    @property
    def channels(self):
        """Primary channel followed by the additional ones."""
        extra = [c for c in (self.delivery_channels or []) if c != self.delivery_channel]
        return [self.delivery_channel, *extra]

    @property
    def pending_channels(self):
        delivered = set(self.delivered_channels or [])
        return [c for c in self.channels if c not in delivered]

    @property
    def awaiting_channel_retry(self):
        """Sent on the primary channel, with additional channels still to retry."""
        return self.status == "sent" and self.next_attempt_at is not None

    @property
    def effective_remind_at(self):
        return self.next_attempt_at or self.remind_at

    @property
    def escalation_target(self):
        """User id wins over role; None when no target is configured."""
        if self.escalate_to_user_id is not None:
            return {"type": "user", "id": self.escalate_to_user_id}
        if self.escalate_to_role:
            return {"type": "role", "id": self.escalate_to_role}
        return None

    def is_due(self, now):
        at = self.effective_remind_at
        return (
            (self.status == "scheduled" or self.awaiting_channel_retry)
            and self.deleted_at is None
            and at is not None
            and at <= now
        )

    def to_dict(self):
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "checklist_id": self.checklist_id,
            "source_key": self.source_key,
            "cycle_due_at": iso(self.cycle_due_at),
            "title": self.title,
            "description": self.description,
            "reminder_type": self.reminder_type,
            "priority": self.priority,
            "delivery_channel": self.delivery_channel,
            "delivery_channels": list(self.delivery_channels or []),
            "delivered_channels": list(self.delivered_channels or []),
            "remind_at": iso(self.remind_at),
            "due_at": iso(self.due_at),
            "escalate_at": iso(self.escalate_at),
            "status": self.status,
            "auto_escalate": self.auto_escalate,
            "escalate_to_user_id": self.escalate_to_user_id,
            "escalate_to_role": self.escalate_to_role,
            "assigned_user_id": self.assigned_user_id,
            "assigned_role": self.assigned_role,
            "sent_count": self.sent_count,
            "attempt_count": self.attempt_count,
            "next_attempt_at": iso(self.next_attempt_at),
            "last_sent_at": iso(self.last_sent_at),
            "last_triggered_at": iso(self.last_triggered_at),
            "last_escalated_at": iso(self.last_escalated_at),
            "deleted_at": iso(self.deleted_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Reminder {self.id}: {self.title[:40]} [{self.status}]>"


class ReminderEvent(db.Model):
    """
    Append-only history row of a reminder.

    Never updated or deleted; archiving the reminder leaves its events intact.
    """

    __tablename__ = "compliance_reminder_events"
    __table_args__ = (
        db.Index("ix_reminder_events_type_status", "event_type", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reminder_id = db.Column(
        db.Integer, db.ForeignKey("compliance_reminders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    event_type = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(25), nullable=False,
                       comment="Reminder status after the event, or delivered/error per channel")
    channel = db.Column(db.String(25), nullable=True)
    message = db.Column(db.Text, nullable=True)
    event_metadata = db.Column(db.JSON, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "reminder_id": self.reminder_id,
            "event_type": self.event_type,
            "status": self.status,
            "channel": self.channel,
            "message": self.message,
            "metadata": self.event_metadata,
            "processed_at": iso(self.processed_at),
        }

    def __repr__(self):
        return f"<ReminderEvent {self.id}: {self.event_type} → {self.status}>"
