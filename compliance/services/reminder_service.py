"""
Reminder Service — manual reminders.

Generated reminders come from the trigger engine; this module covers the
ones an operator creates directly, plus manual cancellation.
"""

from __future__ import annotations

import logging
from datetime import datetime

from compliance.core.exceptions import NotFoundError, ValidationError
from compliance.models import db
from compliance.models.audit import write_audit
from compliance.models.checklist import Checklist
from compliance.models.reminder import CHANNELS, REMINDER_PRIORITIES, REMINDER_TYPES, Reminder
from compliance.services import reminder_lifecycle
from compliance.utils.clock import to_naive_utc
from compliance.utils.helpers import parse_bool

logger = logging.getLogger(__name__)


def parse_datetime(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text = str(value).replace("Z", "+00:00")
    return to_naive_utc(datetime.fromisoformat(text))


def normalize_delivery_channels(primary, channels) -> list[str]:
    """Additional channels in canonical order, without the primary or duplicates."""
    wanted = set(channels or [])
    return [ch for ch in CHANNELS if ch in wanted and ch != primary]


def get_reminder(reminder_id) -> Reminder:
    reminder = db.session.get(Reminder, reminder_id)
    if reminder is None:
        raise NotFoundError(resource="Reminder", resource_id=reminder_id)
    return reminder


def create_reminder(data: dict, now: datetime, *, actor: str = "system") -> Reminder:
    """Create a manual reminder.

    Raises:
        ValidationError: invalid payload.
        NotFoundError: ``checklist_id`` given but unknown.
    """
    errors = {}

    title = (data.get("title") or "").strip()
    if not title:
        errors["title"] = "Required"

    reminder_type = data.get("reminder_type") or "manual"
    if reminder_type not in REMINDER_TYPES:
        errors["reminder_type"] = f"Must be one of: {', '.join(REMINDER_TYPES)}"

    priority = data.get("priority") or "medium"
    if priority not in REMINDER_PRIORITIES:
        errors["priority"] = f"Must be one of: {', '.join(REMINDER_PRIORITIES)}"

    primary = data.get("delivery_channel") or "email"
    if primary not in CHANNELS:
        errors["delivery_channel"] = f"Must be one of: {', '.join(CHANNELS)}"
    extra = data.get("delivery_channels") or []
    if not isinstance(extra, (list, tuple)):
        errors["delivery_channels"] = "Must be a list"
        extra = []
    unknown = [ch for ch in extra if ch not in CHANNELS]
    if unknown:
        errors["delivery_channels"] = f"Unknown channel(s): {', '.join(map(str, unknown))}"

    stamps = {}
    for field in ("remind_at", "due_at", "escalate_at"):
        try:
            stamps[field] = parse_datetime(data.get(field))
        except ValueError:
            errors[field] = "Must be an ISO 8601 datetime"
    if "remind_at" not in errors and stamps.get("remind_at") is None:
        errors["remind_at"] = "Required"

    auto_escalate = parse_bool(data.get("auto_escalate"), False)
    due_at, escalate_at = stamps.get("due_at"), stamps.get("escalate_at")
    if auto_escalate and escalate_at is not None and due_at is not None and escalate_at <= due_at:
        errors["escalate_at"] = "Must be after due_at when auto_escalate is set"

    if errors:
        raise ValidationError("Reminder validation failed", details=errors)

    checklist_id = data.get("checklist_id")
    if checklist_id is not None and db.session.get(Checklist, checklist_id) is None:
        raise NotFoundError(resource="Checklist", resource_id=checklist_id)

    reminder = Reminder(
        branch_id=data.get("branch_id"),
        checklist_id=checklist_id,
        title=title,
        description=data.get("description"),
        reminder_type=reminder_type,
        priority=priority,
        delivery_channel=primary,
        delivery_channels=normalize_delivery_channels(primary, extra),
        remind_at=stamps["remind_at"],
        due_at=due_at,
        escalate_at=escalate_at,
        auto_escalate=auto_escalate,
        escalate_to_user_id=data.get("escalate_to_user_id"),
        escalate_to_role=data.get("escalate_to_role") or None,
        assigned_user_id=data.get("assigned_user_id"),
        assigned_role=data.get("assigned_role") or None,
        status="scheduled",
    )
    db.session.add(reminder)
    db.session.flush()

    write_audit(
        entity_type="reminder",
        entity_id=reminder.id,
        action="reminder.create",
        actor=actor,
        branch_id=reminder.branch_id,
        details={"title": reminder.title, "remind_at": reminder.remind_at},
        timestamp=now,
    )
    logger.info("Reminder %s created for %s", reminder.id, reminder.remind_at,
                extra={"reminder_id": reminder.id})
    return reminder


def cancel_reminder(reminder_id, now: datetime, *, reason: str | None = None, actor: str = "system") -> Reminder:
    """Raises NotFoundError, TransitionError."""
    reminder = get_reminder(reminder_id)
    reminder_lifecycle.cancel(reminder, now, reason=reason)
    write_audit(
        entity_type="reminder",
        entity_id=reminder.id,
        action="reminder.cancel",
        actor=actor,
        branch_id=reminder.branch_id,
        details={"reason": reason},
        timestamp=now,
    )
    return reminder
