"""
Trigger Engine — reminders a checklist cycle must have.

Two independent generators feed one due cycle:

    advance_reminder_offsets  → source ``offset:<hours>``, remind at cycle - hours
    ChecklistTrigger rows     → source ``trigger:<id>``
        advance    → remind at cycle - offset_hours
        due        → remind at cycle
        escalation → remind/escalate at cycle + delay, auto_escalate

Each reminder is keyed by (checklist_id, source_key, cycle_due_at). Running
the generator again for the same cycle returns the same rows; a row still
``scheduled`` is brought in line with the current configuration, anything
further along is left alone.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from compliance.models import db
from compliance.models.reminder import Reminder, ReminderEvent

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "in_app"

# Fields synced onto a still-scheduled reminder when configuration changes
_SYNCED_FIELDS = (
    "title", "description", "reminder_type", "priority",
    "delivery_channel", "delivery_channels",
    "remind_at", "due_at", "escalate_at", "auto_escalate",
    "escalate_to_user_id", "escalate_to_role",
    "assigned_user_id", "assigned_role", "branch_id",
)


def offset_source_key(hours: int) -> str:
    return f"offset:{hours}"


def trigger_source_key(trigger_id: int) -> str:
    return f"trigger:{trigger_id}"


def split_channels(channels) -> tuple[str, list[str]]:
    """First channel is the primary, the rest (deduplicated) are additional."""
    ordered = []
    for ch in channels or []:
        if ch not in ordered:
            ordered.append(ch)
    if not ordered:
        return DEFAULT_CHANNEL, []
    return ordered[0], ordered[1:]


def escalation_delay_hours(checklist, trigger) -> int | None:
    """Hours after the cycle an escalation trigger fires; None if unconfigured."""
    hours = trigger.offset_hours or checklist.escalation_offset_hours
    if not hours or hours <= 0:
        return None
    return hours


# ═══════════════════════════════════════════════════════════════════════════
#  Planning (pure)
# ═══════════════════════════════════════════════════════════════════════════


def _base_draft(checklist, due_cycle: datetime) -> dict:
    return {
        "branch_id": checklist.branch_id,
        "checklist_id": checklist.id,
        "cycle_due_at": due_cycle,
        "title": checklist.title,
        "description": checklist.description,
        "reminder_type": "checklist_due",
        "priority": "medium",
        "delivery_channel": DEFAULT_CHANNEL,
        "delivery_channels": [],
        "due_at": due_cycle,
        "escalate_at": None,
        "auto_escalate": False,
        "escalate_to_user_id": checklist.escalate_to_user_id,
        "escalate_to_role": checklist.escalate_to_role,
        "assigned_user_id": checklist.assigned_user_id,
        "assigned_role": checklist.assigned_role,
    }


def plan_reminders(checklist, due_cycle: datetime) -> list[dict]:
    """Return the reminder drafts for one cycle, without touching the session."""
    drafts = []

    for hours in sorted(set(checklist.advance_reminder_offsets or []), reverse=True):
        draft = _base_draft(checklist, due_cycle)
        draft["source_key"] = offset_source_key(hours)
        draft["remind_at"] = due_cycle - timedelta(hours=hours)
        drafts.append(draft)

    for trigger in checklist.active_triggers():
        draft = _base_draft(checklist, due_cycle)
        draft["source_key"] = trigger_source_key(trigger.id)
        primary, extra = split_channels(trigger.channels)
        draft["delivery_channel"] = primary
        draft["delivery_channels"] = extra

        if trigger.trigger_type == "advance":
            draft["remind_at"] = due_cycle - timedelta(hours=trigger.offset_hours or 0)
        elif trigger.trigger_type == "due":
            draft["remind_at"] = due_cycle
        elif trigger.trigger_type == "escalation":
            delay = escalation_delay_hours(checklist, trigger)
            if delay is None:
                logger.warning(
                    "Escalation trigger %s of checklist %s has no positive delay, skipped",
                    trigger.id, checklist.id,
                    extra={"checklist_id": checklist.id},
                )
                continue
            at = due_cycle + timedelta(hours=delay)
            draft.update(
                reminder_type="escalation",
                priority="high",
                remind_at=at,
                escalate_at=at,
                auto_escalate=True,
            )
            if trigger.escalate_to_user_id is not None or trigger.escalate_to_role:
                draft["escalate_to_user_id"] = trigger.escalate_to_user_id
                draft["escalate_to_role"] = trigger.escalate_to_role
        else:
            continue
        drafts.append(draft)

    return drafts


# ═══════════════════════════════════════════════════════════════════════════
#  Persistence
# ═══════════════════════════════════════════════════════════════════════════


def _find(checklist_id, source_key, due_cycle):
    return Reminder.query.filter_by(
        checklist_id=checklist_id,
        source_key=source_key,
        cycle_due_at=due_cycle,
    ).first()


def _sync_scheduled(reminder: Reminder, draft: dict, now: datetime) -> bool:
    """Bring a still-scheduled reminder in line with its draft. Returns True on change."""
    changed = {}
    for field in _SYNCED_FIELDS:
        new = draft[field]
        old = getattr(reminder, field)
        if field == "delivery_channels":
            old = list(old or [])
        if old != new:
            changed[field] = new
            setattr(reminder, field, new)
    if not changed:
        return False
    if "remind_at" in changed:
        reminder.next_attempt_at = None
        db.session.add(ReminderEvent(
            reminder_id=reminder.id,
            event_type="rescheduled",
            status=reminder.status,
            processed_at=now,
            message=f"remind_at moved to {reminder.remind_at.isoformat()}",
        ))
    return True


def sync_cycle(checklist, due_cycle: datetime | None, *, now: datetime) -> tuple[list[Reminder], int]:
    """Create or refresh the reminders of one cycle.

    Returns ``(reminders, created_count)``. Nothing is generated for an
    unschedulable checklist or for a cycle already in the past.
    """
    if due_cycle is None or not checklist.is_schedulable or due_cycle < now:
        return [], 0

    reminders = []
    created = 0
    for draft in plan_reminders(checklist, due_cycle):
        existing = _find(checklist.id, draft["source_key"], due_cycle)
        if existing is None:
            reminder = Reminder(**draft)
            try:
                with db.session.begin_nested():
                    db.session.add(reminder)
                created += 1
            except IntegrityError:
                # Another worker inserted the same key first
                existing = _find(checklist.id, draft["source_key"], due_cycle)
                if existing is None:
                    raise
                reminder = existing
            reminders.append(reminder)
            continue

        if existing.status == "scheduled" and existing.deleted_at is None:
            _sync_scheduled(existing, draft, now)
        reminders.append(existing)

    db.session.flush()
    if created:
        logger.info(
            "Generated %d reminder(s) for checklist %s cycle %s",
            created, checklist.id, due_cycle.isoformat(),
            extra={"checklist_id": checklist.id},
        )
    return reminders, created


def generate_reminders(checklist, due_cycle: datetime | None, *, now: datetime) -> list[Reminder]:
    """Idempotent: the same (checklist, source, cycle) always maps to one row."""
    reminders, _ = sync_cycle(checklist, due_cycle, now=now)
    return reminders


def count_missing(checklist, due_cycle: datetime | None, *, now: datetime) -> int:
    """How many reminders ``sync_cycle`` would create. Read-only (dry runs)."""
    if due_cycle is None or not checklist.is_schedulable or due_cycle < now:
        return 0
    return sum(
        1 for draft in plan_reminders(checklist, due_cycle)
        if _find(checklist.id, draft["source_key"], due_cycle) is None
    )
