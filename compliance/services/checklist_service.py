"""
Checklist Service — create, reschedule and complete compliance checklists.

All input is validated and normalised before anything is written:
    - title, frequency, start_date and at least one item are required
    - frequency_interval 1..365; custom frequencies need unit + value 1..1000
    - due_time is HH:MM (seconds are dropped)
    - advance_reminder_offsets: positive hours, de-duplicated, sorted descending
    - triggers: known type, offset 0..10000, channels from the closed enum;
      escalation triggers need a positive delay (own offset or the
      checklist's escalation_offset_hours)

Schedule maintenance shared with the scheduler tick lives here too
(``roll_forward``): a cycle stays current until its lapse point
(``next_due_at + escalation_offset_hours``) has passed; missed cycles are
skipped, never back-filled, and the checklist stays overdue
(``overdue_since``) until a completion settles it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from compliance.core.exceptions import ConflictError, NotFoundError, ValidationError
from compliance.models import db
from compliance.models.audit import write_audit
from compliance.models.checklist import (
    CHECKLIST_STATUSES,
    CUSTOM_FREQUENCY_UNITS,
    FREQUENCY_TYPES,
    TRIGGER_TYPES,
    Checklist,
    ChecklistItem,
    ChecklistTrigger,
)
from compliance.models.reminder import CHANNELS, Reminder
from compliance.services import archive as archive_store
from compliance.services import reminder_lifecycle
from compliance.services.recurrence import compute_next_due, rule_from_checklist, validate_rule
from compliance.services.trigger_engine import plan_reminders, sync_cycle
from compliance.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

MAX_OFFSET_HOURS = 10_000
MAX_INTERVAL = 365
MAX_CUSTOM_VALUE = 1000

SCHEDULE_FIELDS = (
    "frequency_type", "frequency_interval", "custom_frequency_unit",
    "custom_frequency_value", "start_date", "due_time", "is_recurring",
    "escalation_offset_hours", "advance_reminder_offsets",
)
ASSIGNMENT_FIELDS = (
    "assigned_user_id", "assigned_role", "escalate_to_user_id", "escalate_to_role",
)


# ── Parsing helpers ──────────────────────────────────────────────────────────


def _as_int(value, field, errors, *, minimum=None, maximum=None, required=False):
    if value is None or value == "":
        if required:
            errors[field] = "Required"
        return None
    if isinstance(value, bool):
        errors[field] = "Must be an integer"
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        errors[field] = "Must be an integer"
        return None
    if minimum is not None and number < minimum:
        errors[field] = f"Must be >= {minimum}"
    elif maximum is not None and number > maximum:
        errors[field] = f"Must be <= {maximum}"
    return number


def parse_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_due_time(value) -> time | None:
    """Accept a ``time`` or an ``HH:MM`` string; seconds are dropped."""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    text = str(value)[:5]
    try:
        return datetime.strptime(text, "%H:%M").time()
    except ValueError as exc:
        raise ValueError(f"Expected HH:MM, got {value!r}") from exc


def normalize_channels(channels, errors, field):
    ordered = []
    for ch in channels or []:
        if not isinstance(ch, str) or ch not in CHANNELS:
            errors[field] = f"Unknown channel {ch!r}; one of: {', '.join(CHANNELS)}"
            continue
        if ch not in ordered:
            ordered.append(ch)
    return ordered


# ═══════════════════════════════════════════════════════════════════════════
#  Validation
# ═══════════════════════════════════════════════════════════════════════════


def _validate_schedule(data: dict, errors: dict) -> dict:
    out = {}

    freq = data.get("frequency_type")
    if not freq:
        errors["frequency_type"] = "Required"
    elif freq not in FREQUENCY_TYPES:
        errors["frequency_type"] = f"Must be one of: {', '.join(FREQUENCY_TYPES)}"
    out["frequency_type"] = freq

    out["frequency_interval"] = _as_int(
        data.get("frequency_interval", 1), "frequency_interval", errors,
        minimum=1, maximum=MAX_INTERVAL, required=True,
    )

    if freq == "custom":
        unit = data.get("custom_frequency_unit")
        if unit not in CUSTOM_FREQUENCY_UNITS:
            errors["custom_frequency_unit"] = (
                f"Required for custom frequency; one of: {', '.join(CUSTOM_FREQUENCY_UNITS)}"
            )
        out["custom_frequency_unit"] = unit
        out["custom_frequency_value"] = _as_int(
            data.get("custom_frequency_value"), "custom_frequency_value", errors,
            minimum=1, maximum=MAX_CUSTOM_VALUE, required=True,
        )
    else:
        out["custom_frequency_unit"] = None
        out["custom_frequency_value"] = None

    try:
        out["start_date"] = parse_date(data.get("start_date"))
        if out["start_date"] is None:
            errors["start_date"] = "Required"
    except ValueError:
        errors["start_date"] = "Must be an ISO date (YYYY-MM-DD)"

    try:
        out["due_time"] = parse_due_time(data.get("due_time"))
    except ValueError:
        errors["due_time"] = "Must be HH:MM"

    out["is_recurring"] = parse_bool(data.get("is_recurring"), True)
    out["escalation_offset_hours"] = _as_int(
        data.get("escalation_offset_hours"), "escalation_offset_hours", errors,
        minimum=0, maximum=MAX_OFFSET_HOURS,
    )

    offsets = []
    for raw in data.get("advance_reminder_offsets") or []:
        hours = _as_int(raw, "advance_reminder_offsets", errors, minimum=1, maximum=MAX_OFFSET_HOURS)
        if hours is not None and hours >= 1 and hours not in offsets:
            offsets.append(hours)
    out["advance_reminder_offsets"] = sorted(offsets, reverse=True)
    return out


def _validate_triggers(raw_triggers, escalation_offset_hours, errors) -> list[dict]:
    triggers = []
    for idx, raw in enumerate(raw_triggers or []):
        prefix = f"triggers.{idx}"
        if not isinstance(raw, dict):
            errors[prefix] = "Must be an object"
            continue
        trigger_type = raw.get("trigger_type")
        if trigger_type not in TRIGGER_TYPES:
            errors[f"{prefix}.trigger_type"] = f"Must be one of: {', '.join(TRIGGER_TYPES)}"
        offset = _as_int(raw.get("offset_hours", 0), f"{prefix}.offset_hours", errors,
                         minimum=0, maximum=MAX_OFFSET_HOURS)
        offset = offset or 0
        is_active = parse_bool(raw.get("is_active"), True)
        if trigger_type == "escalation" and is_active and offset <= 0 and not escalation_offset_hours:
            errors[f"{prefix}.offset_hours"] = (
                "Escalation triggers need a positive offset or a checklist escalation_offset_hours"
            )
        triggers.append({
            "trigger_type": trigger_type,
            "offset_hours": offset,
            "channels": normalize_channels(raw.get("channels"), errors, f"{prefix}.channels"),
            "escalate_to_user_id": raw.get("escalate_to_user_id"),
            "escalate_to_role": raw.get("escalate_to_role") or None,
            "is_active": is_active,
        })
    return triggers


def _validate_items(raw_items, errors) -> list[dict]:
    if not raw_items:
        errors["items"] = "At least one checklist item is required"
        return []
    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict) or not (raw.get("title") or "").strip():
            errors[f"items.{idx}.title"] = "Required"
            continue
        sort_order = _as_int(raw.get("sort_order", idx), f"items.{idx}.sort_order", errors,
                             minimum=0, maximum=999)
        items.append({
            "title": raw["title"].strip(),
            "description": raw.get("description"),
            "is_required": parse_bool(raw.get("is_required"), True),
            "is_active": parse_bool(raw.get("is_active"), True),
            "sort_order": idx if sort_order is None else sort_order,
        })
    return items


def validate_checklist_payload(data: dict) -> dict:
    """Validate and normalise a full checklist payload.

    Raises:
        ValidationError: with a field-level ``details`` map.
    """
    errors: dict = {}
    title = (data.get("title") or "").strip()
    if not title:
        errors["title"] = "Required"
    elif len(title) > 255:
        errors["title"] = "Max 255 characters"

    status = data.get("status") or "active"
    if status not in CHECKLIST_STATUSES:
        errors["status"] = f"Must be one of: {', '.join(sorted(CHECKLIST_STATUSES))}"

    out = {
        "title": title,
        "code": (data.get("code") or None),
        "description": data.get("description"),
        "category": data.get("category"),
        "status": status,
        "branch_id": data.get("branch_id"),
        "requires_acknowledgement": parse_bool(data.get("requires_acknowledgement"), False),
        "allow_partial_completion": parse_bool(data.get("allow_partial_completion"), True),
    }
    for field in ASSIGNMENT_FIELDS:
        out[field] = data.get(field) or None

    out.update(_validate_schedule(data, errors))
    out["items"] = _validate_items(data.get("items"), errors)
    out["triggers"] = _validate_triggers(data.get("triggers"), out["escalation_offset_hours"], errors)

    if errors:
        raise ValidationError("Checklist validation failed", details=errors)
    return out


# ═══════════════════════════════════════════════════════════════════════════
#  Schedule maintenance
# ═══════════════════════════════════════════════════════════════════════════


def grace_period(checklist) -> timedelta:
    return timedelta(hours=checklist.escalation_offset_hours or 0)


def roll_forward(checklist, now: datetime, *, mark_overdue: bool = True) -> bool:
    """Initialise ``next_due_at`` and move past a lapsed cycle.

    A consumed cycle nobody completed stays owed: ``overdue_since`` keeps the
    earliest one until ``complete_checklist_cycle`` settles it. Creation and
    rescheduling pass ``mark_overdue=False`` so cycles from before the rule
    existed are never owed.

    Returns True when a cycle was consumed (``last_triggered_at`` set).
    Raises InvalidRuleError / ScheduleComputationError from the calculator.
    """
    rule = rule_from_checklist(checklist)
    grace = grace_period(checklist)

    if checklist.next_due_at is None:
        if checklist.last_triggered_at is not None and not checklist.is_recurring:
            return False
        reference = now - grace if checklist.last_triggered_at is not None else None
        checklist.next_due_at = compute_next_due(rule.after(checklist.last_triggered_at), reference)
        if checklist.next_due_at is None:
            return False

    if now <= checklist.next_due_at + grace:
        return False

    lapsed = checklist.next_due_at
    checklist.last_triggered_at = lapsed
    if mark_overdue and checklist.overdue_since is None:
        checklist.overdue_since = lapsed
    checklist.next_due_at = compute_next_due(rule.after(lapsed), reference_time=now - grace)
    logger.info(
        "Checklist %s cycle %s consumed, next due %s",
        checklist.id, lapsed.isoformat(),
        checklist.next_due_at.isoformat() if checklist.next_due_at else None,
        extra={"checklist_id": checklist.id},
    )
    return True


def recompute_schedule(checklist, now: datetime) -> None:
    """Recompute ``next_due_at`` from the first occurrence."""
    validate_rule(rule_from_checklist(checklist))
    checklist.next_due_at = None
    checklist.last_triggered_at = None
    roll_forward(checklist, now, mark_overdue=False)


def _cancel_stale_reminders(checklist, now: datetime) -> list[int]:
    """Cancel future scheduled reminders no longer backed by the configuration."""
    planned = set()
    if checklist.next_due_at is not None and checklist.is_schedulable:
        planned = {d["source_key"] for d in plan_reminders(checklist, checklist.next_due_at)}
    stale = (
        Reminder.query_active()
        .filter(
            Reminder.checklist_id == checklist.id,
            Reminder.status == "scheduled",
            Reminder.cycle_due_at.isnot(None),
            Reminder.cycle_due_at >= now,
        )
        .order_by(Reminder.id)
        .all()
    )
    cancelled = []
    for reminder in stale:
        if reminder.cycle_due_at == checklist.next_due_at and reminder.source_key in planned:
            continue
        reminder_lifecycle.cancel(reminder, now, reason="Checklist schedule changed")
        cancelled.append(reminder.id)
    return cancelled


# ═══════════════════════════════════════════════════════════════════════════
#  Operations
# ═══════════════════════════════════════════════════════════════════════════


def get_checklist(checklist_id) -> Checklist:
    checklist = db.session.get(Checklist, checklist_id)
    if checklist is None:
        raise NotFoundError(resource="Checklist", resource_id=checklist_id)
    return checklist


def create_checklist(data: dict, now: datetime, *, actor: str = "system") -> Checklist:
    """Validate, persist and schedule a new checklist.

    Raises:
        ValidationError: invalid payload.
        ConflictError: ``code`` already used.
    """
    clean = validate_checklist_payload(data)
    if clean["code"] and Checklist.query.filter_by(code=clean["code"]).first():
        raise ConflictError(resource="Checklist", field="code", value=clean["code"])

    items = clean.pop("items")
    triggers = clean.pop("triggers")
    checklist = Checklist(**clean)
    checklist.items = [ChecklistItem(**item) for item in items]
    checklist.triggers = [ChecklistTrigger(**trigger) for trigger in triggers]
    db.session.add(checklist)
    db.session.flush()

    roll_forward(checklist, now, mark_overdue=False)
    _, generated = sync_cycle(checklist, checklist.next_due_at, now=now)

    write_audit(
        entity_type="checklist",
        entity_id=checklist.id,
        action="checklist.create",
        actor=actor,
        branch_id=checklist.branch_id,
        details={
            "title": checklist.title,
            "frequency_type": checklist.frequency_type,
            "next_due_at": checklist.next_due_at,
            "reminders_generated": generated,
        },
        timestamp=now,
    )
    logger.info("Checklist %s created, next due %s", checklist.id, checklist.next_due_at,
                extra={"checklist_id": checklist.id})
    return checklist


def update_checklist_schedule(checklist_id, data: dict, now: datetime, *, actor: str = "system") -> Checklist:
    """Change the schedule/assignment of a checklist and recompute ``next_due_at``.

    Only keys present in ``data`` change. ``triggers`` (when given) replaces
    the whole trigger set. Future scheduled reminders that no longer match
    the configuration are cancelled; the current cycle is regenerated.

    Raises:
        NotFoundError, ValidationError
    """
    checklist = get_checklist(checklist_id)

    merged = {field: getattr(checklist, field) for field in SCHEDULE_FIELDS + ASSIGNMENT_FIELDS}
    merged["advance_reminder_offsets"] = list(checklist.advance_reminder_offsets or [])
    for field in SCHEDULE_FIELDS + ASSIGNMENT_FIELDS:
        if field in data:
            merged[field] = data[field]

    errors: dict = {}
    schedule = _validate_schedule(merged, errors)
    triggers = None
    if "triggers" in data:
        triggers = _validate_triggers(data["triggers"], schedule["escalation_offset_hours"], errors)
    else:
        for idx, trigger in enumerate(checklist.active_triggers()):
            if (trigger.trigger_type == "escalation" and not trigger.offset_hours
                    and not schedule["escalation_offset_hours"]):
                errors[f"triggers.{idx}.offset_hours"] = (
                    "Escalation triggers need a positive offset or a checklist escalation_offset_hours"
                )
    if errors:
        raise ValidationError("Checklist schedule validation failed", details=errors)

    changed = sorted(
        field for field in SCHEDULE_FIELDS
        if field in data and getattr(checklist, field) != schedule[field]
    )
    for field in SCHEDULE_FIELDS:
        setattr(checklist, field, schedule[field])
    for field in ASSIGNMENT_FIELDS:
        if field in data:
            setattr(checklist, field, data[field] or None)
    if triggers is not None:
        checklist.triggers = [ChecklistTrigger(**trigger) for trigger in triggers]
        changed.append("triggers")
    db.session.flush()

    if checklist.is_schedulable:
        recompute_schedule(checklist, now)
    cancelled = _cancel_stale_reminders(checklist, now)
    _, generated = sync_cycle(checklist, checklist.next_due_at, now=now)

    write_audit(
        entity_type="checklist",
        entity_id=checklist.id,
        action="checklist.update_schedule",
        actor=actor,
        branch_id=checklist.branch_id,
        details={
            "changed": changed,
            "next_due_at": checklist.next_due_at,
            "cancelled_reminders": cancelled,
            "reminders_generated": generated,
        },
        timestamp=now,
    )
    return checklist


def complete_checklist_cycle(checklist_id, now: datetime, *, actor: str = "system") -> Checklist:
    """Complete the oldest open cycle.

    An overdue checklist settles its lapsed cycles (``overdue_since`` is
    cleared, the upcoming cycle stays open). Otherwise the current cycle is
    closed and the checklist moves on to the next one. Still-scheduled
    reminders of the completed cycle(s) are cancelled.

    Raises:
        NotFoundError: unknown id.
        ValidationError: archived checklist or no open cycle.
    """
    checklist = get_checklist(checklist_id)
    if checklist.deleted_at is not None:
        raise ValidationError("Archived checklist cannot be completed",
                              details={"checklist_id": "archived"})
    cycle = checklist.open_cycle
    if cycle is None:
        raise ValidationError("Checklist has no open cycle",
                              details={"next_due_at": "none"})

    overdue = checklist.overdue_since is not None
    generated = 0
    if overdue:
        checklist.overdue_since = None
        if checklist.next_due_at is not None:
            cancelled = archive_store.cancel_pending_for_checklist(
                checklist.id, now, reason="Overdue checklist completed",
                lapsed_before=checklist.next_due_at,
            )
        else:
            cancelled = archive_store.cancel_pending_for_checklist(
                checklist.id, now, reason="Overdue checklist completed", cycle_due_at=cycle,
            )
    else:
        cancelled = archive_store.cancel_pending_for_checklist(
            checklist.id, now, reason="Checklist cycle completed", cycle_due_at=cycle,
        )
        checklist.last_triggered_at = cycle
        rule = rule_from_checklist(checklist)
        checklist.next_due_at = compute_next_due(rule.after(cycle), reference_time=now - grace_period(checklist))
        _, generated = sync_cycle(checklist, checklist.next_due_at, now=now)
    checklist.last_completed_at = now

    write_audit(
        entity_type="checklist",
        entity_id=checklist.id,
        action="checklist.complete_cycle",
        actor=actor,
        branch_id=checklist.branch_id,
        details={
            "cycle_due_at": cycle,
            "overdue": overdue,
            "next_due_at": checklist.next_due_at,
            "cancelled_reminders": cancelled,
            "reminders_generated": generated,
        },
        timestamp=now,
    )
    logger.info("Checklist %s cycle %s completed%s", checklist.id, cycle.isoformat(),
                " (overdue)" if overdue else "", extra={"checklist_id": checklist.id})
    return checklist
