"""
Escalation Resolver — promotes overdue auto-escalating reminders.

Candidates: not archived, ``auto_escalate``, status scheduled/sent and
``escalate_at <= now``. Each one is promoted with a conditional UPDATE on
its current status, so a reminder escalates once per deadline no matter how
many sweeps (or workers) see it.

Usage:
    from compliance.services.escalation import sweep
    escalated_ids = sweep(now, directory=directory, sender=sender)
"""

from __future__ import annotations

import logging
from datetime import datetime

from compliance.core.exceptions import DirectoryError
from compliance.models import db
from compliance.models.reminder import ESCALATABLE_STATUSES, Reminder, ReminderEvent
from compliance.services.reminder_lifecycle import build_payload

logger = logging.getLogger(__name__)


def escalation_candidates(now: datetime) -> list[Reminder]:
    return (
        Reminder.query_active()
        .filter(
            Reminder.auto_escalate.is_(True),
            Reminder.status.in_(ESCALATABLE_STATUSES),
            Reminder.escalate_at.isnot(None),
            Reminder.escalate_at <= now,
        )
        .order_by(Reminder.escalate_at, Reminder.id)
        .all()
    )


def _promote(reminder_id: int, now: datetime) -> bool:
    """Compare-and-set on status. True when this caller won the promotion."""
    count = (
        Reminder.query.filter(
            Reminder.id == reminder_id,
            Reminder.status.in_(ESCALATABLE_STATUSES),
            Reminder.deleted_at.is_(None),
        )
        .update(
            {
                "status": "escalated",
                "last_escalated_at": now,
                "next_attempt_at": None,
                "claim_token": None,
                "claimed_at": None,
            },
            synchronize_session=False,
        )
    )
    return count == 1


def _notify(reminder, target, directory, sender):
    """Send the escalation notice; returns ``(channel, recipient_dict, error)``."""
    channel = reminder.delivery_channel
    if target is None:
        return None, None, "No escalation target configured"
    if directory is None:
        return None, None, None
    try:
        if target["type"] == "user":
            recipient = directory.resolve(user_id=target["id"])
        else:
            recipient = directory.resolve(role=target["id"])
    except DirectoryError as exc:
        return channel, None, f"Escalation target not resolved: {exc}"

    if sender is None:
        return None, recipient.to_dict(), None

    payload = build_payload(reminder)
    payload["escalation"] = True
    try:
        result = sender.send(channel, recipient, payload)
    except Exception as exc:  # delivery failure never undoes the escalation
        logger.exception("Escalation notice for reminder %s raised", reminder.id,
                         extra={"reminder_id": reminder.id, "channel": channel})
        return channel, recipient.to_dict(), str(exc)
    return channel, recipient.to_dict(), None if result.success else result.error


def sweep(now: datetime, directory=None, sender=None) -> list[int]:
    """Escalate every overdue candidate. Returns the ids escalated by this call."""
    db.session.flush()
    escalated = []
    for reminder in escalation_candidates(now):
        prior_status = reminder.status
        if not _promote(reminder.id, now):
            continue
        db.session.refresh(reminder)

        target = reminder.escalation_target
        channel, recipient, error = _notify(reminder, target, directory, sender)
        if error:
            message = error
        elif target:
            message = f"Escalated to {target['type']} {target['id']}"
        else:
            message = "Escalated"

        db.session.add(ReminderEvent(
            reminder_id=reminder.id,
            event_type="escalated",
            status="escalated",
            channel=channel,
            message=message,
            event_metadata={
                "from_status": prior_status,
                "target": target,
                "recipient": recipient,
                "escalate_at": reminder.escalate_at.isoformat(),
            },
            processed_at=now,
        ))
        escalated.append(reminder.id)
        logger.info(
            "Reminder %s escalated (%s → escalated)", reminder.id, prior_status,
            extra={"reminder_id": reminder.id, "event_type": "escalated"},
        )

    db.session.flush()
    return escalated


def pending_count(now: datetime) -> int:
    """Reminders a sweep at ``now`` would escalate. Read-only (dry runs)."""
    return len(escalation_candidates(now))
