"""
Reminder Lifecycle — state machine and channel dispatch.

State machine:
    scheduled → sent | failed | escalated | cancelled
    sent      → escalated
    failed    → scheduled (retry) | cancelled
    escalated, cancelled → (terminal)

Every transition appends exactly one ReminderEvent. Dispatch appends one
event per channel attempt; the primary channel's event is the transition.
Channels that accepted the notice are recorded in ``delivered_channels``
and only the remaining ones are retried, so no channel receives a notice
twice.

A worker acts on a reminder only after claiming it: a conditional UPDATE
that sets ``claim_token`` while the row is still dispatchable (scheduled,
or sent with channels awaiting a retry), not archived and not held by a
live claim. Claims older than the TTL are considered
abandoned and may be taken over.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_

from compliance.core.exceptions import DirectoryError, TransitionError
from compliance.integrations.channel_gateway import DeliveryResult
from compliance.models import db
from compliance.models.reminder import EVENT_TYPES, REMINDER_TRANSITIONS, Reminder, ReminderEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MINUTES = 15
DEFAULT_CLAIM_TTL_SECONDS = 300


def can_transition(current: str, target: str) -> bool:
    return target in REMINDER_TRANSITIONS.get(current, set())


def transition(
    reminder: Reminder,
    to_status: str,
    *,
    now: datetime,
    event_type: str | None = None,
    channel: str | None = None,
    message: str | None = None,
    metadata: dict | None = None,
) -> ReminderEvent:
    """Move ``reminder`` to ``to_status`` and append the transition event.

    Raises:
        TransitionError: the edge is not in REMINDER_TRANSITIONS.
    """
    current = reminder.status
    if not can_transition(current, to_status):
        raise TransitionError(reminder.id, current, to_status)

    reminder.status = to_status
    event = ReminderEvent(
        reminder_id=reminder.id,
        event_type=event_type or to_status,
        status=to_status,
        channel=channel,
        message=message,
        event_metadata=metadata,
        processed_at=now,
    )
    db.session.add(event)
    logger.debug(
        "Reminder %s: %s → %s", reminder.id, current, to_status,
        extra={"reminder_id": reminder.id, "event_type": event.event_type},
    )
    return event


def record_event(reminder, event_type, status, *, now, channel=None, message=None, metadata=None):
    """Append a non-transition event (secondary channel attempts, reschedules)."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown reminder event type: {event_type}")
    event = ReminderEvent(
        reminder_id=reminder.id,
        event_type=event_type,
        status=status,
        channel=channel,
        message=message,
        event_metadata=metadata,
        processed_at=now,
    )
    db.session.add(event)
    return event


# ═══════════════════════════════════════════════════════════════════════════
#  Queries & claims
# ═══════════════════════════════════════════════════════════════════════════


def _dispatchable():
    """Scheduled, or sent with additional channels waiting for a retry."""
    return or_(
        Reminder.status == "scheduled",
        and_(Reminder.status == "sent", Reminder.next_attempt_at.isnot(None)),
    )


def due_reminders(now: datetime, limit: int | None = None) -> list[Reminder]:
    """Non-archived reminders whose first attempt or retry time has come."""
    effective_at = func.coalesce(Reminder.next_attempt_at, Reminder.remind_at)
    q = (
        Reminder.query_active()
        .filter(_dispatchable())
        .filter(Reminder.remind_at.isnot(None))
        .filter(effective_at <= now)
        .order_by(effective_at, Reminder.id)
    )
    if limit:
        q = q.limit(limit)
    return q.all()


def claim(reminder_id: int, now: datetime, ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS) -> str | None:
    """Atomically claim a dispatchable reminder. Returns the token or None."""
    token = str(uuid.uuid4())
    stale_before = now - timedelta(seconds=ttl_seconds)
    count = (
        Reminder.query.filter(
            Reminder.id == reminder_id,
            _dispatchable(),
            Reminder.deleted_at.is_(None),
            or_(Reminder.claim_token.is_(None), Reminder.claimed_at < stale_before),
        )
        .update({"claim_token": token, "claimed_at": now}, synchronize_session=False)
    )
    return token if count == 1 else None


def release(reminder: Reminder) -> None:
    reminder.claim_token = None
    reminder.claimed_at = None


# ═══════════════════════════════════════════════════════════════════════════
#  Dispatch
# ═══════════════════════════════════════════════════════════════════════════


class DispatchOutcome:
    """What one dispatch did.

    Attributes:
        status:          Reminder status afterwards (sent / failed / scheduled).
        channel_results: ``[(channel, DeliveryResult), ...]`` in send order.
        retry_at:        Next attempt time when a retry was scheduled.
        primary_result:  Primary channel result; None on an additional-channel retry.
    """

    def __init__(self, status: str, channel_results: list, retry_at: datetime | None = None,
                 primary_result: DeliveryResult | None = None):
        self.status = status
        self.channel_results = channel_results
        self.retry_at = retry_at
        self.primary_result = primary_result

    @property
    def primary_ok(self) -> bool:
        return self.primary_result is not None and self.primary_result.success

    def __repr__(self):
        return f"<DispatchOutcome {self.status} channels={len(self.channel_results)}>"


def build_payload(reminder: Reminder) -> dict:
    return {
        "reminder_id": reminder.id,
        "checklist_id": reminder.checklist_id,
        "title": reminder.title,
        "description": reminder.description,
        "reminder_type": reminder.reminder_type,
        "priority": reminder.priority,
        "remind_at": reminder.remind_at.isoformat() if reminder.remind_at else None,
        "due_at": reminder.due_at.isoformat() if reminder.due_at else None,
    }


def _resolve_assignee(reminder, directory):
    """Returns ``(recipient, error)``. No assignee means an unaddressed notice."""
    if reminder.assigned_user_id is None and not reminder.assigned_role:
        return None, None
    try:
        return directory.resolve(user_id=reminder.assigned_user_id, role=reminder.assigned_role), None
    except DirectoryError as exc:
        return None, str(exc)


def _send(sender, channel, recipient, payload, resolve_error) -> DeliveryResult:
    if resolve_error:
        return DeliveryResult.failed(f"Recipient not resolved: {resolve_error}")
    try:
        return sender.send(channel, recipient, payload)
    except Exception as exc:  # channel I/O must not break the batch
        logger.exception(
            "Channel %s raised for reminder %s", channel, payload.get("reminder_id"),
            extra={"channel": channel, "reminder_id": payload.get("reminder_id")},
        )
        return DeliveryResult.failed(str(exc))


def retry_delay(attempt: int, backoff_minutes: int) -> timedelta:
    """Exponential backoff: backoff, 2×backoff, 4×backoff, ..."""
    return timedelta(minutes=backoff_minutes * (2 ** max(attempt - 1, 0)))


def dispatch(
    reminder: Reminder,
    now: datetime,
    sender,
    directory,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_minutes: int = DEFAULT_BACKOFF_MINUTES,
    claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
) -> DispatchOutcome | None:
    """Deliver a due reminder on every channel that has not accepted it yet.

    A scheduled reminder is sent on its primary channel first; that attempt
    decides sent / failed. A sent reminder that is still owed additional
    channels only retries those. Channels in ``delivered_channels`` are
    never sent again. All channels share one attempt budget and backoff.

    Returns None (and changes nothing) when the reminder is not due, is
    archived, or another worker holds it.
    """
    if not reminder.is_due(now):
        return None

    db.session.flush()
    token = claim(reminder.id, now, claim_ttl_seconds)
    if token is None:
        logger.debug("Reminder %s already claimed or no longer due", reminder.id,
                     extra={"reminder_id": reminder.id})
        db.session.refresh(reminder)
        return None

    # Archive may have landed between the due query and the claim
    db.session.refresh(reminder)
    if reminder.claim_token != token or reminder.deleted_at is not None or not reminder.is_due(now):
        if reminder.claim_token == token:
            release(reminder)
        return None

    recipient, resolve_error = _resolve_assignee(reminder, directory)
    payload = build_payload(reminder)
    attempt = (reminder.attempt_count or 0) + 1
    reminder.attempt_count = attempt
    reminder.last_triggered_at = now
    recipient_info = recipient.to_dict() if recipient is not None else None

    primary = reminder.delivery_channel
    delivered = list(reminder.delivered_channels or [])
    results = []

    primary_result = None
    if reminder.status == "scheduled":
        primary_result = _send(sender, primary, recipient, payload, resolve_error)
        results.append((primary, primary_result))
        reminder.sent_count = (reminder.sent_count or 0) + 1
        reminder.last_sent_at = now
        if primary_result.success:
            delivered.append(primary)
        transition(
            reminder, "sent" if primary_result.success else "failed", now=now,
            event_type="dispatched",
            channel=primary,
            message=None if primary_result.success else primary_result.error,
            metadata={"attempt": attempt, "primary": True, "recipient": recipient_info},
        )

    for channel in reminder.channels[1:]:
        if channel in delivered:
            continue
        result = _send(sender, channel, recipient, payload, resolve_error)
        results.append((channel, result))
        if result.success:
            delivered.append(channel)
        record_event(
            reminder, "channel_delivery", "delivered" if result.success else "error",
            now=now, channel=channel,
            message=result.error,
            metadata={"attempt": attempt, "primary": False},
        )
    reminder.delivered_channels = delivered

    pending = reminder.pending_channels
    retry_at = None
    if pending and attempt < max_attempts:
        retry_at = now + retry_delay(attempt, backoff_minutes)
    reminder.next_attempt_at = retry_at

    if retry_at is not None:
        retry_meta = {"attempt": attempt, "retry_at": retry_at.isoformat(), "channels": pending}
        message = f"Retry {attempt + 1}/{max_attempts} at {retry_at.isoformat()}"
        if reminder.status == "failed":
            transition(reminder, "scheduled", now=now, event_type="retry_scheduled",
                       channel=primary, message=message, metadata=retry_meta)
        else:
            record_event(reminder, "retry_scheduled", reminder.status, now=now,
                         message=f"{message} ({', '.join(pending)})", metadata=retry_meta)
    elif pending:
        logger.warning(
            "Reminder %s: %s undelivered after %d attempt(s)",
            reminder.id, ", ".join(pending), attempt,
            extra={"reminder_id": reminder.id, "channel": pending[0]},
        )

    release(reminder)
    db.session.flush()
    return DispatchOutcome(reminder.status, results, retry_at, primary_result=primary_result)


def cancel(reminder: Reminder, now: datetime, reason: str | None = None) -> ReminderEvent:
    """Cancel a scheduled or failed reminder.

    Raises:
        TransitionError: the reminder is already sent or terminal.
    """
    event = transition(reminder, "cancelled", now=now, message=reason or "Cancelled")
    reminder.next_attempt_at = None
    release(reminder)
    return event
