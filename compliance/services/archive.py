"""
Archive Store — soft delete / restore for checklists and reminders.

Archived rows keep their data and history; they drop out of
``query_active()`` and therefore out of scheduling, dispatch, escalation and
every aggregate. ``deleted_at`` only ever goes back to NULL through
``restore``.

Reminder archive cancels a reminder that has not reached a delivery outcome
(scheduled or failed). Checklist archive leaves existing reminders alone
unless ``cascade_cancel`` is set.
"""

from __future__ import annotations

import logging
from datetime import datetime

from compliance.core.exceptions import NotFoundError
from compliance.models import db
from compliance.models.audit import write_audit
from compliance.models.checklist import Checklist
from compliance.models.reminder import Reminder
from compliance.services import reminder_lifecycle

logger = logging.getLogger(__name__)

_ENTITY_TYPES = {Checklist: "checklist", Reminder: "reminder"}


def get_or_404(model, entity_id):
    """Fetch by PK including archived rows."""
    obj = db.session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(resource=model.__name__, resource_id=entity_id)
    return obj


def archive(model, entity_id, now: datetime, *, cascade_cancel: bool = False, actor: str = "system"):
    """Archive a Checklist or Reminder by id.

    Raises:
        NotFoundError: unknown id.
    """
    obj = get_or_404(model, entity_id)
    details = {}
    if obj.deleted_at is not None:
        details["already_archived"] = True
    obj.soft_delete(now)

    if model is Reminder and obj.status in ("scheduled", "failed") and not details:
        reminder_lifecycle.cancel(obj, now, reason="Reminder archived")
        details["cancelled"] = True

    if model is Checklist and cascade_cancel and not details:
        details["cancelled_reminders"] = cancel_pending_for_checklist(obj.id, now, reason="Checklist archived")

    entity_type = _ENTITY_TYPES[model]
    write_audit(
        entity_type=entity_type,
        entity_id=obj.id,
        action=f"{entity_type}.archive",
        actor=actor,
        branch_id=obj.branch_id,
        details=details,
        timestamp=now,
    )
    logger.info("%s %s archived", model.__name__, obj.id,
                extra={f"{entity_type}_id": obj.id})
    return obj


def restore(model, entity_id, *, now: datetime | None = None, actor: str = "system"):
    """Clear ``deleted_at``. Status and event history are left as they are.

    Raises:
        NotFoundError: unknown id.
    """
    obj = get_or_404(model, entity_id)
    was_archived = obj.deleted_at is not None
    obj.restore()

    entity_type = _ENTITY_TYPES[model]
    write_audit(
        entity_type=entity_type,
        entity_id=obj.id,
        action=f"{entity_type}.restore",
        actor=actor,
        branch_id=obj.branch_id,
        details={"was_archived": was_archived},
        timestamp=now,
    )
    return obj


def cancel_pending_for_checklist(checklist_id: int, now: datetime, *, reason: str,
                                 cycle_due_at: datetime | None = None,
                                 lapsed_before: datetime | None = None) -> list[int]:
    """Cancel the still-scheduled reminders of a checklist.

    ``cycle_due_at`` narrows to one cycle, ``lapsed_before`` to the cycles
    due before that time.
    """
    q = Reminder.query_active().filter(
        Reminder.checklist_id == checklist_id,
        Reminder.status == "scheduled",
    )
    if cycle_due_at is not None:
        q = q.filter(Reminder.cycle_due_at == cycle_due_at)
    if lapsed_before is not None:
        q = q.filter(Reminder.cycle_due_at.isnot(None), Reminder.cycle_due_at < lapsed_before)
    cancelled = []
    for reminder in q.order_by(Reminder.id).all():
        reminder_lifecycle.cancel(reminder, now, reason=reason)
        cancelled.append(reminder.id)
    return cancelled
