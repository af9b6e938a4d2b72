"""
Checklist Assignment Service — per-user progress through a checklist cycle.

Every user working a checklist gets one assignment per open cycle, with one
row per active checklist item. Progress is the share of ticked items,
rounded half up. An assignment is done when:
    - allow_partial_completion: every required item is ticked
    - otherwise: every item is ticked
With requires_acknowledgement a done assignment waits in
``awaiting_acknowledgement`` until its user acknowledges it.

A completed assignment completes the checklist cycle it was opened for
(``checklist_service.complete_checklist_cycle``), which clears an overdue
checklist or advances ``next_due_at``.

Usage:
    from compliance.services import assignment_service
    assignments = assignment_service.assignments_for_user(7, now, roles=["auditor"])
    assignment_service.toggle_item(a.id, item.id, {"user_id": 7, "is_completed": True}, now)
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from compliance.core.exceptions import (
    AssignmentStateError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from compliance.models import db
from compliance.models.assignment import ChecklistAssignment, ChecklistAssignmentItem
from compliance.models.audit import write_audit
from compliance.models.checklist import Checklist
from compliance.services import checklist_service
from compliance.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 2000


def progress_percentage(done: int, total: int) -> int:
    """``round(done / total * 100)`` with halves rounded up; 0 for no items."""
    total = max(total, 1)
    return (done * 200 + total) // (2 * total)


def _counted_items(assignment) -> list[ChecklistAssignmentItem]:
    return [i for i in assignment.items if i.checklist_item.is_active]


# ═══════════════════════════════════════════════════════════════════════════
#  Sync & progress
# ═══════════════════════════════════════════════════════════════════════════


def assignable_checklists(user_id, roles=None, branch_id=None, limit=None) -> list[Checklist]:
    """Non-archived checklists with an open cycle, assigned to the user, a role or the branch."""
    conditions = [Checklist.assigned_user_id == user_id]
    roles = [r for r in (roles or []) if r]
    if roles:
        conditions.append(Checklist.assigned_role.in_(roles))
    if branch_id is not None:
        conditions.append(Checklist.branch_id == branch_id)
    q = (
        Checklist.query_active()
        .filter(Checklist.status != "archived")
        .filter(or_(*conditions))
        .filter(or_(Checklist.overdue_since.isnot(None), Checklist.next_due_at.isnot(None)))
        .order_by(Checklist.next_due_at, Checklist.id)
    )
    if limit:
        q = q.limit(limit)
    return q.all()


def _find(checklist_id, user_id, cycle):
    return ChecklistAssignment.query.filter_by(
        checklist_id=checklist_id, user_id=user_id, cycle_due_at=cycle,
    ).first()


def get_or_create_assignment(checklist, user_id: int) -> ChecklistAssignment:
    """The user's assignment for the checklist's open cycle, items in sync."""
    cycle = checklist.open_cycle
    assignment = _find(checklist.id, user_id, cycle)
    if assignment is None:
        assignment = ChecklistAssignment(
            checklist_id=checklist.id,
            user_id=user_id,
            branch_id=checklist.branch_id,
            cycle_due_at=cycle,
            status="pending",
            progress_percentage=0,
        )
        try:
            with db.session.begin_nested():
                db.session.add(assignment)
        except IntegrityError:
            # Opened concurrently by another request
            assignment = _find(checklist.id, user_id, cycle)
            if assignment is None:
                raise
    sync_items(assignment, checklist)
    return assignment


def sync_items(assignment, checklist) -> int:
    """Add a row for every active checklist item the assignment lacks."""
    have = {i.checklist_item_id for i in assignment.items}
    added = 0
    for item in checklist.items:
        if item.is_active and item.id not in have:
            assignment.items.append(ChecklistAssignmentItem(checklist_item=item))
            added += 1
    if added:
        db.session.flush()
    return added


def refresh_progress(assignment, checklist, now: datetime) -> bool:
    """Recompute progress and status. True when the assignment just completed."""
    items = _counted_items(assignment)
    done = [i for i in items if i.is_completed]
    assignment.progress_percentage = progress_percentage(len(done), len(items))
    if assignment.status == "completed":
        return False

    if checklist.allow_partial_completion:
        ready = bool(done) and all(i.is_completed for i in items if i.checklist_item.is_required)
    else:
        ready = bool(items) and len(done) == len(items)

    if ready:
        assignment.status = "awaiting_acknowledgement" if checklist.requires_acknowledgement else "completed"
    elif done:
        assignment.status = "in_progress"
    else:
        assignment.status = "pending"

    if assignment.status != "completed":
        assignment.completed_at = None
        return False
    assignment.completed_at = now
    return True


def _finish(assignment, checklist, now: datetime, actor: str) -> None:
    """Close the checklist cycle the assignment was opened for."""
    closed_cycle = (
        checklist.deleted_at is None
        and checklist.open_cycle == assignment.cycle_due_at
    )
    if closed_cycle:
        checklist_service.complete_checklist_cycle(checklist.id, now, actor=actor)
    write_audit(
        entity_type="assignment",
        entity_id=assignment.id,
        action="assignment.complete",
        actor=actor,
        branch_id=assignment.branch_id,
        details={
            "checklist_id": checklist.id,
            "user_id": assignment.user_id,
            "cycle_due_at": assignment.cycle_due_at,
            "cycle_completed": closed_cycle,
        },
        timestamp=now,
    )
    logger.info("Assignment %s completed by user %s", assignment.id, assignment.user_id,
                extra={"checklist_id": checklist.id})


# ═══════════════════════════════════════════════════════════════════════════
#  Operations
# ═══════════════════════════════════════════════════════════════════════════


def assignments_for_user(user_id, now: datetime, *, roles=None, branch_id=None,
                         limit=None, actor: str = "system") -> list[ChecklistAssignment]:
    """Open (or create) the user's assignment on every checklist they work."""
    assignments = []
    for checklist in assignable_checklists(user_id, roles, branch_id, limit):
        assignment = get_or_create_assignment(checklist, user_id)
        if refresh_progress(assignment, checklist, now):
            _finish(assignment, checklist, now, actor)
        assignments.append(assignment)
    return assignments


def get_assignment(assignment_id) -> ChecklistAssignment:
    assignment = db.session.get(ChecklistAssignment, assignment_id)
    if assignment is None:
        raise NotFoundError(resource="Assignment", resource_id=assignment_id)
    return assignment


def _user_id(data: dict) -> int:
    try:
        return int(data["user_id"])
    except (KeyError, TypeError, ValueError):
        raise ValidationError("user_id is required", details={"user_id": "Required"}) from None


def _owned(assignment_id, user_id: int) -> ChecklistAssignment:
    assignment = get_assignment(assignment_id)
    if assignment.user_id != user_id:
        raise ForbiddenError(f"Assignment {assignment_id} belongs to another user")
    return assignment


def toggle_item(assignment_id, item_id, data: dict, now: datetime, *,
                actor: str = "system") -> ChecklistAssignment:
    """Tick or untick one item of the user's assignment.

    ``data``: ``user_id`` (required), ``is_completed`` (required bool),
    ``notes`` (optional, max 2000 characters).

    Raises:
        ValidationError, NotFoundError, ForbiddenError,
        AssignmentStateError: the assignment is already completed.
    """
    errors = {}
    if data.get("is_completed") is None:
        errors["is_completed"] = "Required"
    notes = data.get("notes")
    if notes is not None and len(str(notes)) > MAX_NOTES_LENGTH:
        errors["notes"] = f"Max {MAX_NOTES_LENGTH} characters"
    user_id = _user_id(data)
    if errors:
        raise ValidationError("Assignment item validation failed", details=errors)

    assignment = _owned(assignment_id, user_id)
    item = next((i for i in assignment.items if i.id == item_id), None)
    if item is None:
        raise NotFoundError(resource="Assignment item", resource_id=item_id)
    if assignment.status == "completed":
        raise AssignmentStateError(assignment.id, assignment.status, "completed assignments are read-only")

    is_completed = parse_bool(data.get("is_completed"))
    item.is_completed = is_completed
    item.completed_at = now if is_completed else None
    item.completed_by = user_id if is_completed else None
    if notes is not None:
        item.notes = str(notes)
    assignment.last_interaction_at = now
    assignment.started_at = assignment.started_at or now

    checklist = assignment.checklist
    if refresh_progress(assignment, checklist, now):
        _finish(assignment, checklist, now, actor)
    return assignment


def acknowledge(assignment_id, data: dict, now: datetime, *, actor: str = "system") -> ChecklistAssignment:
    """Confirm a finished assignment of a checklist that requires acknowledgement.

    Raises:
        ValidationError, NotFoundError, ForbiddenError,
        AssignmentStateError: not awaiting acknowledgement.
    """
    assignment = _owned(assignment_id, _user_id(data))
    if assignment.status != "awaiting_acknowledgement":
        raise AssignmentStateError(assignment.id, assignment.status, "nothing to acknowledge")
    assignment.status = "completed"
    assignment.acknowledged_at = now
    assignment.completed_at = now
    assignment.last_interaction_at = now
    _finish(assignment, assignment.checklist, now, actor)
    return assignment
