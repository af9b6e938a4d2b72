"""
Compliance aggregates — dashboard counters and the reminder center.

Computed from the same fields the scheduler maintains (``next_due_at``,
``overdue_since``, reminder status/remind_at), and always through
``query_active()`` so an archived row disappears from every counter the
moment it is archived.

Usage:
    from compliance.services.stats import checklist_stats
    stats = checklist_stats(now, branch_id=3)
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, or_

from compliance.models.checklist import Checklist
from compliance.models.reminder import Reminder

REMINDER_CENTER_LIMIT = 25


def _checklists(branch_id=None):
    q = Checklist.query_active()
    if branch_id is not None:
        q = q.filter(Checklist.branch_id == branch_id)
    return q


def _scheduling(branch_id=None):
    """Checklists the scheduler works on: active and not archived."""
    return _checklists(branch_id).filter(Checklist.status == "active")


def due_this_week(now: datetime, *, window_days: int = 7, branch_id=None) -> int:
    """Active checklists with ``now <= next_due_at <= now + window``."""
    return (
        _scheduling(branch_id)
        .filter(Checklist.next_due_at.isnot(None))
        .filter(Checklist.next_due_at >= now)
        .filter(Checklist.next_due_at <= now + timedelta(days=window_days))
        .count()
    )


def overdue_count(now: datetime, *, branch_id=None) -> int:
    """Current cycle past due, or a lapsed cycle nobody completed."""
    return (
        _scheduling(branch_id)
        .filter(or_(
            Checklist.overdue_since.isnot(None),
            and_(Checklist.next_due_at.isnot(None), Checklist.next_due_at < now),
        ))
        .count()
    )


def checklist_stats(now: datetime, *, window_days: int = 7, branch_id=None) -> dict:
    return {
        "total": _checklists(branch_id).count(),
        "due_this_week": due_this_week(now, window_days=window_days, branch_id=branch_id),
        "overdue": overdue_count(now, branch_id=branch_id),
        "inactive": _checklists(branch_id).filter(Checklist.status == "inactive").count(),
    }


def reminder_stats(now: datetime, *, branch_id=None) -> dict:
    base = Reminder.query_active()
    if branch_id is not None:
        base = base.filter(Reminder.branch_id == branch_id)
    day_start = datetime.combine(now.date(), datetime.min.time())
    day_end = day_start + timedelta(days=1)
    return {
        "total": base.count(),
        "due_today": base.filter(Reminder.remind_at >= day_start, Reminder.remind_at < day_end).count(),
        "triggered": base.filter(Reminder.status == "sent").count(),
        "escalated": base.filter(Reminder.status == "escalated").count(),
        "overdue": base.filter(Reminder.status == "scheduled", Reminder.remind_at < now).count(),
    }


def reminders_for_assignee(user_id, roles=None, *, limit: int = REMINDER_CENTER_LIMIT) -> list[Reminder]:
    """Reminder center: reminders assigned to the user or one of their roles."""
    conditions = [Reminder.assigned_user_id == user_id]
    roles = [r for r in (roles or []) if r]
    if roles:
        conditions.append(Reminder.assigned_role.in_(roles))
    return (
        Reminder.query_active()
        .filter(or_(*conditions))
        .order_by(Reminder.remind_at, Reminder.id)
        .limit(limit)
        .all()
    )
