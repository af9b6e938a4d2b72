"""
Tests — Archive store (soft delete / restore).

Covers:
    1. Visibility: archived rows leave every active query and aggregate
    2. deleted_at is monotonic
    3. Reminder archive cancels pending delivery, restore keeps history
    4. Checklist archive cascade policy
"""

from datetime import date, datetime, time, timedelta

import pytest

from compliance.core.exceptions import NotFoundError
from compliance.models import db
from compliance.models.audit import AuditLog
from compliance.models.checklist import Checklist, ChecklistItem
from compliance.models.reminder import Reminder
from compliance.services import archive as archive_store
from compliance.services import stats

NOW = datetime(2024, 3, 1, 9, 0)


def _create_checklist(**overrides):
    checklist = Checklist(
        title=overrides.pop("title", "Vault access log review"),
        frequency_type="weekly",
        frequency_interval=1,
        start_date=date(2024, 3, 4),
        due_time=time(10, 0),
        next_due_at=overrides.pop("next_due_at", datetime(2024, 3, 4, 10, 0)),
        **overrides,
    )
    checklist.items = [ChecklistItem(title="Compare log with CCTV", sort_order=0)]
    db.session.add(checklist)
    db.session.flush()
    return checklist


def _create_reminder(**overrides):
    data = {"title": "Review vault log", "remind_at": NOW + timedelta(days=1), "status": "scheduled"}
    data.update(overrides)
    reminder = Reminder(**data)
    db.session.add(reminder)
    db.session.flush()
    return reminder


class TestVisibility:
    def test_archived_checklist_leaves_active_query(self):
        checklist = _create_checklist()
        archive_store.archive(Checklist, checklist.id, NOW)
        assert Checklist.query_active().count() == 0
        assert Checklist.query_deleted().count() == 1
        assert db.session.get(Checklist, checklist.id) is not None

    def test_stats_exclude_archived(self):
        checklist = _create_checklist()
        assert stats.due_this_week(NOW) == 1
        archive_store.archive(Checklist, checklist.id, NOW)
        assert stats.due_this_week(NOW) == 0
        assert stats.checklist_stats(NOW)["total"] == 0

    def test_restore_brings_back_without_recomputing(self):
        checklist = _create_checklist()
        due = checklist.next_due_at
        archive_store.archive(Checklist, checklist.id, NOW)
        archive_store.restore(Checklist, checklist.id, now=NOW)
        assert checklist.deleted_at is None
        assert checklist.next_due_at == due
        assert stats.due_this_week(NOW) == 1


class TestMonotonicDeletedAt:
    def test_second_archive_keeps_first_timestamp(self):
        checklist = _create_checklist()
        archive_store.archive(Checklist, checklist.id, NOW)
        archive_store.archive(Checklist, checklist.id, NOW + timedelta(days=2))
        assert checklist.deleted_at == NOW

    def test_audit_rows(self):
        checklist = _create_checklist()
        archive_store.archive(Checklist, checklist.id, NOW, actor="maria")
        archive_store.archive(Checklist, checklist.id, NOW)
        archive_store.restore(Checklist, checklist.id, now=NOW)
        rows = AuditLog.query.order_by(AuditLog.id).all()
        assert [r.action for r in rows] == ["checklist.archive", "checklist.archive", "checklist.restore"]
        assert rows[0].actor == "maria"
        assert rows[1].details == {"already_archived": True}
        assert rows[2].details == {"was_archived": True}


class TestReminderArchive:
    def test_pending_reminder_is_cancelled(self):
        reminder = _create_reminder()
        archive_store.archive(Reminder, reminder.id, NOW)
        assert reminder.status == "cancelled"
        assert reminder.deleted_at == NOW
        assert [e.event_type for e in reminder.events] == ["cancelled"]

    def test_failed_reminder_is_cancelled(self):
        reminder = _create_reminder(status="failed")
        archive_store.archive(Reminder, reminder.id, NOW)
        assert reminder.status == "cancelled"

    def test_sent_reminder_keeps_status(self):
        reminder = _create_reminder(status="sent")
        archive_store.archive(Reminder, reminder.id, NOW)
        assert reminder.status == "sent"
        assert reminder.events.count() == 0

    def test_restore_keeps_status_and_history(self):
        reminder = _create_reminder()
        archive_store.archive(Reminder, reminder.id, NOW)
        archive_store.restore(Reminder, reminder.id, now=NOW)
        assert reminder.deleted_at is None
        assert reminder.status == "cancelled"
        assert reminder.events.count() == 1

    def test_unknown_id(self):
        with pytest.raises(NotFoundError):
            archive_store.archive(Reminder, 9999, NOW)
        with pytest.raises(NotFoundError):
            archive_store.restore(Checklist, 9999, now=NOW)


class TestCascade:
    def test_default_leaves_reminders(self):
        checklist = _create_checklist()
        reminder = _create_reminder(checklist_id=checklist.id)
        archive_store.archive(Checklist, checklist.id, NOW)
        assert reminder.status == "scheduled"

    def test_cascade_cancels_scheduled_reminders(self):
        checklist = _create_checklist()
        pending = _create_reminder(checklist_id=checklist.id)
        delivered = _create_reminder(checklist_id=checklist.id, status="sent")
        other = _create_reminder()

        archive_store.archive(Checklist, checklist.id, NOW, cascade_cancel=True)

        assert pending.status == "cancelled"
        assert delivered.status == "sent"
        assert other.status == "scheduled"
        audit = AuditLog.query.filter_by(action="checklist.archive").one()
        assert audit.details == {"cancelled_reminders": [pending.id]}
