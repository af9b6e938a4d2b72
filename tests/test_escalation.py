"""
Tests — Escalation resolver.

Covers:
    1. Deadline handling (before / after escalate_at)
    2. Exactly-once promotion across repeated sweeps
    3. Target resolution and escalation notice delivery
    4. Rows the sweep must ignore
"""

from datetime import datetime, timedelta

import pytest

from compliance.integrations.directory import StaticDirectory
from compliance.models import db
from compliance.models.reminder import Reminder
from compliance.services.escalation import escalation_candidates, pending_count, sweep

T = datetime(2024, 3, 1, 9, 0)


def _create_reminder(**overrides):
    data = {
        "title": "Cash count sign-off",
        "delivery_channel": "email",
        "remind_at": T,
        "due_at": T,
        "escalate_at": T + timedelta(hours=6),
        "auto_escalate": True,
        "escalate_to_role": "auditor",
        "status": "scheduled",
    }
    data.update(overrides)
    reminder = Reminder(**data)
    db.session.add(reminder)
    db.session.flush()
    return reminder


class TestDeadline:
    def test_before_escalate_at_nothing_happens(self, sender, directory):
        reminder = _create_reminder()
        assert sweep(T + timedelta(hours=5), directory=directory, sender=sender) == []
        assert reminder.status == "scheduled"
        assert reminder.events.count() == 0
        assert sender.calls == []

    def test_after_escalate_at_escalates_once(self, sender, directory):
        reminder = _create_reminder()
        now = T + timedelta(hours=7)

        assert sweep(now, directory=directory, sender=sender) == [reminder.id]
        assert sweep(now, directory=directory, sender=sender) == []
        assert sweep(now + timedelta(hours=1), directory=directory, sender=sender) == []

        assert reminder.status == "escalated"
        assert reminder.last_escalated_at == now
        events = reminder.events.all()
        assert [e.event_type for e in events] == ["escalated"]
        assert events[0].event_metadata["from_status"] == "scheduled"
        assert events[0].event_metadata["target"] == {"type": "role", "id": "auditor"}

    def test_exactly_at_escalate_at(self, sender, directory):
        reminder = _create_reminder()
        assert sweep(reminder.escalate_at, directory=directory, sender=sender) == [reminder.id]

    def test_sent_reminder_escalates(self, sender, directory):
        reminder = _create_reminder(status="sent")
        sweep(T + timedelta(hours=7), directory=directory, sender=sender)
        assert reminder.status == "escalated"
        assert reminder.events.first().event_metadata["from_status"] == "sent"

    def test_pending_retry_is_cleared(self, sender, directory):
        reminder = _create_reminder(next_attempt_at=T + timedelta(hours=8))
        sweep(T + timedelta(hours=7), directory=directory, sender=sender)
        assert reminder.next_attempt_at is None


class TestTargets:
    def test_notice_goes_to_role_address(self, sender, directory):
        _create_reminder()
        sweep(T + timedelta(hours=7), directory=directory, sender=sender)
        channel, recipient, payload = sender.calls[0]
        assert channel == "email"
        assert recipient.address == "audit@branch.example"
        assert payload["escalation"] is True

    def test_user_target_wins_over_role(self, sender, directory):
        reminder = _create_reminder(escalate_to_user_id=7)
        sweep(T + timedelta(hours=7), directory=directory, sender=sender)
        assert sender.calls[0][1].address == "maria@branch.example"
        assert reminder.events.first().message == "Escalated to user 7"

    def test_no_target_still_escalates(self, sender, directory):
        reminder = _create_reminder(escalate_to_role=None)
        sweep(T + timedelta(hours=7), directory=directory, sender=sender)
        assert reminder.status == "escalated"
        assert reminder.events.first().message == "No escalation target configured"
        assert sender.calls == []

    def test_unresolvable_target_still_escalates(self, sender):
        strict = StaticDirectory(strict=True)
        reminder = _create_reminder()
        sweep(T + timedelta(hours=7), directory=strict, sender=sender)
        assert reminder.status == "escalated"
        assert "not resolved" in reminder.events.first().message

    def test_notice_failure_does_not_undo_escalation(self, sender, directory):
        sender.raising = {"email"}
        reminder = _create_reminder()
        assert sweep(T + timedelta(hours=7), directory=directory, sender=sender) == [reminder.id]
        assert reminder.status == "escalated"
        assert "unreachable" in reminder.events.first().message

    def test_without_sender_only_resolves(self, directory):
        reminder = _create_reminder()
        sweep(T + timedelta(hours=7), directory=directory)
        meta = reminder.events.first().event_metadata
        assert meta["recipient"]["address"] == "audit@branch.example"


class TestIgnored:
    @pytest.mark.parametrize("overrides", [
        {"auto_escalate": False},
        {"status": "cancelled"},
        {"status": "failed"},
        {"status": "escalated"},
        {"escalate_at": None},
    ])
    def test_not_a_candidate(self, overrides, sender, directory):
        _create_reminder(**overrides)
        now = T + timedelta(hours=7)
        assert escalation_candidates(now) == []
        assert sweep(now, directory=directory, sender=sender) == []

    def test_archived_reminder_skipped(self, sender, directory):
        reminder = _create_reminder()
        reminder.soft_delete(T)
        db.session.flush()
        assert sweep(T + timedelta(hours=7), directory=directory, sender=sender) == []
        assert reminder.status == "scheduled"

    def test_pending_count_is_read_only(self):
        reminder = _create_reminder()
        _create_reminder(escalate_at=T + timedelta(hours=12))
        assert pending_count(T + timedelta(hours=7)) == 1
        assert reminder.status == "scheduled"
