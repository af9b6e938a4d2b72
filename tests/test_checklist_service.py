"""
Tests — Checklist service (validation, create, schedule update, completion).
"""

from datetime import date, datetime, time

import pytest

from compliance.core.exceptions import ConflictError, NotFoundError, ValidationError
from compliance.models import db
from compliance.models.audit import AuditLog
from compliance.models.reminder import Reminder
from compliance.services import checklist_service as svc

NOW = datetime(2024, 3, 1, 9, 0)


def _payload(**overrides):
    data = {
        "title": "Fire extinguisher inspection",
        "frequency_type": "weekly",
        "frequency_interval": 1,
        "start_date": "2024-03-04",
        "due_time": "10:00",
        "assigned_user_id": 7,
        "escalate_to_role": "auditor",
        "items": [{"title": "Check pressure gauge"}, {"title": "Check safety pin"}],
    }
    data.update(overrides)
    return data


def _reminders(checklist_id, status=None):
    q = Reminder.query.filter_by(checklist_id=checklist_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Reminder.id).all()


# ═══════════════════════════════════════════════════════════════════════════
#  VALIDATION
# ═══════════════════════════════════════════════════════════════════════════

class TestValidation:
    def test_normalization(self):
        clean = svc.validate_checklist_payload(_payload(
            due_time="09:00:30",
            advance_reminder_offsets=[24, 48, 24],
            triggers=[{"trigger_type": "advance", "offset_hours": 2,
                       "channels": ["sms", "email", "sms"]}],
        ))
        assert clean["due_time"] == time(9, 0)
        assert clean["start_date"] == date(2024, 3, 4)
        assert clean["advance_reminder_offsets"] == [48, 24]
        assert clean["triggers"][0]["channels"] == ["sms", "email"]
        assert [i["sort_order"] for i in clean["items"]] == [0, 1]
        assert clean["is_recurring"] is True

    @pytest.mark.parametrize("overrides,field", [
        ({"title": ""}, "title"),
        ({"frequency_type": "fortnightly"}, "frequency_type"),
        ({"frequency_interval": 0}, "frequency_interval"),
        ({"frequency_interval": 366}, "frequency_interval"),
        ({"frequency_type": "custom"}, "custom_frequency_unit"),
        ({"frequency_type": "custom", "custom_frequency_unit": "days"}, "custom_frequency_value"),
        ({"start_date": None}, "start_date"),
        ({"start_date": "04/03/2024"}, "start_date"),
        ({"due_time": "25:99"}, "due_time"),
        ({"items": []}, "items"),
        ({"advance_reminder_offsets": [0]}, "advance_reminder_offsets"),
        ({"advance_reminder_offsets": [10001]}, "advance_reminder_offsets"),
        ({"escalation_offset_hours": -1}, "escalation_offset_hours"),
    ])
    def test_rejected_fields(self, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            svc.validate_checklist_payload(_payload(**overrides))
        assert field in exc_info.value.details

    def test_trigger_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            svc.validate_checklist_payload(_payload(triggers=[
                {"trigger_type": "reminder"},
                {"trigger_type": "advance", "offset_hours": 1, "channels": ["fax"]},
                {"trigger_type": "escalation", "offset_hours": 0},
            ]))
        details = exc_info.value.details
        assert "triggers.0.trigger_type" in details
        assert "triggers.1.channels" in details
        assert "triggers.2.offset_hours" in details

    def test_escalation_trigger_uses_checklist_delay(self):
        clean = svc.validate_checklist_payload(_payload(
            escalation_offset_hours=4,
            triggers=[{"trigger_type": "escalation"}],
        ))
        assert clean["triggers"][0]["offset_hours"] == 0


# ═══════════════════════════════════════════════════════════════════════════
#  CREATE
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:
    def test_schedules_first_cycle_and_reminders(self):
        checklist = svc.create_checklist(_payload(advance_reminder_offsets=[24]), NOW, actor="maria")

        assert checklist.next_due_at == datetime(2024, 3, 4, 10, 0)
        assert checklist.last_triggered_at is None
        assert len(checklist.items) == 2
        reminders = _reminders(checklist.id)
        assert [(r.source_key, r.remind_at) for r in reminders] == [
            ("offset:24", datetime(2024, 3, 3, 10, 0)),
        ]
        audit = AuditLog.query.filter_by(action="checklist.create").one()
        assert audit.actor == "maria"
        assert audit.details["reminders_generated"] == 1

    def test_weekly_scenario_first_due(self):
        checklist = svc.create_checklist(
            _payload(start_date="2024-01-01"), datetime(2023, 12, 31, 12, 0),
        )
        assert checklist.next_due_at == datetime(2024, 1, 1, 10, 0)

    def test_past_start_rolls_to_next_cycle(self):
        checklist = svc.create_checklist(_payload(start_date="2024-01-08"), NOW)
        assert checklist.next_due_at == datetime(2024, 3, 4, 10, 0)
        assert checklist.last_triggered_at == datetime(2024, 1, 8, 10, 0)

    def test_monthly_clamped_start(self):
        checklist = svc.create_checklist(
            _payload(frequency_type="monthly", start_date="2024-01-31"),
            datetime(2024, 1, 1, 0, 0),
        )
        assert checklist.next_due_at == datetime(2024, 1, 31, 10, 0)
        assert svc.roll_forward(checklist, datetime(2024, 1, 31, 11, 0)) is True
        assert checklist.next_due_at == datetime(2024, 2, 29, 10, 0)

    def test_duplicate_code(self):
        svc.create_checklist(_payload(code="FIRE-01"), NOW)
        with pytest.raises(ConflictError):
            svc.create_checklist(_payload(code="FIRE-01"), NOW)

    def test_inactive_checklist_not_generated(self):
        checklist = svc.create_checklist(_payload(status="inactive", advance_reminder_offsets=[24]), NOW)
        assert _reminders(checklist.id) == []


# ═══════════════════════════════════════════════════════════════════════════
#  ROLL FORWARD
# ═══════════════════════════════════════════════════════════════════════════

class TestRollForward:
    def test_cycle_stays_open_during_grace(self):
        checklist = svc.create_checklist(_payload(escalation_offset_hours=24), NOW)
        assert svc.roll_forward(checklist, datetime(2024, 3, 5, 9, 0)) is False
        assert svc.roll_forward(checklist, datetime(2024, 3, 5, 10, 0)) is False
        assert checklist.next_due_at == datetime(2024, 3, 4, 10, 0)

    def test_cycle_consumed_after_grace(self):
        checklist = svc.create_checklist(_payload(escalation_offset_hours=24), NOW)
        assert svc.roll_forward(checklist, datetime(2024, 3, 5, 10, 1)) is True
        assert checklist.last_triggered_at == datetime(2024, 3, 4, 10, 0)
        assert checklist.next_due_at == datetime(2024, 3, 11, 10, 0)

    def test_consumed_cycle_marks_overdue_once(self):
        checklist = svc.create_checklist(_payload(frequency_type="daily"), NOW)
        svc.roll_forward(checklist, datetime(2024, 3, 4, 11, 0))
        svc.roll_forward(checklist, datetime(2024, 3, 5, 11, 0))
        assert checklist.overdue_since == datetime(2024, 3, 4, 10, 0)
        assert checklist.open_cycle == datetime(2024, 3, 4, 10, 0)
        assert checklist.next_due_at == datetime(2024, 3, 6, 10, 0)

    def test_creation_with_past_start_is_not_overdue(self):
        checklist = svc.create_checklist(_payload(start_date="2024-02-01"), NOW)
        assert checklist.overdue_since is None
        assert checklist.next_due_at > NOW

    def test_non_recurring_ends(self):
        checklist = svc.create_checklist(_payload(is_recurring=False), NOW)
        assert svc.roll_forward(checklist, datetime(2024, 3, 4, 11, 0)) is True
        assert checklist.next_due_at is None
        assert svc.roll_forward(checklist, datetime(2024, 4, 1)) is False


# ═══════════════════════════════════════════════════════════════════════════
#  UPDATE SCHEDULE
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateSchedule:
    def test_changed_offsets_replace_reminders(self):
        checklist = svc.create_checklist(_payload(advance_reminder_offsets=[24]), NOW)
        old = _reminders(checklist.id)[0]

        svc.update_checklist_schedule(checklist.id, {"advance_reminder_offsets": [2]}, NOW)

        assert old.status == "cancelled"
        assert old.events.first().message == "Checklist schedule changed"
        pending = _reminders(checklist.id, status="scheduled")
        assert [(r.source_key, r.remind_at) for r in pending] == [
            ("offset:2", datetime(2024, 3, 4, 8, 0)),
        ]
        audit = AuditLog.query.filter_by(action="checklist.update_schedule").one()
        assert audit.details["changed"] == ["advance_reminder_offsets"]
        assert audit.details["cancelled_reminders"] == [old.id]

    def test_new_start_date_recomputes_next_due(self):
        checklist = svc.create_checklist(_payload(advance_reminder_offsets=[24]), NOW)
        svc.update_checklist_schedule(checklist.id, {"start_date": "2024-03-06"}, NOW)

        assert checklist.next_due_at == datetime(2024, 3, 6, 10, 0)
        pending = _reminders(checklist.id, status="scheduled")
        assert [r.cycle_due_at for r in pending] == [datetime(2024, 3, 6, 10, 0)]

    def test_switch_to_daily(self):
        checklist = svc.create_checklist(_payload(start_date="2024-02-01"), NOW)
        svc.update_checklist_schedule(checklist.id, {"frequency_type": "daily"}, NOW)
        assert checklist.next_due_at == datetime(2024, 3, 1, 10, 0)

    def test_triggers_replaced(self):
        checklist = svc.create_checklist(_payload(triggers=[{"trigger_type": "due"}]), NOW)
        svc.update_checklist_schedule(checklist.id, {
            "triggers": [{"trigger_type": "advance", "offset_hours": 3, "channels": ["email"]}],
        }, NOW)
        db.session.flush()
        assert [t.trigger_type for t in checklist.triggers] == ["advance"]
        pending = _reminders(checklist.id, status="scheduled")
        assert len(pending) == 1
        assert pending[0].delivery_channel == "email"

    def test_invalid_update_rejected(self):
        checklist = svc.create_checklist(_payload(), NOW)
        with pytest.raises(ValidationError) as exc_info:
            svc.update_checklist_schedule(checklist.id, {"frequency_interval": 0}, NOW)
        assert "frequency_interval" in exc_info.value.details

    def test_removing_delay_breaks_escalation_trigger(self):
        checklist = svc.create_checklist(_payload(
            escalation_offset_hours=4, triggers=[{"trigger_type": "escalation"}],
        ), NOW)
        with pytest.raises(ValidationError):
            svc.update_checklist_schedule(checklist.id, {"escalation_offset_hours": None}, NOW)

    def test_unknown_checklist(self):
        with pytest.raises(NotFoundError):
            svc.update_checklist_schedule(404, {"frequency_interval": 2}, NOW)


# ═══════════════════════════════════════════════════════════════════════════
#  COMPLETE CYCLE
# ═══════════════════════════════════════════════════════════════════════════

class TestCompleteCycle:
    def test_moves_to_next_cycle(self):
        checklist = svc.create_checklist(_payload(advance_reminder_offsets=[24]), NOW)
        current = _reminders(checklist.id)[0]

        svc.complete_checklist_cycle(checklist.id, NOW)

        assert checklist.last_completed_at == NOW
        assert checklist.last_triggered_at == datetime(2024, 3, 4, 10, 0)
        assert checklist.next_due_at == datetime(2024, 3, 11, 10, 0)
        assert current.status == "cancelled"
        pending = _reminders(checklist.id, status="scheduled")
        assert [(r.cycle_due_at, r.remind_at) for r in pending] == [
            (datetime(2024, 3, 11, 10, 0), datetime(2024, 3, 10, 10, 0)),
        ]

    def test_overdue_completion_keeps_upcoming_cycle(self):
        checklist = svc.create_checklist(_payload(advance_reminder_offsets=[2]), NOW)
        svc.roll_forward(checklist, datetime(2024, 3, 4, 11, 0))
        lapsed = [r for r in _reminders(checklist.id, status="scheduled")
                  if r.cycle_due_at == datetime(2024, 3, 4, 10, 0)]

        svc.complete_checklist_cycle(checklist.id, datetime(2024, 3, 4, 12, 0))

        assert checklist.overdue_since is None
        assert checklist.next_due_at == datetime(2024, 3, 11, 10, 0)
        assert all(r.status == "cancelled" for r in lapsed)
        audit = AuditLog.query.filter_by(action="checklist.complete_cycle").one()
        assert audit.details["overdue"] is True

    def test_non_recurring_has_no_next_cycle(self):
        checklist = svc.create_checklist(_payload(is_recurring=False), NOW)
        svc.complete_checklist_cycle(checklist.id, NOW)
        assert checklist.next_due_at is None
        with pytest.raises(ValidationError):
            svc.complete_checklist_cycle(checklist.id, NOW)

    def test_archived_rejected(self):
        checklist = svc.create_checklist(_payload(), NOW)
        checklist.soft_delete(NOW)
        with pytest.raises(ValidationError):
            svc.complete_checklist_cycle(checklist.id, NOW)
