"""
Tests — Checklist assignments (per-user progress through a cycle).

Covers:
    1. Progress rounding
    2. Assignment discovery by user, role and branch; one row per cycle
    3. Partial vs. full completion, acknowledgement
    4. Ownership and read-only completed assignments
    5. Completion closes (or settles) the checklist cycle
"""

from datetime import datetime

import pytest

from compliance.core.exceptions import (
    AssignmentStateError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from compliance.models.assignment import ChecklistAssignment
from compliance.models.audit import AuditLog
from compliance.services import assignment_service as svc
from compliance.services import checklist_service

NOW = datetime(2024, 3, 1, 9, 0)
LATER = datetime(2024, 3, 2, 15, 0)
FIRST_CYCLE = datetime(2024, 3, 4, 10, 0)
SECOND_CYCLE = datetime(2024, 3, 11, 10, 0)


def _checklist(**overrides):
    data = {
        "title": "Opening cash count",
        "frequency_type": "weekly",
        "frequency_interval": 1,
        "start_date": "2024-03-04",
        "due_time": "10:00",
        "assigned_user_id": 7,
        "items": [
            {"title": "Count drawer"},
            {"title": "Photograph seal", "is_required": False},
        ],
    }
    data.update(overrides)
    return checklist_service.create_checklist(data, NOW)


def _open(user_id=7, **kwargs):
    return svc.assignments_for_user(user_id, NOW, **kwargs)


def _tick(assignment, index, done=True, user_id=7, at=LATER):
    item = assignment.items[index]
    return svc.toggle_item(assignment.id, item.id, {"user_id": user_id, "is_completed": done}, at)


# ═══════════════════════════════════════════════════════════════════════════
#  PROGRESS
# ═══════════════════════════════════════════════════════════════════════════

class TestProgress:
    @pytest.mark.parametrize("done,total,expected", [
        (0, 0, 0),
        (0, 2, 0),
        (1, 2, 50),
        (1, 3, 33),
        (2, 3, 67),
        (1, 8, 13),
        (3, 3, 100),
    ])
    def test_rounding(self, done, total, expected):
        assert svc.progress_percentage(done, total) == expected


# ═══════════════════════════════════════════════════════════════════════════
#  DISCOVERY
# ═══════════════════════════════════════════════════════════════════════════

class TestAssignmentsForUser:
    def test_opens_current_cycle(self):
        checklist = _checklist()
        [assignment] = _open()

        assert assignment.checklist_id == checklist.id
        assert assignment.cycle_due_at == FIRST_CYCLE
        assert assignment.status == "pending"
        assert assignment.progress_percentage == 0
        assert [i.checklist_item.title for i in assignment.items] == ["Count drawer", "Photograph seal"]

    def test_repeated_calls_reuse_assignment(self):
        _checklist()
        first = _open()
        second = _open()
        assert [a.id for a in first] == [a.id for a in second]
        assert ChecklistAssignment.query.count() == 1
        assert len(second[0].items) == 2

    def test_role_and_branch_matching(self):
        _checklist(assigned_user_id=None, assigned_role="auditor", code="ROLE")
        _checklist(assigned_user_id=None, branch_id=4, code="BRANCH")

        assert _open(user_id=9) == []
        assert len(_open(user_id=9, roles=["auditor"])) == 1
        assert len(_open(user_id=9, roles=["auditor"], branch_id=4)) == 2

    def test_inactive_items_are_not_assigned(self):
        _checklist(items=[{"title": "Count drawer"}, {"title": "Old step", "is_active": False}])
        [assignment] = _open()
        assert len(assignment.items) == 1

    def test_archived_checklist_excluded(self):
        checklist = _checklist()
        checklist.soft_delete(NOW)
        assert _open() == []


# ═══════════════════════════════════════════════════════════════════════════
#  COMPLETION
# ═══════════════════════════════════════════════════════════════════════════

class TestCompletion:
    def test_partial_completion_needs_required_items_only(self):
        checklist = _checklist()
        [assignment] = _open()

        _tick(assignment, 0)

        assert assignment.status == "completed"
        assert assignment.progress_percentage == 50
        assert assignment.completed_at == LATER
        assert assignment.started_at == LATER
        assert checklist.next_due_at == SECOND_CYCLE
        assert checklist.last_completed_at == LATER
        audit = AuditLog.query.filter_by(action="assignment.complete").one()
        assert audit.details["cycle_completed"] is True

    def test_optional_item_alone_is_in_progress(self):
        _checklist()
        [assignment] = _open()
        _tick(assignment, 1)
        assert assignment.status == "in_progress"
        assert assignment.progress_percentage == 50

    def test_full_completion_required(self):
        checklist = _checklist(allow_partial_completion=False)
        [assignment] = _open()

        _tick(assignment, 0)
        assert assignment.status == "in_progress"
        assert checklist.next_due_at == FIRST_CYCLE

        _tick(assignment, 1)
        assert assignment.status == "completed"
        assert assignment.progress_percentage == 100
        assert checklist.next_due_at == SECOND_CYCLE

    def test_untick_returns_to_pending(self):
        _checklist(allow_partial_completion=False)
        [assignment] = _open()
        _tick(assignment, 0)
        _tick(assignment, 0, done=False)

        item = assignment.items[0]
        assert assignment.status == "pending"
        assert assignment.progress_percentage == 0
        assert (item.is_completed, item.completed_at, item.completed_by) == (False, None, None)

    def test_string_flag_and_notes(self):
        _checklist(allow_partial_completion=False)
        [assignment] = _open()
        item = assignment.items[1]
        svc.toggle_item(assignment.id, item.id,
                        {"user_id": "7", "is_completed": "false", "notes": "Seal torn"}, LATER)
        assert item.is_completed is False
        assert item.notes == "Seal torn"

    def test_next_cycle_gets_fresh_assignment(self):
        _checklist()
        [assignment] = _open()
        _tick(assignment, 0)

        [fresh] = _open()
        assert fresh.id != assignment.id
        assert fresh.cycle_due_at == SECOND_CYCLE
        assert fresh.status == "pending"

    def test_overdue_cycle_is_settled(self):
        checklist = _checklist()
        checklist_service.roll_forward(checklist, datetime(2024, 3, 4, 11, 0))
        [assignment] = _open()
        assert assignment.cycle_due_at == FIRST_CYCLE

        _tick(assignment, 0, at=datetime(2024, 3, 4, 12, 0))

        assert checklist.overdue_since is None
        assert checklist.next_due_at == SECOND_CYCLE


class TestAcknowledgement:
    def test_waits_for_acknowledgement(self):
        checklist = _checklist(requires_acknowledgement=True)
        [assignment] = _open()

        _tick(assignment, 0)
        assert assignment.status == "awaiting_acknowledgement"
        assert assignment.completed_at is None
        assert checklist.next_due_at == FIRST_CYCLE

        svc.acknowledge(assignment.id, {"user_id": 7}, LATER)
        assert assignment.status == "completed"
        assert assignment.acknowledged_at == LATER
        assert checklist.next_due_at == SECOND_CYCLE

    def test_nothing_to_acknowledge(self):
        _checklist(requires_acknowledgement=True)
        [assignment] = _open()
        with pytest.raises(AssignmentStateError) as exc_info:
            svc.acknowledge(assignment.id, {"user_id": 7}, LATER)
        assert exc_info.value.current_status == "pending"


# ═══════════════════════════════════════════════════════════════════════════
#  GUARDS
# ═══════════════════════════════════════════════════════════════════════════

class TestGuards:
    def test_other_user_forbidden(self):
        _checklist()
        [assignment] = _open()
        with pytest.raises(ForbiddenError):
            _tick(assignment, 0, user_id=8)
        with pytest.raises(ForbiddenError):
            svc.acknowledge(assignment.id, {"user_id": 8}, LATER)

    def test_completed_assignment_is_read_only(self):
        _checklist()
        [assignment] = _open()
        _tick(assignment, 0)
        with pytest.raises(AssignmentStateError):
            _tick(assignment, 1)

    def test_unknown_item(self):
        _checklist()
        [assignment] = _open()
        with pytest.raises(NotFoundError):
            svc.toggle_item(assignment.id, 999, {"user_id": 7, "is_completed": True}, LATER)

    def test_unknown_assignment(self):
        with pytest.raises(NotFoundError):
            svc.get_assignment(404)

    @pytest.mark.parametrize("data,field", [
        ({"user_id": 7}, "is_completed"),
        ({"user_id": 7, "is_completed": True, "notes": "x" * 2001}, "notes"),
        ({"is_completed": True}, "user_id"),
    ])
    def test_validation(self, data, field):
        _checklist()
        [assignment] = _open()
        with pytest.raises(ValidationError) as exc_info:
            svc.toggle_item(assignment.id, assignment.items[0].id, data, LATER)
        assert field in exc_info.value.details
