"""
Compliance Engine
Compliance Blueprint — thin JSON surface over ComplianceEngine.

Provides:
    - Checklist create / schedule update / cycle completion / archive / restore
    - Manual reminders: create / cancel / archive / restore / event history
    - Reminder center (per assignee) and dashboard stats
    - Scheduler tick (manual trigger) and job registry management

Every engine call returns an OperationResult; failures are rendered with
the standard error envelope (``api_error``).
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from compliance.blueprints import result_response
from compliance.engine import ComplianceEngine
from compliance.middleware.timing import current_actor
from compliance.services.reminder_service import parse_datetime
from compliance.services.scheduler_service import SchedulerService
from compliance.utils.errors import E, api_error
from compliance.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

compliance_bp = Blueprint("compliance", __name__, url_prefix="/api/v1/compliance")


def _engine() -> ComplianceEngine:
    return ComplianceEngine.from_app(current_app)


def _branch_id():
    return request.args.get("branch_id", type=int)


# ═══════════════════════════════════════════════════════════════════════════
#  CHECKLISTS
# ═══════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/checklists", methods=["POST"])
def create_checklist():
    """Create a checklist with its items and triggers."""
    data = request.get_json(silent=True) or {}
    return result_response(_engine().create_checklist(data, actor=current_actor()), status=201)


@compliance_bp.route("/checklists/<int:checklist_id>", methods=["GET"])
def get_checklist(checklist_id):
    return result_response(_engine().get_checklist(checklist_id))


@compliance_bp.route("/checklists/<int:checklist_id>/schedule", methods=["PUT", "PATCH"])
def update_checklist_schedule(checklist_id):
    """Change frequency, offsets, triggers or assignment; next_due_at is recomputed."""
    data = request.get_json(silent=True) or {}
    return result_response(_engine().update_checklist_schedule(checklist_id, data, actor=current_actor()))


@compliance_bp.route("/checklists/<int:checklist_id>/complete", methods=["POST"])
def complete_checklist_cycle(checklist_id):
    return result_response(_engine().complete_checklist_cycle(checklist_id, actor=current_actor()))


@compliance_bp.route("/checklists/<int:checklist_id>", methods=["DELETE"])
def archive_checklist(checklist_id):
    """Soft delete (archive) a checklist."""
    return result_response(_engine().archive_checklist(checklist_id, actor=current_actor()))


@compliance_bp.route("/checklists/<int:checklist_id>/restore", methods=["POST"])
def restore_checklist(checklist_id):
    return result_response(_engine().restore_checklist(checklist_id, actor=current_actor()))


# ═══════════════════════════════════════════════════════════════════════════
#  REMINDERS
# ═══════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/reminders", methods=["POST"])
def create_reminder():
    """Create a manual reminder."""
    data = request.get_json(silent=True) or {}
    return result_response(_engine().create_reminder(data, actor=current_actor()), status=201)


@compliance_bp.route("/reminders/<int:reminder_id>", methods=["GET"])
def get_reminder(reminder_id):
    return result_response(_engine().get_reminder(reminder_id))


@compliance_bp.route("/reminders/<int:reminder_id>/events", methods=["GET"])
def list_reminder_events(reminder_id):
    """Append-only delivery/transition history of a reminder."""
    return result_response(
        _engine().get_reminder(reminder_id),
        serialize=lambda reminder: {
            "reminder_id": reminder.id,
            "items": [e.to_dict() for e in reminder.events],
        },
    )


@compliance_bp.route("/reminders/<int:reminder_id>/cancel", methods=["POST"])
def cancel_reminder(reminder_id):
    data = request.get_json(silent=True) or {}
    return result_response(
        _engine().cancel_reminder(reminder_id, reason=data.get("reason"), actor=current_actor())
    )


@compliance_bp.route("/reminders/<int:reminder_id>", methods=["DELETE"])
def archive_reminder(reminder_id):
    """Soft delete (archive) a reminder; a pending one is cancelled."""
    return result_response(_engine().archive_reminder(reminder_id, actor=current_actor()))


@compliance_bp.route("/reminders/<int:reminder_id>/restore", methods=["POST"])
def restore_reminder(reminder_id):
    return result_response(_engine().restore_reminder(reminder_id, actor=current_actor()))


@compliance_bp.route("/reminder-center", methods=["GET"])
def reminder_center():
    """Reminders assigned to ?user_id= or one of ?roles=a,b (max 25)."""
    user_id = request.args.get("user_id", type=int)
    if user_id is None:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    roles = [r.strip() for r in request.args.get("roles", "").split(",") if r.strip()]
    return result_response(
        _engine().reminders_for_assignee(user_id, roles),
        serialize=lambda reminders: {
            "items": [r.to_dict() for r in reminders],
            "total": len(reminders),
        },
    )


# ═══════════════════════════════════════════════════════════════════════════
#  ASSIGNMENTS
# ═══════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/assignments", methods=["GET"])
def list_assignments():
    """Assignments of ?user_id= on checklists for the user, ?roles=a,b or ?branch_id=."""
    user_id = request.args.get("user_id", type=int)
    if user_id is None:
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    roles = [r.strip() for r in request.args.get("roles", "").split(",") if r.strip()]
    limit = min(request.args.get("limit", 50, type=int), 200)
    return result_response(
        _engine().assignments_for_user(user_id, roles=roles, branch_id=_branch_id(),
                                       limit=limit, actor=current_actor()),
        serialize=lambda assignments: {
            "items": [a.to_dict() for a in assignments],
            "total": len(assignments),
        },
    )


@compliance_bp.route("/assignments/<int:assignment_id>/items/<int:item_id>", methods=["POST"])
def toggle_assignment_item(assignment_id, item_id):
    """Body: {"user_id": 7, "is_completed": true, "notes": "..."}"""
    data = request.get_json(silent=True) or {}
    return result_response(
        _engine().toggle_assignment_item(assignment_id, item_id, data, actor=current_actor())
    )


@compliance_bp.route("/assignments/<int:assignment_id>/acknowledge", methods=["POST"])
def acknowledge_assignment(assignment_id):
    data = request.get_json(silent=True) or {}
    return result_response(
        _engine().acknowledge_assignment(assignment_id, data, actor=current_actor())
    )


# ═══════════════════════════════════════════════════════════════════════════
#  STATS
# ═══════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/stats/checklists", methods=["GET"])
def checklist_stats():
    return result_response(_engine().checklist_stats(branch_id=_branch_id()))


@compliance_bp.route("/stats/reminders", methods=["GET"])
def reminder_stats():
    return result_response(_engine().reminder_stats(branch_id=_branch_id()))


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULER
# ═══════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/tick", methods=["POST"])
def run_tick():
    """Run one scheduling pass. Body: {"now": ISO-8601?, "dry_run": bool?}."""
    data = request.get_json(silent=True) or {}
    try:
        now = parse_datetime(data.get("now"))
    except ValueError:
        return api_error(E.VALIDATION_INVALID, "now must be an ISO 8601 datetime",
                         details={"now": "invalid"})
    dry_run = parse_bool(data.get("dry_run"), False)
    return result_response(_engine().tick(now=now, dry_run=dry_run))


@compliance_bp.route("/jobs", methods=["GET"])
def list_jobs():
    """List registered scheduler jobs with run history."""
    return jsonify({"items": SchedulerService.list_jobs()})


@compliance_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Trigger a registered job manually."""
    result = SchedulerService.run_job(job_name)
    if result["status"] == "error":
        return api_error(E.NOT_FOUND, result["error"])
    code = 200 if result["status"] in ("success", "skipped") else 500
    return jsonify(result), code


@compliance_bp.route("/jobs/<job_name>/toggle", methods=["POST"])
def toggle_job(job_name):
    data = request.get_json(silent=True) or {}
    record = SchedulerService.toggle_job(job_name, parse_bool(data.get("enabled"), True))
    if record is None:
        return api_error(E.NOT_FOUND, f"Job {job_name} not found")
    return jsonify(record)
