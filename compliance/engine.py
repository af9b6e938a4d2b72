"""
Compliance Engine facade.

The single entry point for callers (blueprint, CLI, scheduler job, tests).
Every public operation returns an ``OperationResult``: services raise typed
exceptions, this layer commits or rolls back and turns them into error
codes. Nothing raises across this boundary.

Usage:
    engine = ComplianceEngine.from_app(current_app)
    result = engine.create_checklist(payload)
    if result.ok:
        checklist = result.value

    summary = engine.tick(now).value

tick(now):
    1. every active, non-archived checklist: initialise / roll ``next_due_at``
       forward, generate the current cycle's reminders
    2. dispatch every due reminder
    3. escalation sweep
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from compliance.core.exceptions import InvalidRuleError, ScheduleComputationError
from compliance.core.results import OperationResult
from compliance.integrations.channel_gateway import LoggingChannelSender
from compliance.integrations.directory import StaticDirectory
from compliance.models import db
from compliance.models.audit import write_audit
from compliance.models.checklist import Checklist
from compliance.models.reminder import Reminder
from compliance.services import archive as archive_store
from compliance.services import (
    assignment_service,
    checklist_service,
    escalation,
    reminder_lifecycle,
    reminder_service,
    stats,
)
from compliance.services.trigger_engine import count_missing, sync_cycle
from compliance.utils.clock import SystemClock, to_naive_utc
from compliance.utils.errors import E, classify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineSettings:
    max_attempts: int = reminder_lifecycle.DEFAULT_MAX_ATTEMPTS
    retry_backoff_minutes: int = reminder_lifecycle.DEFAULT_BACKOFF_MINUTES
    claim_ttl_seconds: int = reminder_lifecycle.DEFAULT_CLAIM_TTL_SECONDS
    archive_cascade_cancel: bool = False
    due_soon_window_days: int = 7

    @classmethod
    def from_config(cls, config) -> "EngineSettings":
        return cls(
            max_attempts=int(config.get("REMINDER_MAX_ATTEMPTS", cls.max_attempts)),
            retry_backoff_minutes=int(config.get("REMINDER_RETRY_BACKOFF_MINUTES", cls.retry_backoff_minutes)),
            claim_ttl_seconds=int(config.get("CLAIM_TTL_SECONDS", cls.claim_ttl_seconds)),
            archive_cascade_cancel=bool(config.get("ARCHIVE_CASCADE_CANCEL", cls.archive_cascade_cancel)),
            due_soon_window_days=int(config.get("DUE_SOON_WINDOW_DAYS", cls.due_soon_window_days)),
        )


def _empty_summary(now: datetime, dry_run: bool) -> dict:
    return {
        "now": now.isoformat(),
        "checklists_scanned": 0,
        "cycles_advanced": 0,
        "reminders_generated": 0,
        "dispatched": 0,
        "sent": 0,
        "failed": 0,
        "escalated": 0,
        "errors": 0,
        "dry_run": dry_run,
    }


class ComplianceEngine:
    """Scheduling, dispatch, escalation and archive operations."""

    def __init__(self, clock=None, sender=None, directory=None, settings: EngineSettings | None = None):
        self.clock = clock or SystemClock()
        self.sender = sender or LoggingChannelSender()
        self.directory = directory or StaticDirectory()
        self.settings = settings or EngineSettings()

    @classmethod
    def from_app(cls, app, **overrides) -> "ComplianceEngine":
        """Engine wired from ``app.config`` and the collaborators in ``app.extensions``."""
        ext = app.extensions.get("compliance", {})
        return cls(
            clock=overrides.get("clock") or ext.get("clock"),
            sender=overrides.get("sender") or ext.get("sender"),
            directory=overrides.get("directory") or ext.get("directory"),
            settings=overrides.get("settings") or EngineSettings.from_config(app.config),
        )

    def _now(self, now=None) -> datetime:
        return to_naive_utc(now) if now is not None else self.clock.now()

    # ── Result plumbing ──────────────────────────────────────────────────

    def _run(self, operation: str, fn, *args, commit: bool = True, **kwargs) -> OperationResult:
        try:
            value = fn(*args, **kwargs)
            if commit:
                db.session.commit()
            return OperationResult.success(value)
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception("%s: database error", operation)
            return OperationResult.failure(E.DATABASE, f"Database error: {exc.__class__.__name__}")
        except Exception as exc:
            db.session.rollback()
            known = classify(exc)
            if known is None:
                logger.exception("%s: unexpected error", operation)
                return OperationResult.failure(E.INTERNAL, f"Internal error: {exc.__class__.__name__}")
            code, details = known
            if code == E.SCHEDULE:
                logger.error("%s: schedule computation failed: %s", operation, exc)
            return OperationResult.failure(code, str(exc), details)

    # ── Checklists ───────────────────────────────────────────────────────

    def create_checklist(self, data: dict, *, now=None, actor: str = "system") -> OperationResult:
        return self._run("create_checklist", checklist_service.create_checklist,
                         data, self._now(now), actor=actor)

    def update_checklist_schedule(self, checklist_id, data: dict, *, now=None, actor: str = "system") -> OperationResult:
        return self._run("update_checklist_schedule", checklist_service.update_checklist_schedule,
                         checklist_id, data, self._now(now), actor=actor)

    def complete_checklist_cycle(self, checklist_id, *, now=None, actor: str = "system") -> OperationResult:
        return self._run("complete_checklist_cycle", checklist_service.complete_checklist_cycle,
                         checklist_id, self._now(now), actor=actor)

    def archive_checklist(self, checklist_id, *, now=None, actor: str = "system") -> OperationResult:
        return self._run("archive_checklist", archive_store.archive,
                         Checklist, checklist_id, self._now(now),
                         cascade_cancel=self.settings.archive_cascade_cancel, actor=actor)

    def restore_checklist(self, checklist_id, *, now=None, actor: str = "system") -> OperationResult:
        return self._run("restore_checklist", archive_store.restore,
                         Checklist, checklist_id, now=self._now(now), actor=actor)

    def get_checklist(self, checklist_id) -> OperationResult:
        return self._run("get_checklist", checklist_service.get_checklist, checklist_id, commit=False)

    # ── Reminders ────────────────────────────────────────────────────────

    def create_reminder(self, data: dict, *, now=None, actor: str = "system") -> OperationResult:
        return self._run("create_reminder", reminder_service.create_reminder,
                         data, self._now(now), actor=actor)

    def cancel_reminder(self, reminder_id, *, reason: str | None = None, now=None,
                        actor: str = "system") -> OperationResult:
        return self._run("cancel_reminder", reminder_service.cancel_reminder,
                         reminder_id, self._now(now), reason=reason, actor=actor)

    def archive_reminder(self, reminder_id, *, now=None, actor: str = "system") -> OperationResult:
        return self._run("archive_reminder", archive_store.archive,
                         Reminder, reminder_id, self._now(now), actor=actor)

    def restore_reminder(self, reminder_id, *, now=None, actor: str = "system") -> OperationResult:
        return self._run("restore_reminder", archive_store.restore,
                         Reminder, reminder_id, now=self._now(now), actor=actor)

    def get_reminder(self, reminder_id) -> OperationResult:
        return self._run("get_reminder", reminder_service.get_reminder, reminder_id, commit=False)

    # ── Assignments ──────────────────────────────────────────────────────

    def assignments_for_user(self, user_id, *, roles=None, branch_id=None, limit=None,
                             now=None, actor: str = "system") -> OperationResult:
        return self._run("assignments_for_user", assignment_service.assignments_for_user,
                         user_id, self._now(now), roles=roles, branch_id=branch_id,
                         limit=limit, actor=actor)

    def toggle_assignment_item(self, assignment_id, item_id, data: dict, *, now=None,
                               actor: str = "system") -> OperationResult:
        return self._run("toggle_assignment_item", assignment_service.toggle_item,
                         assignment_id, item_id, data, self._now(now), actor=actor)

    def acknowledge_assignment(self, assignment_id, data: dict, *, now=None,
                               actor: str = "system") -> OperationResult:
        return self._run("acknowledge_assignment", assignment_service.acknowledge,
                         assignment_id, data, self._now(now), actor=actor)

    # ── Aggregates ───────────────────────────────────────────────────────

    def due_this_week(self, *, now=None, branch_id=None) -> OperationResult:
        return self._run("due_this_week", stats.due_this_week, self._now(now),
                         window_days=self.settings.due_soon_window_days,
                         branch_id=branch_id, commit=False)

    def overdue_count(self, *, now=None, branch_id=None) -> OperationResult:
        return self._run("overdue_count", stats.overdue_count, self._now(now),
                         branch_id=branch_id, commit=False)

    def checklist_stats(self, *, now=None, branch_id=None) -> OperationResult:
        return self._run("checklist_stats", stats.checklist_stats, self._now(now),
                         window_days=self.settings.due_soon_window_days,
                         branch_id=branch_id, commit=False)

    def reminder_stats(self, *, now=None, branch_id=None) -> OperationResult:
        return self._run("reminder_stats", stats.reminder_stats, self._now(now),
                         branch_id=branch_id, commit=False)

    def reminders_for_assignee(self, user_id, roles=None) -> OperationResult:
        return self._run("reminders_for_assignee", stats.reminders_for_assignee,
                         user_id, roles, commit=False)

    # ── Tick ─────────────────────────────────────────────────────────────

    def tick(self, now=None, dry_run: bool = False) -> OperationResult:
        """Run one full scheduling pass. ``dry_run`` counts without writing."""
        now = self._now(now)
        runner = self._dry_tick if dry_run else self._tick
        return self._run("tick", runner, now, commit=not dry_run)

    def _schedule_checklists(self, now: datetime, summary: dict) -> None:
        ids = [
            row.id for row in
            Checklist.query_active()
            .filter(Checklist.status == "active")
            .order_by(Checklist.id)
            .with_entities(Checklist.id)
            .all()
        ]
        for checklist_id in ids:
            summary["checklists_scanned"] += 1
            checklist = db.session.get(Checklist, checklist_id)
            try:
                if checklist_service.roll_forward(checklist, now):
                    summary["cycles_advanced"] += 1
                _, created = sync_cycle(checklist, checklist.next_due_at, now=now)
                summary["reminders_generated"] += created
                db.session.commit()
            except (InvalidRuleError, ScheduleComputationError) as exc:
                db.session.rollback()
                summary["errors"] += 1
                logger.error("Checklist %s skipped: %s", checklist_id, exc,
                             extra={"checklist_id": checklist_id})
            except SQLAlchemyError:
                db.session.rollback()
                summary["errors"] += 1
                logger.exception("Checklist %s skipped: database error", checklist_id,
                                 extra={"checklist_id": checklist_id})

    def _dispatch_due(self, now: datetime, summary: dict) -> None:
        for reminder in reminder_lifecycle.due_reminders(now):
            reminder_id = reminder.id
            try:
                outcome = reminder_lifecycle.dispatch(
                    reminder, now, self.sender, self.directory,
                    max_attempts=self.settings.max_attempts,
                    backoff_minutes=self.settings.retry_backoff_minutes,
                    claim_ttl_seconds=self.settings.claim_ttl_seconds,
                )
                db.session.commit()
            except Exception:
                db.session.rollback()
                summary["errors"] += 1
                logger.exception("Dispatch of reminder %s failed", reminder_id,
                                 extra={"reminder_id": reminder_id})
                continue
            if outcome is None:
                continue
            summary["dispatched"] += 1
            if outcome.primary_result is None:
                continue
            if outcome.primary_ok:
                summary["sent"] += 1
            else:
                summary["failed"] += 1

    def _tick(self, now: datetime) -> dict:
        summary = _empty_summary(now, dry_run=False)
        self._schedule_checklists(now, summary)
        self._dispatch_due(now, summary)

        escalated = escalation.sweep(now, directory=self.directory, sender=self.sender)
        summary["escalated"] = len(escalated)

        write_audit(
            entity_type="scheduler",
            entity_id="tick",
            action="scheduler.tick",
            details=summary,
            timestamp=now,
        )
        logger.info(
            "Tick %s: %d checklist(s), %d cycle(s) advanced, %d generated, "
            "%d dispatched (%d sent, %d failed), %d escalated, %d error(s)",
            now.isoformat(), summary["checklists_scanned"], summary["cycles_advanced"],
            summary["reminders_generated"], summary["dispatched"], summary["sent"],
            summary["failed"], summary["escalated"], summary["errors"],
        )
        return summary

    def _dry_tick(self, now: datetime) -> dict:
        summary = _empty_summary(now, dry_run=True)
        try:
            checklists = (
                Checklist.query_active()
                .filter(Checklist.status == "active")
                .order_by(Checklist.id)
                .all()
            )
            for checklist in checklists:
                summary["checklists_scanned"] += 1
                try:
                    with db.session.no_autoflush:
                        if checklist_service.roll_forward(checklist, now):
                            summary["cycles_advanced"] += 1
                        summary["reminders_generated"] += count_missing(
                            checklist, checklist.next_due_at, now=now,
                        )
                except (InvalidRuleError, ScheduleComputationError) as exc:
                    summary["errors"] += 1
                    logger.error("Checklist %s skipped: %s", checklist.id, exc,
                                 extra={"checklist_id": checklist.id})
            with db.session.no_autoflush:
                summary["dispatched"] = len(reminder_lifecycle.due_reminders(now))
                summary["escalated"] = escalation.pending_count(now)
        finally:
            db.session.rollback()
        logger.info("Dry-run tick %s: %s", now.isoformat(), summary)
        return summary
