"""
Compliance Engine
Audit domain model.

Models:
    - AuditLog: immutable, append-only activity trail for checklist and
      reminder operations (create, schedule changes, archive, restore, tick).
"""

import json

from compliance.models import db
from compliance.utils.clock import iso, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"checklist", "reminder", "scheduler"}

AUDIT_ACTIONS = {
    "checklist.create",
    "checklist.update_schedule",
    "checklist.complete_cycle",
    "checklist.archive",
    "checklist.restore",
    "reminder.create",
    "reminder.cancel",
    "reminder.archive",
    "reminder.restore",
    "scheduler.tick",
}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per action. ``details_json`` carries the operation payload
    (changed fields, counters, cascade results).
    """

    __tablename__ = "compliance_audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, nullable=True, index=True)

    entity_type = db.Column(db.String(30), nullable=False,
                            comment="checklist | reminder | scheduler")
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")

    details_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)

    @property
    def details(self) -> dict:
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "details": self.details,
            "timestamp": iso(self.timestamp),
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor: str = "system",
    branch_id: int | None = None,
    details: dict | None = None,
    timestamp=None,
) -> AuditLog:
    """
    Append a single audit row. Uses ``flush`` so callers keep
    transaction control.
    """
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        branch_id=branch_id,
        details_json=json.dumps(details or {}, default=str),
        timestamp=timestamp or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry
