"""
Compliance Engine
Checklist assignment models.

Models:
    - ChecklistAssignment: one user's work on one cycle of a checklist
    - ChecklistAssignmentItem: completion flag of one checklist item

Assignment status:
    pending → in_progress → completed
    in_progress → awaiting_acknowledgement → completed   (requires_acknowledgement)
"""

from compliance.models import db
from compliance.utils.clock import iso, utcnow

ASSIGNMENT_STATUSES = ("pending", "in_progress", "awaiting_acknowledgement", "completed")


class ChecklistAssignment(db.Model):
    """Per-user progress through a checklist cycle (unique per user and cycle)."""

    __tablename__ = "compliance_checklist_assignments"
    __table_args__ = (
        db.UniqueConstraint("checklist_id", "user_id", "cycle_due_at",
                            name="uq_ck_assignment_user_cycle"),
        db.Index("ix_ck_assignments_status_progress", "status", "progress_percentage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    checklist_id = db.Column(
        db.Integer, db.ForeignKey("compliance_checklists.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.Integer, nullable=False, index=True)
    branch_id = db.Column(db.Integer, nullable=True)
    cycle_due_at = db.Column(db.DateTime, nullable=False,
                             comment="Checklist cycle this assignment works on")
    status = db.Column(db.String(30), nullable=False, default="pending")
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)

    started_at = db.Column(db.DateTime, nullable=True)
    last_interaction_at = db.Column(db.DateTime, nullable=True, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    acknowledged_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    checklist = db.relationship("Checklist", lazy="select")
    items = db.relationship(
        "ChecklistAssignmentItem", backref="assignment", lazy="select",
        cascade="all, delete-orphan",
        order_by="ChecklistAssignmentItem.id",
    )

    def to_dict(self, include_items=True):
        checklist = self.checklist
        d = {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "title": checklist.title if checklist else None,
            "frequency_type": checklist.frequency_type if checklist else None,
            "user_id": self.user_id,
            "branch_id": self.branch_id,
            "cycle_due_at": iso(self.cycle_due_at),
            "status": self.status,
            "progress_percentage": self.progress_percentage,
            "requires_acknowledgement": bool(checklist and checklist.requires_acknowledgement),
            "started_at": iso(self.started_at),
            "last_interaction_at": iso(self.last_interaction_at),
            "completed_at": iso(self.completed_at),
            "acknowledged_at": iso(self.acknowledged_at),
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items if i.checklist_item.is_active]
        return d

    def __repr__(self):
        return f"<ChecklistAssignment {self.id}: checklist={self.checklist_id} user={self.user_id} [{self.status}]>"


class ChecklistAssignmentItem(db.Model):
    __tablename__ = "compliance_checklist_assignment_items"
    __table_args__ = (
        db.UniqueConstraint("assignment_id", "checklist_item_id", name="uq_ck_assignment_item"),
    )

    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("compliance_checklist_assignments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    checklist_item_id = db.Column(
        db.Integer, db.ForeignKey("compliance_checklist_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    is_completed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    completed_by = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    checklist_item = db.relationship("ChecklistItem", lazy="joined")

    def to_dict(self):
        return {
            "id": self.id,
            "checklist_item_id": self.checklist_item_id,
            "label": self.checklist_item.title,
            "is_required": self.checklist_item.is_required,
            "is_completed": self.is_completed,
            "completed_at": iso(self.completed_at),
            "completed_by": self.completed_by,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<ChecklistAssignmentItem {self.id}: item={self.checklist_item_id} done={self.is_completed}>"
