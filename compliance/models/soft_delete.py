"""
Soft Delete Mixin — archive/restore support.

Adds a `deleted_at` timestamp column and query helpers for soft delete.
Models that include this mixin are archived rather than physically
removed, so their audit history survives.

Usage:
    class Checklist(SoftDeleteMixin, db.Model):
        ...

    # Archive
    obj.soft_delete(now)
    db.session.commit()

    # Query only visible records
    Checklist.query_active().all()

    # Include archived
    Checklist.query.all()

    # Restore
    obj.restore()
    db.session.commit()
"""

from compliance.models import db
from compliance.utils.clock import utcnow


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime, nullable=True, default=None, index=True)

    def soft_delete(self, now=None):
        """Mark this record as archived.

        ``deleted_at`` is monotonic: archiving an archived record keeps the
        original timestamp.
        """
        if self.deleted_at is None:
            self.deleted_at = now or utcnow()

    def restore(self):
        """Restore an archived record."""
        self.deleted_at = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes archived records."""
        return cls.query.filter(cls.deleted_at.is_(None))

    @classmethod
    def query_deleted(cls):
        """Return only archived records."""
        return cls.query.filter(cls.deleted_at.isnot(None))
