"""
Soft Delete Mixin

Adds a `deleted_at` timestamp column and query helpers. Inspections are
never hard-deleted; retiring one stamps `deleted_at` through the versioned
update in the inspection service, and shop-facing queries go through
``query_active()``.

Usage:
    class Inspection(SoftDeleteMixin, ShopModel):
        ...

    Inspection.query_active().filter_by(shop_id=1).all()
"""

from inspectflow.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True, default=None, index=True)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes retired records."""
        return cls.query.filter(cls.deleted_at.is_(None))
