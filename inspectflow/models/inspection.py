"""
InspectFlow
Inspection domain models.

Models:
    - Inspection: one per vehicle visit; carries the workflow state, the cached
      urgency and the optimistic-concurrency ``version`` counter
    - InspectionItem: one per checked component
    - StateTransitionRecord: immutable, append-only history of accepted
      workflow transitions

Workflow graph:
    draft -> in_progress -> pending_review -> approved | rejected
    rejected -> in_progress (rework loop)
    approved -> sent_to_customer -> completed (terminal)

``workflow_state`` is written only by ``workflow_service.request_transition``.
"""

from datetime import datetime, timezone

from inspectflow.models import db
from inspectflow.models.base import ShopModel
from inspectflow.models.soft_delete import SoftDeleteMixin

# ── Constants ────────────────────────────────────────────────────────────────

WORKFLOW_STATES = (
    "draft",
    "in_progress",
    "pending_review",
    "approved",
    "rejected",
    "sent_to_customer",
    "completed",
)

INITIAL_STATE = "draft"

WORKFLOW_TRANSITIONS = {
    "draft":            ["in_progress"],
    "in_progress":      ["pending_review"],
    "pending_review":   ["approved", "rejected"],
    "approved":         ["sent_to_customer"],
    "rejected":         ["in_progress"],
    "sent_to_customer": ["completed"],
    "completed":        [],
}

# Items may only be added, edited or removed while the technician owns the work.
EDITABLE_STATES = {"draft", "in_progress", "rejected"}

URGENCY_LEVELS = ("low", "normal", "high", "critical")

ITEM_CONDITIONS = ("good", "fair", "poor", "needs_immediate")


def is_valid_transition(old_state, new_state):
    """Return True if ``old_state -> new_state`` is an edge of the workflow graph."""
    return new_state in WORKFLOW_TRANSITIONS.get(old_state, [])


# ═══════════════════════════════════════════════════════════════
# 1. INSPECTIONS
# ═══════════════════════════════════════════════════════════════
class Inspection(SoftDeleteMixin, ShopModel):
    __tablename__ = "inspections"
    __table_args__ = (
        ShopModel.shop_composite_index("inspections", "workflow_state"),
        db.Index("ix_inspections_technician", "technician_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    vehicle_id = db.Column(
        db.Integer, db.ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True
    )
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    technician_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    workflow_state = db.Column(db.String(30), nullable=False, default=INITIAL_STATE)
    previous_state = db.Column(db.String(30))
    state_changed_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    state_changed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    urgency_level = db.Column(db.String(20), nullable=False, default="low")
    urgency_score = db.Column(db.Integer, nullable=False, default=0)
    estimated_cost = db.Column(db.Float, nullable=False, default=0.0)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    items = db.relationship(
        "InspectionItem",
        back_populates="inspection",
        order_by="InspectionItem.id",
        cascade="all, delete-orphan",
    )
    customer = db.relationship("Customer", foreign_keys=[customer_id])
    vehicle = db.relationship("Vehicle", foreign_keys=[vehicle_id])

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "shop_id": self.shop_id,
            "vehicle_id": self.vehicle_id,
            "customer_id": self.customer_id,
            "technician_id": self.technician_id,
            "workflow_state": self.workflow_state,
            "previous_state": self.previous_state,
            "state_changed_at": self.state_changed_at.isoformat() if self.state_changed_at else None,
            "state_changed_by": self.state_changed_by,
            "urgency_level": self.urgency_level,
            "urgency_score": self.urgency_score,
            "estimated_cost": self.estimated_cost,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<Inspection {self.id} [{self.workflow_state}] v{self.version}>"


# ═══════════════════════════════════════════════════════════════
# 2. INSPECTION ITEMS
# ═══════════════════════════════════════════════════════════════
class InspectionItem(db.Model):
    __tablename__ = "inspection_items"

    id = db.Column(db.Integer, primary_key=True)
    inspection_id = db.Column(
        db.Integer,
        db.ForeignKey("inspections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category = db.Column(db.String(60), nullable=False)
    component = db.Column(db.String(120), nullable=False)
    item_type = db.Column(db.String(30), comment="Urgency profile key: brakes | tires | battery | …")
    condition = db.Column(db.String(20), comment="NULL until assessed")
    measurements = db.Column(
        db.JSON, default=dict,
        comment='{"pad_thickness_mm": 3.5} or {"pad_thickness_mm": {"value": 3.5, "unit": "mm"}}',
    )
    priority = db.Column(db.Integer, nullable=False, default=1)
    estimated_cost = db.Column(db.Float, nullable=False, default=0.0)
    requires_immediate_attention = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text)
    created_at = db.Column(
        db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    inspection = db.relationship("Inspection", back_populates="items")

    def to_dict(self):
        return {
            "id": self.id,
            "inspection_id": self.inspection_id,
            "category": self.category,
            "component": self.component,
            "item_type": self.item_type,
            "condition": self.condition,
            "measurements": self.measurements or {},
            "priority": self.priority,
            "estimated_cost": self.estimated_cost,
            "requires_immediate_attention": self.requires_immediate_attention,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<InspectionItem {self.id}: {self.category}/{self.component} [{self.condition}]>"


# ═══════════════════════════════════════════════════════════════
# 3. STATE TRANSITION HISTORY
# ═══════════════════════════════════════════════════════════════
class StateTransitionRecord(db.Model):
    """
    Immutable record of one accepted workflow transition.

    Written in the same transaction as the state change it describes;
    rejected attempts never produce a row here (they go to ``audit_logs``).
    Only the retention job deletes rows.
    """

    __tablename__ = "inspection_state_history"
    __table_args__ = (
        db.Index("ix_state_history_inspection", "inspection_id", "changed_at"),
        db.Index("ix_state_history_shop_state", "shop_id", "to_state"),
    )

    id = db.Column(db.Integer, primary_key=True)
    inspection_id = db.Column(
        db.Integer, db.ForeignKey("inspections.id", ondelete="CASCADE"), nullable=False
    )
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id", ondelete="CASCADE"), nullable=False)
    from_state = db.Column(db.String(30), nullable=False)
    to_state = db.Column(db.String(30), nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    reason = db.Column(db.Text)
    validation_passed = db.Column(db.Boolean, nullable=False, default=True)
    validation_errors = db.Column(db.JSON, default=list)
    details = db.Column(
        db.JSON, default=dict,
        comment="Urgency snapshot, automatic-hop marker, version written",
    )
    changed_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "inspection_id": self.inspection_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "changed_by": self.changed_by,
            "reason": self.reason,
            "validation_passed": self.validation_passed,
            "validation_errors": self.validation_errors or [],
            "details": self.details or {},
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }

    def __repr__(self):
        return f"<StateTransitionRecord {self.inspection_id}: {self.from_state} -> {self.to_state}>"
