"""
InspectFlow
Business rule model.

A BusinessRule is a declarative (rule_type, conditions, actions) triple,
scoped to a shop or global when ``shop_id`` is NULL. The workflow engine
consults active rules in ``priority`` order (lower first) and never
mutates them. Payload shapes are parsed by ``services.business_rules``.
"""

from datetime import datetime, timezone

from inspectflow.models import db

RULE_TYPES = {"validation", "state_transition", "calculation"}


class BusinessRule(db.Model):
    __tablename__ = "inspection_business_rules"
    __table_args__ = (
        db.UniqueConstraint("shop_id", "rule_name", name="uq_business_rule_shop_name"),
        db.Index("ix_business_rules_active", "shop_id", "is_active", "priority"),
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(
        db.Integer,
        db.ForeignKey("shops.id", ondelete="CASCADE"),
        nullable=True,
        comment="NULL = global rule applied to every shop",
    )
    rule_name = db.Column(db.String(120), nullable=False)
    rule_type = db.Column(db.String(30), nullable=False)
    description = db.Column(db.Text)
    conditions = db.Column(db.JSON, default=dict)
    actions = db.Column(db.JSON, default=dict)
    priority = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "rule_name": self.rule_name,
            "rule_type": self.rule_type,
            "description": self.description,
            "conditions": self.conditions or {},
            "actions": self.actions or {},
            "priority": self.priority,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<BusinessRule {self.id}: {self.rule_type}/{self.rule_name}>"
