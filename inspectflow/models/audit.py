"""
InspectFlow
Audit domain model.

Models:
    - AuditLog: immutable, append-only operational log. Distinct from
      ``inspection_state_history``: it records creations, retirements,
      permission administration and *denied* transition attempts, none of
      which are workflow state changes.
"""

import json
from datetime import UTC, datetime

from inspectflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "inspection", "user", "role", "business_rule",
}

AUDIT_ACTIONS = {
    # Inspection lifecycle (non-transition events)
    "inspection.create",
    "inspection.retire",
    "inspection.transition_denied",
    # Permission administration
    "permission.grant",
    "permission.revoke",
    "permission.override_removed",
    "role.create",
    "role.permission_added",
    "role.permission_removed",
    # Business rules
    "rule.create",
    "rule.update",
}


class AuditLog(db.Model):
    """
    Immutable audit trail.

    One row per action. ``diff_json`` carries the structured payload
    (old→new snapshot, missing permission, denial reasons).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_shop", "shop_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(
        db.Integer,
        db.ForeignKey("shops.id", ondelete="SET NULL"),
        nullable=True,
    )

    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="inspection | user | role | business_rule",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="inspection.transition_denied | permission.grant | …",
    )
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="NULL for system entries",
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    shop_id: int | None = None,
    actor_user_id: int | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance. Unknown actions or entity
    types raise ValueError.
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit entity type: {entity_type}")
    log = AuditLog(
        shop_id=shop_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
