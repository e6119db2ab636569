"""
InspectFlow
Authorization models.

Tables:
    - permissions: stable (resource, action) pairs, codename "resource.action"
    - roles: system roles (shop_id NULL, is_system) shared by every shop,
      plus custom roles owned by one shop
    - role_permissions: role -> permission junction
    - user_permissions: per-user override (grant or revoke) with optional expiry

Effective permissions for a user:
    role permissions ∪ active grants − active revocations
"""

from datetime import datetime, timezone

from inspectflow.models import db


# ═══════════════════════════════════════════════════════════════
# 1. PERMISSIONS
# ═══════════════════════════════════════════════════════════════
class Permission(db.Model):
    __tablename__ = "permissions"

    id = db.Column(db.Integer, primary_key=True)
    codename = db.Column(db.String(100), unique=True, nullable=False)  # e.g. "inspections.approve"
    resource = db.Column(db.String(50), nullable=False)  # e.g. "inspections"
    action = db.Column(db.String(50), nullable=False)  # e.g. "approve"
    display_name = db.Column(db.String(200))
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("resource", "action", name="uq_permission_resource_action"),
    )

    role_permissions = db.relationship("RolePermission", back_populates="permission", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "codename": self.codename,
            "resource": self.resource,
            "action": self.action,
            "display_name": self.display_name,
        }


# ═══════════════════════════════════════════════════════════════
# 2. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    """
    A named permission bundle. System roles (``shop_id`` NULL, ``is_system``)
    are seeded and read-only through the API; shops edit only their own
    custom roles.
    """

    __tablename__ = "roles"
    __table_args__ = (
        db.UniqueConstraint("shop_id", "name", name="uq_role_shop_name"),
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(
        db.Integer, db.ForeignKey("shops.id", ondelete="CASCADE"), nullable=True, index=True,
        comment="NULL = system role",
    )
    name = db.Column(db.String(50), nullable=False)
    display_name = db.Column(db.String(200))
    is_system = db.Column(db.Boolean, nullable=False, default=False)
    level = db.Column(db.Integer, default=0)  # Hierarchy level (higher = more permissions)

    role_permissions = db.relationship(
        "RolePermission", back_populates="role", lazy="dynamic", cascade="all, delete-orphan"
    )

    def to_dict(self, include_permissions=False):
        d = {
            "id": self.id,
            "shop_id": self.shop_id,
            "name": self.name,
            "display_name": self.display_name,
            "is_system": self.is_system,
            "level": self.level,
        }
        if include_permissions:
            d["permissions"] = sorted(
                rp.permission.codename for rp in self.role_permissions.all()
            )
        return d


# ═══════════════════════════════════════════════════════════════
# 3. ROLE_PERMISSIONS (Junction table)
# ═══════════════════════════════════════════════════════════════
class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    role = db.relationship("Role", back_populates="role_permissions")
    permission = db.relationship("Permission", back_populates="role_permissions")


# ═══════════════════════════════════════════════════════════════
# 4. USER_PERMISSIONS (Per-user overrides)
# ═══════════════════════════════════════════════════════════════
class UserPermission(db.Model):
    __tablename__ = "user_permissions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    permission_id = db.Column(
        db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False
    )
    granted = db.Column(db.Boolean, nullable=False, default=True)  # False = explicit revocation
    granted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    expires_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "permission_id", name="uq_user_permission"),
    )

    permission = db.relationship("Permission")

    def is_expired(self, now=None):
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return now >= expires

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "permission": self.permission.codename if self.permission else None,
            "granted": self.granted,
            "granted_by": self.granted_by,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "expired": self.is_expired(),
        }
