"""
Permission Service — role + per-user override RBAC with a TTL cache.

Effective permissions for an actor:
    permissions mapped to the actor's role
    ∪ active granted overrides
    − active revoked overrides
Expired overrides are ignored. Evaluation is deny-by-default and there is no
superuser bypass: admin simply holds every permission through its mapping.

Roles resolve per shop: the seeded system roles (shop_id NULL) are shared
and read-only here; a shop edits only the custom roles it created, and a
custom role never carries a permission its creator lacks.

Results are cached per (user_id, role) in ``permission_cache``; every
mutation below invalidates the affected entries after commit.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import or_

from inspectflow.core.actor import ActorContext
from inspectflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ProtectedRoleError,
    ValidationError,
)
from inspectflow.models import db
from inspectflow.models.audit import write_audit
from inspectflow.models.auth import Permission, Role, RolePermission, UserPermission
from inspectflow.models.shop import User
from inspectflow.services.permission_cache import get_permission_cache

logger = logging.getLogger(__name__)

# ── Default catalogue ────────────────────────────────────────────────────

DEFAULT_PERMISSIONS = {
    "inspections.create": "Start inspections",
    "inspections.read": "View every inspection in the shop",
    "inspections.read_own": "View inspections assigned to me",
    "inspections.update": "Work on any inspection",
    "inspections.update_own": "Work on inspections assigned to me",
    "inspections.approve": "Approve or reject reviewed inspections",
    "inspections.send": "Send results to the customer",
    "inspections.delete": "Retire inspections",
    "inspections.override_safety": "Approve despite critical safety items",
    "items.create": "Add inspection items",
    "items.update": "Edit inspection items",
    "items.delete": "Remove inspection items",
    "rules.read": "View business rules",
    "rules.manage": "Create and edit business rules",
    "permissions.manage": "Manage role mappings and user overrides",
}

DEFAULT_ROLES = {
    "admin": ("Administrator", 100),
    "shop_manager": ("Shop Manager", 80),
    "mechanic": ("Mechanic", 40),
    "viewer": ("Viewer", 10),
}

DEFAULT_ROLE_PERMISSIONS = {
    "admin": sorted(DEFAULT_PERMISSIONS),
    "shop_manager": sorted(
        set(DEFAULT_PERMISSIONS) - {"inspections.override_safety", "permissions.manage"}
    ),
    "mechanic": [
        "inspections.create",
        "inspections.read_own",
        "inspections.update_own",
        "items.create",
        "items.update",
        "items.delete",
        "rules.read",
    ],
    "viewer": ["inspections.read", "rules.read"],
}


# ── Cache helpers ────────────────────────────────────────────────────────


def invalidate_cache(user_id: int) -> None:
    get_permission_cache().invalidate_user(user_id)


def invalidate_all_cache() -> None:
    get_permission_cache().clear()


# ── Resolution ───────────────────────────────────────────────────────────


def _visible_roles(shop_id: int | None):
    """System roles plus the custom roles of ``shop_id``."""
    return Role.query.filter(or_(Role.shop_id.is_(None), Role.shop_id == shop_id))


def _role_permissions(role_name: str, shop_id: int | None) -> set[str]:
    role = _visible_roles(shop_id).filter(Role.name == role_name).first()
    if role is None:
        return set()
    rows = (
        db.session.query(Permission.codename)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .filter(RolePermission.role_id == role.id)
        .all()
    )
    return {r[0] for r in rows}


def _active_overrides(user_id: int, now: datetime | None = None) -> tuple[set[str], set[str]]:
    """Return (granted, revoked) codenames from non-expired overrides."""
    now = now or datetime.now(timezone.utc)
    granted: set[str] = set()
    revoked: set[str] = set()
    rows = (
        UserPermission.query
        .filter_by(user_id=user_id)
        .join(Permission, Permission.id == UserPermission.permission_id)
        .all()
    )
    for up in rows:
        if up.is_expired(now):
            continue
        (granted if up.granted else revoked).add(up.permission.codename)
    return granted, revoked


def get_effective_permissions(actor: ActorContext) -> set[str]:
    cache = get_permission_cache()
    cached = cache.get(actor.user_id, actor.role)
    if cached is not None:
        return cached

    granted, revoked = _active_overrides(actor.user_id)
    perms = (_role_permissions(actor.role, actor.shop_id) | granted) - revoked
    cache.set(actor.user_id, actor.role, perms)
    return perms


def has_permission(actor: ActorContext, codename: str) -> bool:
    return codename in get_effective_permissions(actor)


def check_permission(
    actor: ActorContext,
    resource: str,
    action: str,
    context: dict | None = None,
) -> bool:
    """Yes/no gate for callers outside a transition (e.g. show/hide a UI action).

    ``context`` keys:
        shop_id:  resource's shop; a different shop always denies
        owner_id: resource owner; enables the ``<action>_own`` fallback
    """
    context = context or {}
    shop_id = context.get("shop_id")
    if shop_id is not None and shop_id != actor.shop_id:
        return False

    perms = get_effective_permissions(actor)
    if f"{resource}.{action}" in perms:
        return True
    owner_id = context.get("owner_id")
    return (
        owner_id is not None
        and owner_id == actor.user_id
        and f"{resource}.{action}_own" in perms
    )


def evaluate_permission(actor: ActorContext, codename: str) -> dict:
    """Explain a decision: which source granted or denied ``codename``."""
    granted, revoked = _active_overrides(actor.user_id)
    from_role = codename in _role_permissions(actor.role, actor.shop_id)
    if codename in revoked:
        decision, allowed = "deny_user_revocation", False
    elif codename in granted:
        decision, allowed = "allow_user_override", True
    elif from_role:
        decision, allowed = "allow_role_grant", True
    else:
        decision, allowed = "deny_by_default", False
    return {
        "allowed": allowed,
        "decision": decision,
        "role": actor.role,
        "permission": codename,
    }


# ── Administration ───────────────────────────────────────────────────────


def _get_permission(codename: str) -> Permission:
    perm = Permission.query.filter_by(codename=codename).first()
    if perm is None:
        raise NotFoundError(resource="Permission", resource_id=codename)
    return perm


def _get_shop_user(user_id: int, shop_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None or user.shop_id != shop_id:
        raise NotFoundError(resource="User", resource_id=user_id, shop_id=shop_id)
    return user


def _upsert_override(
    user_id: int,
    codename: str,
    granted: bool,
    actor: ActorContext,
    expires_at: datetime | None,
) -> UserPermission:
    _get_shop_user(user_id, actor.shop_id)
    perm = _get_permission(codename)
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at is not None and expires_at <= datetime.now(timezone.utc):
        raise ValidationError("expires_at must be in the future", details={"expires_at": str(expires_at)})

    override = UserPermission.query.filter_by(user_id=user_id, permission_id=perm.id).first()
    if override is None:
        override = UserPermission(user_id=user_id, permission_id=perm.id)
        db.session.add(override)
    override.granted = granted
    override.granted_by = actor.user_id
    override.expires_at = expires_at

    write_audit(
        entity_type="user",
        entity_id=user_id,
        action="permission.grant" if granted else "permission.revoke",
        shop_id=actor.shop_id,
        actor_user_id=actor.user_id,
        diff={"permission": codename, "expires_at": expires_at},
    )
    db.session.commit()
    invalidate_cache(user_id)
    logger.info(
        "Permission override %s: user=%s permission=%s",
        "granted" if granted else "revoked", user_id, codename,
        extra={"shop_id": actor.shop_id, "event_type": "permission_override"},
    )
    return override


def grant_user_permission(
    user_id: int,
    codename: str,
    actor: ActorContext,
    expires_at: datetime | None = None,
) -> UserPermission:
    """Grant ``codename`` to one user regardless of role."""
    return _upsert_override(user_id, codename, True, actor, expires_at)


def revoke_user_permission(
    user_id: int,
    codename: str,
    actor: ActorContext,
    expires_at: datetime | None = None,
) -> UserPermission:
    """Deny ``codename`` to one user even if the role grants it."""
    return _upsert_override(user_id, codename, False, actor, expires_at)


def remove_user_override(user_id: int, codename: str, actor: ActorContext) -> bool:
    """Delete an override so the role mapping applies again. Returns False if none existed."""
    _get_shop_user(user_id, actor.shop_id)
    perm = _get_permission(codename)
    override = UserPermission.query.filter_by(user_id=user_id, permission_id=perm.id).first()
    if override is None:
        return False
    db.session.delete(override)
    write_audit(
        entity_type="user",
        entity_id=user_id,
        action="permission.override_removed",
        shop_id=actor.shop_id,
        actor_user_id=actor.user_id,
        diff={"permission": codename, "was_granted": override.granted},
    )
    db.session.commit()
    invalidate_cache(user_id)
    return True


def list_user_overrides(user_id: int, actor: ActorContext) -> list[UserPermission]:
    _get_shop_user(user_id, actor.shop_id)
    return (
        UserPermission.query
        .filter_by(user_id=user_id)
        .order_by(UserPermission.id)
        .all()
    )


def _get_role(role_name: str, shop_id: int) -> Role:
    role = _visible_roles(shop_id).filter(Role.name == role_name).first()
    if role is None:
        raise NotFoundError(resource="Role", resource_id=role_name, shop_id=shop_id)
    return role


def _get_custom_role(role_name: str, actor: ActorContext) -> Role:
    role = _get_role(role_name, actor.shop_id)
    if role.is_system or role.shop_id is None:
        raise ProtectedRoleError(role_name)
    return role


def _ensure_actor_holds(actor: ActorContext, codenames) -> None:
    # A custom role may not carry more than its creator holds
    held = get_effective_permissions(actor)
    for codename in sorted(codenames):
        if codename not in held:
            raise PermissionDeniedError(codename)


def list_roles(actor: ActorContext) -> list[Role]:
    """System roles and the actor's shop roles, highest level first."""
    return _visible_roles(actor.shop_id).order_by(Role.level.desc(), Role.name).all()


def create_role(
    role_name: str,
    actor: ActorContext,
    display_name: str | None = None,
    base_role: str | None = None,
) -> Role:
    """Create a custom role for the actor's shop, optionally copying ``base_role``'s permissions."""
    name = (role_name or "").strip().lower()
    if not name or len(name) > 50 or not name.replace("_", "").isalnum():
        raise ValidationError("Invalid role name", details={"name": "letters, digits and underscores"})
    if _visible_roles(actor.shop_id).filter(Role.name == name).first() is not None:
        raise ConflictError(resource="Role", field="name", value=name)

    level = 0
    perm_ids: list[int] = []
    if base_role is not None:
        base = _get_role(base_role, actor.shop_id)
        rows = (
            db.session.query(Permission.id, Permission.codename)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .filter(RolePermission.role_id == base.id)
            .all()
        )
        _ensure_actor_holds(actor, {codename for _, codename in rows})
        perm_ids = [perm_id for perm_id, _ in rows]
        level = base.level or 0

    role = Role(
        shop_id=actor.shop_id,
        name=name,
        display_name=display_name or name.replace("_", " ").title(),
        is_system=False,
        level=level,
    )
    db.session.add(role)
    db.session.flush()
    for perm_id in perm_ids:
        db.session.add(RolePermission(role_id=role.id, permission_id=perm_id))
    write_audit(
        entity_type="role",
        entity_id=role.id,
        action="role.create",
        shop_id=actor.shop_id,
        actor_user_id=actor.user_id,
        diff={"role": name, "base_role": base_role, "permissions": len(perm_ids)},
    )
    db.session.commit()
    logger.info(
        "Custom role %s created (base=%s)", name, base_role,
        extra={"shop_id": actor.shop_id, "event_type": "role_created"},
    )
    return role


def add_role_permission(role_name: str, codename: str, actor: ActorContext) -> bool:
    """Map ``codename`` to one of the shop's custom roles. Returns False if already mapped.

    System roles raise ProtectedRoleError.
    """
    role = _get_custom_role(role_name, actor)
    perm = _get_permission(codename)
    _ensure_actor_holds(actor, {codename})
    exists = RolePermission.query.filter_by(role_id=role.id, permission_id=perm.id).first()
    if exists:
        return False
    db.session.add(RolePermission(role_id=role.id, permission_id=perm.id))
    write_audit(
        entity_type="role",
        entity_id=role.id,
        action="role.permission_added",
        shop_id=actor.shop_id,
        actor_user_id=actor.user_id,
        diff={"role": role_name, "permission": codename},
    )
    db.session.commit()
    invalidate_all_cache()
    return True


def remove_role_permission(role_name: str, codename: str, actor: ActorContext) -> bool:
    """Unmap ``codename`` from one of the shop's custom roles. Returns False if it was not mapped."""
    role = _get_custom_role(role_name, actor)
    perm = _get_permission(codename)
    mapping = RolePermission.query.filter_by(role_id=role.id, permission_id=perm.id).first()
    if mapping is None:
        return False
    db.session.delete(mapping)
    write_audit(
        entity_type="role",
        entity_id=role.id,
        action="role.permission_removed",
        shop_id=actor.shop_id,
        actor_user_id=actor.user_id,
        diff={"role": role_name, "permission": codename},
    )
    db.session.commit()
    invalidate_all_cache()
    return True


def seed_default_permissions() -> dict:
    """Create the default catalogue and role mapping. Idempotent."""
    created = {"permissions": 0, "roles": 0, "mappings": 0}

    perms = {p.codename: p for p in Permission.query.all()}
    for codename, display in DEFAULT_PERMISSIONS.items():
        if codename in perms:
            continue
        resource, action = codename.split(".", 1)
        perms[codename] = Permission(
            codename=codename, resource=resource, action=action, display_name=display,
        )
        db.session.add(perms[codename])
        created["permissions"] += 1

    roles = {r.name: r for r in Role.query.filter(Role.shop_id.is_(None)).all()}
    for name, (display, level) in DEFAULT_ROLES.items():
        if name not in roles:
            roles[name] = Role(name=name, display_name=display, level=level, is_system=True)
            db.session.add(roles[name])
            created["roles"] += 1
    db.session.flush()

    existing = {(rp.role_id, rp.permission_id) for rp in RolePermission.query.all()}
    for role_name, codenames in DEFAULT_ROLE_PERMISSIONS.items():
        for codename in codenames:
            pair = (roles[role_name].id, perms[codename].id)
            if pair in existing:
                continue
            db.session.add(RolePermission(role_id=pair[0], permission_id=pair[1]))
            existing.add(pair)
            created["mappings"] += 1

    db.session.commit()
    invalidate_all_cache()
    return created
