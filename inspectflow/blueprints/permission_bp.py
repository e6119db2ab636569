"""
Permission Blueprint — effective-permission queries and RBAC administration.

Endpoints:
  POST   /permissions/check                     yes/no (+ explanation) for the caller
  GET    /permissions/me                        caller's effective permission set
  GET    /users/<id>/permission-overrides       list a user's overrides
  POST   /users/<id>/permission-overrides       grant or revoke (granted: false)
  DELETE /users/<id>/permission-overrides       drop an override (?permission=)
  GET    /roles                                 system roles + this shop's custom roles
  POST   /roles                                 create a custom role (name, display_name?, base_role?)
  POST   /roles/<name>/permissions              map a permission to a custom role
  DELETE /roles/<name>/permissions              unmap (?permission=); system roles are 403
  POST   /permissions/cache/clear               flush the permission cache
"""

from datetime import datetime

from flask import Blueprint, g, jsonify, request

from inspectflow.middleware.permission_required import require_permission
from inspectflow.services import permission_service
from inspectflow.utils.errors import E, api_error

permission_bp = Blueprint("permission", __name__, url_prefix="/api/v1")


def _permission_arg(data: dict):
    codename = data.get("permission") or request.args.get("permission", "")
    if not isinstance(codename, str) or not codename.strip():
        return None, api_error(E.VALIDATION_REQUIRED, "permission is required")
    return codename.strip(), None


@permission_bp.route("/permissions/check", methods=["POST"])
def check_permission():
    """Body: { permission } or { resource, action, context? }."""
    data = request.get_json(silent=True) or {}
    if data.get("permission"):
        return jsonify(permission_service.evaluate_permission(g.actor, data["permission"]))

    resource, action = data.get("resource"), data.get("action")
    if not resource or not action:
        return api_error(E.VALIDATION_REQUIRED, "permission, or resource and action, is required")
    context = data.get("context") or {}
    if not isinstance(context, dict):
        return api_error(E.VALIDATION_INVALID, "context must be an object")
    allowed = permission_service.check_permission(g.actor, resource, action, context)
    return jsonify({"allowed": allowed, "permission": f"{resource}.{action}", "role": g.actor.role})


@permission_bp.route("/permissions/me", methods=["GET"])
def my_permissions():
    perms = permission_service.get_effective_permissions(g.actor)
    return jsonify({**g.actor.to_dict(), "permissions": sorted(perms)})


@permission_bp.route("/users/<int:user_id>/permission-overrides", methods=["GET"])
@require_permission("permissions.manage")
def list_overrides(user_id):
    overrides = permission_service.list_user_overrides(user_id, g.actor)
    return jsonify({"user_id": user_id, "overrides": [o.to_dict() for o in overrides]})


@permission_bp.route("/users/<int:user_id>/permission-overrides", methods=["POST"])
@require_permission("permissions.manage")
def set_override(user_id):
    """Body: { permission, granted? (default true), expires_at? (ISO-8601) }"""
    data = request.get_json(silent=True) or {}
    codename, err = _permission_arg(data)
    if err:
        return err

    expires_at = None
    if data.get("expires_at"):
        try:
            expires_at = datetime.fromisoformat(str(data["expires_at"]).replace("Z", "+00:00"))
        except ValueError:
            return api_error(E.VALIDATION_INVALID, "expires_at must be an ISO-8601 datetime")

    if data.get("granted", True):
        override = permission_service.grant_user_permission(user_id, codename, g.actor, expires_at)
    else:
        override = permission_service.revoke_user_permission(user_id, codename, g.actor, expires_at)
    return jsonify(override.to_dict()), 201


@permission_bp.route("/users/<int:user_id>/permission-overrides", methods=["DELETE"])
@require_permission("permissions.manage")
def remove_override(user_id):
    codename, err = _permission_arg(request.get_json(silent=True) or {})
    if err:
        return err
    if not permission_service.remove_user_override(user_id, codename, g.actor):
        return api_error(E.NOT_FOUND, f"No override for {codename}")
    return jsonify({"deleted": True})


@permission_bp.route("/roles", methods=["GET"])
@require_permission("permissions.manage")
def list_roles():
    roles = permission_service.list_roles(g.actor)
    return jsonify({"roles": [r.to_dict(include_permissions=True) for r in roles]})


@permission_bp.route("/roles", methods=["POST"])
@require_permission("permissions.manage")
def create_role():
    data = request.get_json(silent=True) or {}
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    base_role = data.get("base_role")
    if base_role is not None and not isinstance(base_role, str):
        return api_error(E.VALIDATION_INVALID, "base_role must be a role name")
    role = permission_service.create_role(
        name, g.actor, display_name=data.get("display_name"), base_role=base_role,
    )
    return jsonify(role.to_dict(include_permissions=True)), 201


@permission_bp.route("/roles/<role_name>/permissions", methods=["POST"])
@require_permission("permissions.manage")
def add_role_permission(role_name):
    codename, err = _permission_arg(request.get_json(silent=True) or {})
    if err:
        return err
    added = permission_service.add_role_permission(role_name, codename, g.actor)
    return jsonify({"role": role_name, "permission": codename, "added": added}), 201 if added else 200


@permission_bp.route("/roles/<role_name>/permissions", methods=["DELETE"])
@require_permission("permissions.manage")
def remove_role_permission(role_name):
    codename, err = _permission_arg(request.get_json(silent=True) or {})
    if err:
        return err
    if not permission_service.remove_role_permission(role_name, codename, g.actor):
        return api_error(E.NOT_FOUND, f"{codename} is not mapped to {role_name}")
    return jsonify({"role": role_name, "permission": codename, "removed": True})


@permission_bp.route("/permissions/cache/clear", methods=["POST"])
@require_permission("permissions.manage")
def clear_cache():
    permission_service.invalidate_all_cache()
    return jsonify({"cleared": True})
