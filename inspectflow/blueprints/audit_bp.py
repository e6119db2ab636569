"""
Audit Blueprint — read access to the operational audit log of the caller's shop.

Endpoints:
    GET  /api/v1/audit    list / filter audit entries (newest first)
"""

from flask import Blueprint, g, jsonify, request

from inspectflow.middleware.permission_required import require_permission
from inspectflow.models.audit import AuditLog

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/audit", methods=["GET"])
@require_permission("permissions.manage")
def list_audit_logs():
    """
    Query params:
        entity_type  inspection | user | role | business_rule
        entity_id    entity PK
        action       prefix match, e.g. ``permission.`` or ``inspection.transition_denied``
        page         default 1
        per_page     default 50, max 200
    """
    q = AuditLog.query.filter(AuditLog.shop_id == g.actor.shop_id)

    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)
    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)
    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))

    page = max(1, request.args.get("page", 1, type=int))
    per_page = min(200, max(1, request.args.get("per_page", 50, type=int)))
    paginated = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False,
    )

    return jsonify({
        "audit_logs": [log.to_dict() for log in paginated.items],
        "total": paginated.total,
        "page": paginated.page,
        "per_page": paginated.per_page,
    })
