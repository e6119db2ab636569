"""
Inspection Blueprint — inspections, their items and workflow transitions.

Endpoints:
  Inspection:   POST /inspections, GET/DELETE /inspections/<id>
  Workflow:     POST /inspections/<id>/transitions
                GET  /inspections/<id>/transitions/available
                GET  /inspections/<id>/history
                POST /inspections/<id>/urgency
  Queues:       GET  /inspections/queue?state=…&limit=…
                GET  /inspections/statistics?days=…
  Items:        POST /inspections/<id>/items, PUT/DELETE /items/<id>

Layer contract: parse the request → call the service → jsonify. Service
exceptions are mapped to HTTP codes by the app-level error handlers.
"""

import logging

from flask import Blueprint, g, jsonify, request

from inspectflow.middleware.permission_required import require_any_permission
from inspectflow.services import inspection_service, workflow_service
from inspectflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

inspection_bp = Blueprint("inspection", __name__, url_prefix="/api/v1")


def _optional_int(data: dict, key: str):
    """Return (value, error_response). Booleans are not accepted as ints."""
    value = data.get(key)
    if value is None:
        return None, None
    if isinstance(value, bool) or not isinstance(value, int):
        return None, api_error(E.VALIDATION_INVALID, f"{key} must be an integer")
    return value, None


def _transition_response(result):
    if result.success:
        return jsonify(result.to_dict()), 200
    codes = {e["code"] for e in result.errors}
    if codes == {"PERMISSION_DENIED"}:
        return api_error(E.FORBIDDEN, result.error_messages[0], details=result.to_dict())
    return api_error(E.TRANSITION_REJECTED, "Transition rejected", details=result.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Inspections
# ═════════════════════════════════════════════════════════════════════════


@inspection_bp.route("/inspections", methods=["POST"])
def create_inspection():
    """Start a new inspection in draft.

    Body: { vehicle_id?, customer_id?, technician_id?, use_template? }
    """
    data = request.get_json(silent=True) or {}
    ids = {}
    for key in ("vehicle_id", "customer_id", "technician_id"):
        ids[key], err = _optional_int(data, key)
        if err:
            return err
    inspection = inspection_service.create_inspection(
        g.actor, use_template=bool(data.get("use_template", False)), **ids,
    )
    return jsonify(inspection.to_dict(include_items=True)), 201


@inspection_bp.route("/inspections/<int:inspection_id>", methods=["GET"])
def get_inspection(inspection_id):
    inspection = inspection_service.get_inspection(inspection_id, g.actor)
    return jsonify(inspection.to_dict(include_items=True))


@inspection_bp.route("/inspections/<int:inspection_id>", methods=["DELETE"])
def retire_inspection(inspection_id):
    """Soft-delete. Optional body/query ``expected_version``."""
    data = request.get_json(silent=True) or {}
    if "expected_version" not in data and request.args.get("expected_version"):
        data["expected_version"] = request.args.get("expected_version", type=int)
    expected, err = _optional_int(data, "expected_version")
    if err:
        return err
    inspection_service.retire_inspection(inspection_id, g.actor, expected_version=expected)
    return jsonify({"retired": True, "id": inspection_id})


# ═════════════════════════════════════════════════════════════════════════
# Workflow
# ═════════════════════════════════════════════════════════════════════════


@inspection_bp.route("/inspections/<int:inspection_id>/transitions", methods=["POST"])
def request_transition(inspection_id):
    """Move an inspection along the workflow.

    Body: { target_state, reason?, expected_version? }
    Returns 200 with the result, 422 with violations, 403 when the only
    problem is a missing permission, 409 on a version conflict.
    """
    data = request.get_json(silent=True) or {}
    target_state = (data.get("target_state") or "").strip() if isinstance(data.get("target_state"), str) else ""
    if not target_state:
        return api_error(E.VALIDATION_REQUIRED, "target_state is required")
    expected, err = _optional_int(data, "expected_version")
    if err:
        return err
    reason = data.get("reason")
    if reason is not None and not isinstance(reason, str):
        return api_error(E.VALIDATION_INVALID, "reason must be a string")

    result = workflow_service.request_transition(
        inspection_id, target_state, g.actor, reason=reason, expected_version=expected,
    )
    return _transition_response(result)


@inspection_bp.route("/inspections/<int:inspection_id>/transitions/available", methods=["GET"])
def available_transitions(inspection_id):
    targets = workflow_service.get_available_transitions(inspection_id, g.actor)
    return jsonify({"inspection_id": inspection_id, "transitions": targets})


@inspection_bp.route("/inspections/<int:inspection_id>/history", methods=["GET"])
def transition_history(inspection_id):
    records = workflow_service.get_history(inspection_id, g.actor)
    return jsonify({"inspection_id": inspection_id, "history": [r.to_dict() for r in records]})


@inspection_bp.route("/inspections/<int:inspection_id>/urgency", methods=["POST"])
def recompute_urgency(inspection_id):
    urgency = workflow_service.recompute_urgency(inspection_id, g.actor)
    inspection = inspection_service.get_inspection(inspection_id, g.actor)
    return jsonify({"urgency": urgency.to_dict(), "version": inspection.version})


@inspection_bp.route("/inspections/queue", methods=["GET"])
@require_any_permission("inspections.read", "inspections.approve")
def inspection_queue():
    """Query params: state (required), limit (default 50, max 200)."""
    state = request.args.get("state", "").strip()
    if not state:
        return api_error(E.VALIDATION_REQUIRED, "state is required")
    limit = request.args.get("limit", 50, type=int)
    inspections = workflow_service.list_by_state(g.actor.shop_id, state, limit=limit)
    return jsonify({
        "state": state,
        "items": [i.to_dict() for i in inspections],
        "total": len(inspections),
    })


@inspection_bp.route("/inspections/statistics", methods=["GET"])
@require_any_permission("inspections.read", "inspections.approve")
def inspection_statistics():
    days = request.args.get("days", 30, type=int)
    return jsonify(workflow_service.workflow_statistics(g.actor.shop_id, days=days))


# ═════════════════════════════════════════════════════════════════════════
# Items
# ═════════════════════════════════════════════════════════════════════════


@inspection_bp.route("/inspections/<int:inspection_id>/items", methods=["POST"])
def add_item(inspection_id):
    """Body: { category, component, condition?, measurements?, priority?, estimated_cost?, notes?, expected_version? }"""
    data = request.get_json(silent=True) or {}
    expected, err = _optional_int(data, "expected_version")
    if err:
        return err
    item = inspection_service.add_item(inspection_id, g.actor, data, expected_version=expected)
    return jsonify({"item": item.to_dict(), "inspection": item.inspection.to_dict()}), 201


@inspection_bp.route("/items/<int:item_id>", methods=["PUT"])
def update_item(item_id):
    data = request.get_json(silent=True) or {}
    expected, err = _optional_int(data, "expected_version")
    if err:
        return err
    item = inspection_service.update_item(item_id, g.actor, data, expected_version=expected)
    return jsonify({"item": item.to_dict(), "inspection": item.inspection.to_dict()})


@inspection_bp.route("/items/<int:item_id>", methods=["DELETE"])
def remove_item(item_id):
    data = request.get_json(silent=True) or {}
    expected, err = _optional_int(data, "expected_version")
    if err:
        return err
    inspection = inspection_service.remove_item(item_id, g.actor, expected_version=expected)
    return jsonify({"deleted": True, "inspection": inspection.to_dict()})
