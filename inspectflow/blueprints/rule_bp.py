"""
Business Rule Blueprint.

Endpoints:
  GET  /business-rules?include_inactive=1   shop + global rules
  POST /business-rules                      create a shop rule
  PUT  /business-rules/<id>                 edit a shop rule
"""

from flask import Blueprint, g, jsonify, request

from inspectflow.middleware.permission_required import require_permission
from inspectflow.services import business_rules

rule_bp = Blueprint("business_rule", __name__, url_prefix="/api/v1/business-rules")


@rule_bp.route("", methods=["GET"])
@require_permission("rules.read")
def list_rules():
    include_inactive = request.args.get("include_inactive", "").lower() in ("1", "true", "yes")
    rules = business_rules.list_rules(g.actor.shop_id, include_inactive=include_inactive)
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)})


@rule_bp.route("", methods=["POST"])
@require_permission("rules.manage")
def create_rule():
    """Body: { rule_name, rule_type, conditions, actions, priority?, is_active?, description? }"""
    data = request.get_json(silent=True) or {}
    rule = business_rules.create_rule(g.actor, data)
    return jsonify(rule.to_dict()), 201


@rule_bp.route("/<int:rule_id>", methods=["PUT"])
@require_permission("rules.manage")
def update_rule(rule_id):
    data = request.get_json(silent=True) or {}
    rule = business_rules.update_rule(rule_id, g.actor, data)
    return jsonify(rule.to_dict())
