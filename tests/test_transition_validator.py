"""
Transition validator tests.

Pure checks over a TransitionContext:

    draft -> in_progress -> pending_review -> approved | rejected
    rejected -> in_progress
    approved -> sent_to_customer -> completed

For every (from, to) pair of the graph the validator must accept exactly the
listed edges (plus the sent_to_customer resend). The remaining categories
(permission, safety, preconditions, business rules) are exercised one at a
time on otherwise-valid contexts, then in combination to check that every
failing category is reported.
"""

import pytest

from inspectflow.models.inspection import WORKFLOW_STATES, WORKFLOW_TRANSITIONS
from inspectflow.models.rules import BusinessRule
from inspectflow.services.permission_service import DEFAULT_PERMISSIONS, DEFAULT_ROLE_PERMISSIONS
from inspectflow.services.transition_validator import (
    TransitionContext,
    ViolationCode,
    allowed_targets,
    required_permission,
    validate_transition,
)

ALL = frozenset(DEFAULT_PERMISSIONS)
MECHANIC = frozenset(DEFAULT_ROLE_PERMISSIONS["mechanic"])
MANAGER = frozenset(DEFAULT_ROLE_PERMISSIONS["shop_manager"])

GOOD_ITEMS = ({"id": 1, "component": "Front brake pads", "condition": "good"},)
CRITICAL_ITEMS = (
    {"id": 1, "component": "Front brake pads", "condition": "good"},
    {"id": 2, "component": "Rear brake pads", "condition": "needs_immediate"},
)


def _ctx(current, target, permissions=ALL, items=GOOD_ITEMS, reason="Worn pads missed",
         phone="555-0199", technician_id=10, actor_user_id=1, role="admin"):
    return TransitionContext(
        current_state=current,
        target_state=target,
        permissions=frozenset(permissions),
        actor_user_id=actor_user_id,
        actor_role=role,
        technician_id=technician_id,
        items=tuple(items),
        reason=reason,
        customer_phone=phone,
    )


def _valid_pairs():
    return [(src, tgt) for src, targets in WORKFLOW_TRANSITIONS.items() for tgt in targets]


def _invalid_pairs():
    pairs = []
    for src, targets in WORKFLOW_TRANSITIONS.items():
        for tgt in WORKFLOW_STATES:
            if tgt in targets or (src == tgt == "sent_to_customer"):
                continue
            pairs.append((src, tgt))
    return pairs


# ═════════════════════════════════════════════════════════════════════════════
# 1. GRAPH
# ═════════════════════════════════════════════════════════════════════════════


class TestGraph:
    @pytest.mark.parametrize("current,target", _valid_pairs())
    def test_valid_edges_allowed(self, current, target):
        result = validate_transition(_ctx(current, target))
        assert result.allowed, result.errors

    @pytest.mark.parametrize("current,target", _invalid_pairs())
    def test_invalid_edges_rejected(self, current, target):
        result = validate_transition(_ctx(current, target))
        assert not result.allowed
        assert result.has(ViolationCode.ILLEGAL_TRANSITION)
        assert result.errors[0] == f"Illegal transition from '{current}' to '{target}'"

    def test_completed_is_terminal(self):
        assert allowed_targets("completed") == []

    def test_unknown_target(self):
        result = validate_transition(_ctx("draft", "archived"))
        assert result.errors[0] == "Unknown workflow state 'archived'"

    def test_resend_is_allowed(self):
        assert validate_transition(_ctx("sent_to_customer", "sent_to_customer")).allowed


# ═════════════════════════════════════════════════════════════════════════════
# 2. PERMISSION
# ═════════════════════════════════════════════════════════════════════════════


class TestPermission:
    @pytest.mark.parametrize("target,codename", [
        ("in_progress", "inspections.update"),
        ("pending_review", "inspections.update"),
        ("approved", "inspections.approve"),
        ("rejected", "inspections.approve"),
        ("sent_to_customer", "inspections.send"),
        ("completed", "inspections.update"),
    ])
    def test_required_permission(self, target, codename):
        assert required_permission(target) == codename

    def test_assigned_mechanic_may_start(self):
        ctx = _ctx("draft", "in_progress", permissions=MECHANIC, technician_id=10, actor_user_id=10, role="mechanic")
        assert validate_transition(ctx).allowed

    def test_other_mechanic_may_not_start(self):
        ctx = _ctx("draft", "in_progress", permissions=MECHANIC, technician_id=10, actor_user_id=11, role="mechanic")
        result = validate_transition(ctx)
        assert result.only_permission_denied
        assert result.violations[0].details == {"required": "inspections.update", "role": "mechanic"}

    def test_mechanic_cannot_approve_even_when_assigned(self):
        ctx = _ctx("pending_review", "approved", permissions=MECHANIC, technician_id=10, actor_user_id=10)
        result = validate_transition(ctx)
        assert result.errors == ["Missing permission: inspections.approve"]

    def test_empty_permission_set_denies(self):
        result = validate_transition(_ctx("approved", "sent_to_customer", permissions=()))
        assert result.only_permission_denied


# ═════════════════════════════════════════════════════════════════════════════
# 3. SAFETY
# ═════════════════════════════════════════════════════════════════════════════


class TestSafety:
    def test_critical_item_blocks_approval(self):
        result = validate_transition(_ctx("pending_review", "approved", permissions=MANAGER, items=CRITICAL_ITEMS))
        assert result.codes == {ViolationCode.SAFETY_BLOCKED}
        details = result.violations[0].details
        assert details["items"] == [{"id": 2, "component": "Rear brake pads"}]
        assert details["override_permission"] == "inspections.override_safety"

    def test_override_permission_allows_approval(self):
        assert validate_transition(_ctx("pending_review", "approved", items=CRITICAL_ITEMS)).allowed

    def test_rejection_not_blocked_by_critical_items(self):
        assert validate_transition(_ctx("pending_review", "rejected", permissions=MANAGER, items=CRITICAL_ITEMS)).allowed


# ═════════════════════════════════════════════════════════════════════════════
# 4. PRECONDITIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestPreconditions:
    def test_submit_needs_items(self):
        result = validate_transition(_ctx("in_progress", "pending_review", items=()))
        assert result.errors == ["Inspection must have at least one item to submit for review"]

    def test_submit_needs_every_item_assessed(self):
        items = GOOD_ITEMS + ({"id": 3, "component": "Wipers", "condition": None},)
        result = validate_transition(_ctx("in_progress", "pending_review", items=items))
        assert result.errors == ["All inspection items must have a condition status"]
        assert result.violations[0].details == {"unassessed_count": 1}

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reject_needs_reason(self, reason):
        result = validate_transition(_ctx("pending_review", "rejected", reason=reason))
        assert result.errors == ["Rejection reason is required"]

    @pytest.mark.parametrize("phone", [None, ""])
    def test_send_needs_customer_phone(self, phone):
        result = validate_transition(_ctx("approved", "sent_to_customer", phone=phone))
        assert result.errors == ["Customer must have a phone number to send inspection results"]


# ═════════════════════════════════════════════════════════════════════════════
# 5. BUSINESS RULES & COMBINATIONS
# ═════════════════════════════════════════════════════════════════════════════


def _block_rule(name="Two Items Minimum", conditions=None):
    return BusinessRule(
        id=9,
        shop_id=None,
        rule_name=name,
        rule_type="validation",
        conditions=conditions or {
            "target_states": ["pending_review"],
            "when": [{"kind": "min_items", "value": 2, "not": True}],
        },
        actions={"kind": "block", "message": "At least two items are required"},
        priority=10,
        is_active=True,
    )


class TestRulesAndCombinations:
    def test_rule_violation(self):
        result = validate_transition(_ctx("in_progress", "pending_review"), [_block_rule()])
        assert result.codes == {ViolationCode.RULE_VIOLATION}
        assert result.violations[0].details == {"rule": "Two Items Minimum", "rule_id": 9}

    def test_rule_evaluation_failure_blocks(self):
        broken = _block_rule(name="Broken", conditions={"when": [{"kind": "moon_phase"}]})
        result = validate_transition(_ctx("draft", "in_progress"), [broken])
        assert result.codes == {ViolationCode.RULE_EVALUATION_FAILURE}

    def test_every_failing_category_reported(self):
        ctx = _ctx("in_progress", "pending_review", permissions=(), items=())
        result = validate_transition(ctx, [_block_rule()])
        assert [v.code for v in result.violations] == [
            ViolationCode.PERMISSION_DENIED,
            ViolationCode.PRECONDITION_FAILED,
            ViolationCode.RULE_VIOLATION,
        ]
        assert not result.only_permission_denied

    def test_illegal_and_denied_together(self):
        result = validate_transition(_ctx("draft", "approved", permissions=MECHANIC))
        assert result.codes == {ViolationCode.ILLEGAL_TRANSITION, ViolationCode.PERMISSION_DENIED}

    def test_to_dict(self):
        d = validate_transition(_ctx("draft", "completed")).to_dict()
        assert d["allowed"] is False
        assert d["violations"][0]["code"] == "ILLEGAL_TRANSITION"
        assert d["errors"] == ["Illegal transition from 'draft' to 'completed'"]
