"""
Transition Validator — decides whether a workflow move is legal.

Single authority for transition legality; the store only guarantees
atomicity (version check, history insert). Pure with respect to the
database: callers pass in the already-loaded context and rule rows.

Categories (each is evaluated so the caller gets the complete error list;
within a category the first failure short-circuits):
    1. graph          ILLEGAL_TRANSITION
    2. permission     PERMISSION_DENIED
    3. safety         SAFETY_BLOCKED
    4. preconditions  PRECONDITION_FAILED
    5. business rules RULE_VIOLATION / RULE_EVALUATION_FAILURE

Usage:
    from inspectflow.services.transition_validator import TransitionContext, validate_transition

    result = validate_transition(ctx, rules)
    # -> ValidationResult(allowed=False, violations=[...]); result.errors -> [str, ...]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from inspectflow.models.inspection import WORKFLOW_STATES, WORKFLOW_TRANSITIONS, is_valid_transition
from inspectflow.services import business_rules

# Re-sending results is idempotent: no state change, no history row.
RESEND_STATE = "sent_to_customer"

SAFETY_OVERRIDE_PERMISSION = "inspections.override_safety"

# Target state -> permission that gates it; anything else needs inspections.update
_TARGET_PERMISSION = {
    "approved": "inspections.approve",
    "rejected": "inspections.approve",
    "sent_to_customer": "inspections.send",
}


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class ViolationCode(str, Enum):
    ILLEGAL_TRANSITION = "ILLEGAL_TRANSITION"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    SAFETY_BLOCKED = "SAFETY_BLOCKED"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    RULE_VIOLATION = "RULE_VIOLATION"
    RULE_EVALUATION_FAILURE = "RULE_EVALUATION_FAILURE"


@dataclass
class Violation:
    """Single reason a transition is not allowed."""
    code: ViolationCode
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class ValidationResult:
    allowed: bool
    violations: list[Violation] = field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return [v.message for v in self.violations]

    @property
    def codes(self) -> set[ViolationCode]:
        return {v.code for v in self.violations}

    def has(self, code: ViolationCode) -> bool:
        return code in self.codes

    @property
    def only_permission_denied(self) -> bool:
        return bool(self.violations) and self.codes == {ViolationCode.PERMISSION_DENIED}

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "errors": self.errors,
            "violations": [v.to_dict() for v in self.violations],
        }


@dataclass(frozen=True)
class TransitionContext:
    """Everything the validator may look at for one transition attempt."""
    current_state: str
    target_state: str
    permissions: frozenset[str]
    actor_user_id: int
    actor_role: str
    technician_id: int | None = None
    urgency_level: str = "low"
    items: tuple = ()
    estimated_cost: float = 0.0
    reason: str | None = None
    customer_phone: str | None = None

    @property
    def is_assigned_technician(self) -> bool:
        return self.technician_id is not None and self.technician_id == self.actor_user_id

    def rule_context(self) -> business_rules.RuleContext:
        return business_rules.RuleContext(
            from_state=self.current_state,
            target_state=self.target_state,
            items=self.items,
            urgency_level=self.urgency_level,
            estimated_cost=self.estimated_cost,
        )


def _item_attr(item, name):
    return item.get(name) if isinstance(item, dict) else getattr(item, name, None)


# ═════════════════════════════════════════════════════════════════════════════
# Graph helpers
# ═════════════════════════════════════════════════════════════════════════════

def allowed_targets(state: str) -> list[str]:
    """States reachable from ``state`` in one step (graph only, no permissions)."""
    return list(WORKFLOW_TRANSITIONS.get(state, []))


def is_resend(current_state: str, target_state: str) -> bool:
    return current_state == RESEND_STATE and target_state == RESEND_STATE


def required_permission(target_state: str) -> str:
    return _TARGET_PERMISSION.get(target_state, "inspections.update")


# ═════════════════════════════════════════════════════════════════════════════
# Rule categories
# ═════════════════════════════════════════════════════════════════════════════

def _check_graph(ctx: TransitionContext) -> Violation | None:
    if ctx.target_state not in WORKFLOW_STATES:
        return Violation(
            ViolationCode.ILLEGAL_TRANSITION,
            f"Unknown workflow state '{ctx.target_state}'",
            {"from": ctx.current_state, "to": ctx.target_state},
        )
    if is_valid_transition(ctx.current_state, ctx.target_state) or is_resend(ctx.current_state, ctx.target_state):
        return None
    return Violation(
        ViolationCode.ILLEGAL_TRANSITION,
        f"Illegal transition from '{ctx.current_state}' to '{ctx.target_state}'",
        {"from": ctx.current_state, "to": ctx.target_state, "allowed": allowed_targets(ctx.current_state)},
    )


def _check_permission(ctx: TransitionContext) -> Violation | None:
    required = required_permission(ctx.target_state)
    if required in ctx.permissions:
        return None
    if (
        required == "inspections.update"
        and ctx.is_assigned_technician
        and "inspections.update_own" in ctx.permissions
    ):
        return None
    return Violation(
        ViolationCode.PERMISSION_DENIED,
        f"Missing permission: {required}",
        {"required": required, "role": ctx.actor_role},
    )


def _check_safety(ctx: TransitionContext) -> Violation | None:
    if ctx.target_state != "approved":
        return None
    critical = [i for i in ctx.items if _item_attr(i, "condition") == "needs_immediate"]
    if not critical or SAFETY_OVERRIDE_PERMISSION in ctx.permissions:
        return None
    return Violation(
        ViolationCode.SAFETY_BLOCKED,
        "Critical safety item blocks approval",
        {
            "items": [
                {"id": _item_attr(i, "id"), "component": _item_attr(i, "component")}
                for i in critical
            ],
            "override_permission": SAFETY_OVERRIDE_PERMISSION,
        },
    )


def _check_preconditions(ctx: TransitionContext) -> Violation | None:
    if ctx.target_state == "pending_review":
        if not ctx.items:
            return Violation(
                ViolationCode.PRECONDITION_FAILED,
                "Inspection must have at least one item to submit for review",
            )
        unassessed = [i for i in ctx.items if not _item_attr(i, "condition")]
        if unassessed:
            return Violation(
                ViolationCode.PRECONDITION_FAILED,
                "All inspection items must have a condition status",
                {"unassessed_count": len(unassessed)},
            )
    elif ctx.target_state == "rejected":
        if not (ctx.reason or "").strip():
            return Violation(ViolationCode.PRECONDITION_FAILED, "Rejection reason is required")
    elif ctx.target_state == "sent_to_customer":
        if not (ctx.customer_phone or "").strip():
            return Violation(
                ViolationCode.PRECONDITION_FAILED,
                "Customer must have a phone number to send inspection results",
            )
    return None


def _check_business_rules(ctx: TransitionContext, rules) -> list[Violation]:
    findings = business_rules.evaluate_validation_rules(list(rules), ctx.rule_context())
    return [
        Violation(
            ViolationCode(f.code),
            f.message,
            {"rule": f.rule_name, **f.details},
        )
        for f in findings
    ]


def validate_transition(ctx: TransitionContext, rules=()) -> ValidationResult:
    """Run every rule category and return the combined result."""
    violations: list[Violation] = []
    for check in (_check_graph, _check_permission, _check_safety, _check_preconditions):
        violation = check(ctx)
        if violation is not None:
            violations.append(violation)
    violations.extend(_check_business_rules(ctx, rules))
    return ValidationResult(allowed=not violations, violations=violations)
