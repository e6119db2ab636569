"""
Business Rule Evaluator — shop-configurable rules consulted by the engine.

Rule payloads are a closed tagged-variant model, not an interpreter:

    conditions = {
        "from_states":   ["in_progress"],          # optional scope
        "target_states": ["pending_review"],       # optional scope (validation only)
        "when": [                                  # all must match; empty = always
            {"kind": "all_items_assessed"},
            {"kind": "min_items", "value": 3},
            {"kind": "mandatory_categories", "value": ["Brakes"], "not": true},
        ],
    }

    actions = {"kind": "block", "message": "..."}                    # validation
    actions = {"kind": "advance", "to_state": "pending_review"}       # state_transition
    actions = {"kind": "thresholds", "critical": 90, "high": 70, "normal": 40}  # calculation

Failure policy:
    - malformed validation rules and rules of unknown type produce a blocking
      RULE_EVALUATION_FAILURE finding and a warning log
    - malformed state_transition / calculation rules are skipped with a
      warning log (they only ever add behaviour, never remove a restriction)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from inspectflow.core.actor import ActorContext
from inspectflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from inspectflow.models import db
from inspectflow.models.audit import write_audit
from inspectflow.models.inspection import URGENCY_LEVELS, WORKFLOW_STATES, is_valid_transition
from inspectflow.models.rules import BusinessRule
from inspectflow.services.urgency import DEFAULT_THRESHOLDS, UrgencyThresholds

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class RuleType(str, Enum):
    VALIDATION = "validation"
    STATE_TRANSITION = "state_transition"
    CALCULATION = "calculation"


class ConditionKind(str, Enum):
    ALWAYS = "always"
    ALL_ITEMS_ASSESSED = "all_items_assessed"
    HAS_CRITICAL_ITEMS = "has_critical_items"
    MIN_ITEMS = "min_items"
    URGENCY_AT_LEAST = "urgency_at_least"
    MANDATORY_CATEGORIES = "mandatory_categories"
    ESTIMATED_COST_ABOVE = "estimated_cost_above"


class ActionKind(str, Enum):
    BLOCK = "block"
    ADVANCE = "advance"
    THRESHOLDS = "thresholds"


_ACTION_FOR_TYPE = {
    RuleType.VALIDATION: ActionKind.BLOCK,
    RuleType.STATE_TRANSITION: ActionKind.ADVANCE,
    RuleType.CALCULATION: ActionKind.THRESHOLDS,
}

RULE_VIOLATION = "RULE_VIOLATION"
RULE_EVALUATION_FAILURE = "RULE_EVALUATION_FAILURE"


class RuleParseError(ValueError):
    """Raised when a rule row does not fit the closed payload model."""


@dataclass(frozen=True)
class RuleContext:
    """What a rule condition can see about an inspection."""
    from_state: str
    target_state: str | None
    items: tuple = ()
    urgency_level: str = "low"
    estimated_cost: float = 0.0


@dataclass(frozen=True)
class Condition:
    kind: ConditionKind
    value: Any = None
    negate: bool = False

    def matches(self, ctx: RuleContext) -> bool:
        return self._evaluate(ctx) != self.negate

    def _evaluate(self, ctx: RuleContext) -> bool:
        items = ctx.items
        if self.kind is ConditionKind.ALWAYS:
            return True
        if self.kind is ConditionKind.ALL_ITEMS_ASSESSED:
            return bool(items) and all(_condition_of(i) for i in items)
        if self.kind is ConditionKind.HAS_CRITICAL_ITEMS:
            return any(_condition_of(i) == "needs_immediate" for i in items)
        if self.kind is ConditionKind.MIN_ITEMS:
            return len(items) >= self.value
        if self.kind is ConditionKind.URGENCY_AT_LEAST:
            return URGENCY_LEVELS.index(ctx.urgency_level) >= URGENCY_LEVELS.index(self.value)
        if self.kind is ConditionKind.MANDATORY_CATEGORIES:
            present = {(_category_of(i) or "").strip().lower() for i in items}
            return all(c.strip().lower() in present for c in self.value)
        if self.kind is ConditionKind.ESTIMATED_COST_ABOVE:
            return (ctx.estimated_cost or 0) > self.value
        raise RuleParseError(f"unhandled condition kind {self.kind!r}")


@dataclass(frozen=True)
class RuleAction:
    kind: ActionKind
    message: str | None = None
    to_state: str | None = None
    thresholds: UrgencyThresholds | None = None


@dataclass(frozen=True)
class ParsedRule:
    id: int | None
    name: str
    rule_type: RuleType
    shop_id: int | None
    priority: int
    action: RuleAction
    conditions: tuple[Condition, ...] = ()
    from_states: frozenset[str] | None = None
    target_states: frozenset[str] | None = None

    def in_scope(self, from_state: str, target_state: str | None) -> bool:
        if self.from_states is not None and from_state not in self.from_states:
            return False
        if self.target_states is not None and target_state not in self.target_states:
            return False
        return True

    def matches(self, ctx: RuleContext) -> bool:
        return self.in_scope(ctx.from_state, ctx.target_state) and all(
            c.matches(ctx) for c in self.conditions
        )


@dataclass
class RuleFinding:
    """One validation-rule outcome that blocks a transition."""
    code: str
    rule_name: str
    message: str
    details: dict = field(default_factory=dict)


def _condition_of(item) -> str | None:
    return item.get("condition") if isinstance(item, Mapping) else getattr(item, "condition", None)


def _category_of(item) -> str | None:
    return item.get("category") if isinstance(item, Mapping) else getattr(item, "category", None)


# ═════════════════════════════════════════════════════════════════════════════
# Parsing
# ═════════════════════════════════════════════════════════════════════════════

def _parse_states(raw: Any, key: str) -> frozenset[str] | None:
    if raw is None:
        return None
    if not isinstance(raw, list) or not raw:
        raise RuleParseError(f"{key} must be a non-empty list")
    unknown = [s for s in raw if s not in WORKFLOW_STATES]
    if unknown:
        raise RuleParseError(f"{key} has unknown states {unknown}")
    return frozenset(raw)


def _parse_condition(raw: Any) -> Condition:
    if not isinstance(raw, Mapping):
        raise RuleParseError(f"condition must be an object, got {raw!r}")
    try:
        kind = ConditionKind(raw.get("kind"))
    except ValueError:
        raise RuleParseError(f"unknown condition kind {raw.get('kind')!r}") from None
    value = raw.get("value")
    negate = raw.get("not", False)
    if not isinstance(negate, bool):
        raise RuleParseError("'not' must be a boolean")

    if kind is ConditionKind.MIN_ITEMS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise RuleParseError("min_items needs a non-negative integer value")
    elif kind is ConditionKind.URGENCY_AT_LEAST:
        if value not in URGENCY_LEVELS:
            raise RuleParseError(f"urgency_at_least needs one of {list(URGENCY_LEVELS)}")
    elif kind is ConditionKind.MANDATORY_CATEGORIES:
        if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
            raise RuleParseError("mandatory_categories needs a non-empty list of names")
        value = tuple(value)
    elif kind is ConditionKind.ESTIMATED_COST_ABOVE:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise RuleParseError("estimated_cost_above needs a numeric value")
    return Condition(kind=kind, value=value, negate=negate)


def _parse_action(raw: Any, rule_type: RuleType) -> RuleAction:
    if not isinstance(raw, Mapping):
        raise RuleParseError("actions must be an object")
    try:
        kind = ActionKind(raw.get("kind"))
    except ValueError:
        raise RuleParseError(f"unknown action kind {raw.get('kind')!r}") from None
    if kind is not _ACTION_FOR_TYPE[rule_type]:
        raise RuleParseError(f"{rule_type.value} rules need a '{_ACTION_FOR_TYPE[rule_type].value}' action")

    if kind is ActionKind.BLOCK:
        message = raw.get("message")
        if not isinstance(message, str) or not message.strip():
            raise RuleParseError("block action needs a message")
        return RuleAction(kind=kind, message=message.strip())
    if kind is ActionKind.ADVANCE:
        to_state = raw.get("to_state")
        if to_state not in WORKFLOW_STATES:
            raise RuleParseError(f"advance action has unknown to_state {to_state!r}")
        return RuleAction(kind=kind, to_state=to_state)
    try:
        thresholds = UrgencyThresholds.from_mapping(raw)
    except ValueError as exc:
        raise RuleParseError(str(exc)) from None
    return RuleAction(kind=kind, thresholds=thresholds)


def parse_rule(rule: BusinessRule) -> ParsedRule:
    """Parse a BusinessRule row. Raises RuleParseError on any malformed part."""
    try:
        rule_type = RuleType(rule.rule_type)
    except ValueError:
        raise RuleParseError(f"unknown rule_type {rule.rule_type!r}") from None

    conditions = rule.conditions if rule.conditions is not None else {}
    if not isinstance(conditions, Mapping):
        raise RuleParseError("conditions must be an object")
    when = conditions.get("when", [])
    if not isinstance(when, list):
        raise RuleParseError("'when' must be a list")

    return ParsedRule(
        id=rule.id,
        name=rule.rule_name,
        rule_type=rule_type,
        shop_id=rule.shop_id,
        priority=rule.priority if rule.priority is not None else 100,
        action=_parse_action(rule.actions, rule_type),
        conditions=tuple(_parse_condition(c) for c in when),
        from_states=_parse_states(conditions.get("from_states"), "from_states"),
        target_states=_parse_states(conditions.get("target_states"), "target_states"),
    )


def _log_malformed(rule: BusinessRule, exc: Exception, outcome: str) -> None:
    logger.warning(
        "Malformed business rule %s (%s) %s: %s",
        rule.id, rule.rule_name, outcome, exc,
        extra={"shop_id": rule.shop_id, "event_type": "rule_malformed"},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════

def load_active_rules(shop_id: int) -> list[BusinessRule]:
    """Active rules for a shop plus global rules, priority ascending (shop rules first on ties)."""
    return (
        BusinessRule.query
        .filter(
            BusinessRule.is_active.is_(True),
            or_(BusinessRule.shop_id == shop_id, BusinessRule.shop_id.is_(None)),
        )
        .order_by(BusinessRule.priority, BusinessRule.shop_id.is_(None), BusinessRule.id)
        .all()
    )


def evaluate_validation_rules(rules: list[BusinessRule], ctx: RuleContext) -> list[RuleFinding]:
    """Blocking findings from validation rules (plus fail-safe findings for bad rules)."""
    findings: list[RuleFinding] = []
    for rule in rules:
        if rule.rule_type in (RuleType.STATE_TRANSITION.value, RuleType.CALCULATION.value):
            continue
        try:
            parsed = parse_rule(rule)
            matched = parsed.matches(ctx)
        except RuleParseError as exc:
            _log_malformed(rule, exc, "blocks transition")
            findings.append(RuleFinding(
                code=RULE_EVALUATION_FAILURE,
                rule_name=rule.rule_name,
                message=f"Business rule '{rule.rule_name}' is misconfigured; contact your shop administrator",
                details={"rule_id": rule.id, "error": str(exc)},
            ))
            continue
        if matched:
            findings.append(RuleFinding(
                code=RULE_VIOLATION,
                rule_name=parsed.name,
                message=parsed.action.message,
                details={"rule_id": parsed.id},
            ))
    return findings


def next_automatic_transition(rules: list[BusinessRule], ctx: RuleContext) -> ParsedRule | None:
    """First matching state_transition rule whose target is a legal edge from ``ctx.from_state``."""
    for rule in rules:
        if rule.rule_type != RuleType.STATE_TRANSITION.value:
            continue
        try:
            parsed = parse_rule(rule)
            matched = parsed.in_scope(ctx.from_state, None) and all(
                c.matches(ctx) for c in parsed.conditions
            )
        except RuleParseError as exc:
            _log_malformed(rule, exc, "skipped")
            continue
        if matched and is_valid_transition(ctx.from_state, parsed.action.to_state):
            return parsed
    return None


def resolve_thresholds(rules: list[BusinessRule]) -> UrgencyThresholds:
    """Urgency thresholds from calculation rules; shop rules win over global ones."""
    calc = [r for r in rules if r.rule_type == RuleType.CALCULATION.value]
    calc.sort(key=lambda r: (r.shop_id is None, r.priority if r.priority is not None else 100, r.id or 0))
    for rule in calc:
        try:
            return parse_rule(rule).action.thresholds
        except RuleParseError as exc:
            _log_malformed(rule, exc, "skipped")
    return DEFAULT_THRESHOLDS


# ═════════════════════════════════════════════════════════════════════════════
# Administration
# ═════════════════════════════════════════════════════════════════════════════

DEFAULT_RULES = [
    {
        "rule_name": "Auto Submit After All Items",
        "rule_type": "state_transition",
        "description": "Move to review as soon as every item has a condition",
        "conditions": {"from_states": ["in_progress"], "when": [{"kind": "all_items_assessed"}]},
        "actions": {"kind": "advance", "to_state": "pending_review"},
        "priority": 10,
        "is_active": True,
    },
    {
        "rule_name": "Mandatory Safety Categories",
        "rule_type": "validation",
        "description": "Brakes and tires must be inspected before review",
        "conditions": {
            "target_states": ["pending_review"],
            "when": [{"kind": "mandatory_categories", "value": ["Brakes", "Tires"], "not": True}],
        },
        "actions": {"kind": "block", "message": "Missing mandatory inspection categories: Brakes, Tires"},
        "priority": 20,
        "is_active": False,
    },
    {
        "rule_name": "Calculate Urgency",
        "rule_type": "calculation",
        "description": "Default urgency level thresholds",
        "conditions": {},
        "actions": {"kind": "thresholds", **DEFAULT_THRESHOLDS.to_dict()},
        "priority": 100,
        "is_active": True,
    },
]

_EDITABLE_FIELDS = ("rule_name", "rule_type", "description", "conditions", "actions", "priority", "is_active")


def _validate_payload(rule: BusinessRule) -> None:
    if not rule.rule_name or not str(rule.rule_name).strip():
        raise ValidationError("rule_name is required", details={"rule_name": "required"})
    try:
        parse_rule(rule)
    except RuleParseError as exc:
        raise ValidationError(f"Invalid business rule: {exc}", details={"rule": str(exc)}) from None


def list_rules(shop_id: int, include_inactive: bool = False) -> list[BusinessRule]:
    q = BusinessRule.query.filter(
        or_(BusinessRule.shop_id == shop_id, BusinessRule.shop_id.is_(None))
    )
    if not include_inactive:
        q = q.filter(BusinessRule.is_active.is_(True))
    return q.order_by(BusinessRule.priority, BusinessRule.id).all()


def create_rule(actor: ActorContext, data: dict) -> BusinessRule:
    """Create a shop-scoped rule. The payload is parsed before it is stored."""
    rule = BusinessRule(shop_id=actor.shop_id, created_by=actor.user_id)
    for key in _EDITABLE_FIELDS:
        if key in data:
            setattr(rule, key, data[key])
    if rule.priority is None:
        rule.priority = 100
    if rule.is_active is None:
        rule.is_active = True
    _validate_payload(rule)

    db.session.add(rule)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("BusinessRule", "rule_name", data.get("rule_name")) from None
    write_audit(
        entity_type="business_rule",
        entity_id=rule.id,
        action="rule.create",
        shop_id=actor.shop_id,
        actor_user_id=actor.user_id,
        diff={"rule": rule.to_dict()},
    )
    db.session.commit()
    return rule


def update_rule(rule_id: int, actor: ActorContext, data: dict) -> BusinessRule:
    """Edit a rule owned by the actor's shop. Global rules are not editable here."""
    rule = db.session.get(BusinessRule, rule_id)
    if rule is None or rule.shop_id != actor.shop_id:
        raise NotFoundError(resource="BusinessRule", resource_id=rule_id, shop_id=actor.shop_id)

    before = rule.to_dict()
    for key in _EDITABLE_FIELDS:
        if key in data:
            setattr(rule, key, data[key])
    try:
        _validate_payload(rule)
    except ValidationError:
        db.session.rollback()
        raise
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("BusinessRule", "rule_name", data.get("rule_name")) from None

    changed = {k: {"old": before[k], "new": v} for k, v in rule.to_dict().items()
               if k in _EDITABLE_FIELDS and before[k] != v}
    write_audit(
        entity_type="business_rule",
        entity_id=rule.id,
        action="rule.update",
        shop_id=actor.shop_id,
        actor_user_id=actor.user_id,
        diff=changed,
    )
    db.session.commit()
    return rule


def seed_default_rules() -> int:
    """Insert the default global rules that are missing. Returns the number created."""
    created = 0
    for defaults in DEFAULT_RULES:
        exists = BusinessRule.query.filter_by(shop_id=None, rule_name=defaults["rule_name"]).first()
        if exists:
            continue
        db.session.add(BusinessRule(shop_id=None, **defaults))
        created += 1
    db.session.commit()
    return created
