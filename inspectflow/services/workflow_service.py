"""
Workflow Engine — the only writer of ``Inspection.workflow_state``.

A transition attempt is one unit of work:

    1. load the inspection (shop-scoped) and remember its ``version``
    2. resolve permissions, active rules and the current urgency
    3. ask the validator; a rejection writes NOTHING to the inspection
       or its history (a pure permission denial is audited separately)
    4. conditional UPDATE … WHERE version = :read (version + 1), then
       insert exactly one StateTransitionRecord, then commit

A zero-row update means another writer got there first: the transaction
is rolled back and ConcurrencyConflictError is raised for the caller to
retry from a fresh read. Any other store error rolls back and surfaces as
PersistenceError.

After an accepted move, matching ``state_transition`` rules may advance
the inspection further. Each hop is a full attempt of its own (same actor,
fresh version), bounded by MAX_AUTO_TRANSITIONS.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from inspectflow.core.actor import ActorContext
from inspectflow.core.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from inspectflow.models import db
from inspectflow.models.audit import write_audit
from inspectflow.models.inspection import WORKFLOW_STATES, Inspection, StateTransitionRecord
from inspectflow.services import business_rules, permission_service
from inspectflow.services.inspection_service import (
    current_version,
    ensure_can_read,
    load_inspection,
    versioned_update,
)
from inspectflow.services.transition_validator import (
    TransitionContext,
    ViolationCode,
    allowed_targets,
    is_resend,
    validate_transition,
)
from inspectflow.services.urgency import UrgencyResult, score_inspection

logger = logging.getLogger(__name__)

DEFAULT_MAX_AUTO_TRANSITIONS = 3


@dataclass
class TransitionResult:
    success: bool
    inspection: Inspection | None = None
    new_state: str | None = None
    urgency: UrgencyResult | None = None
    errors: list[dict] = field(default_factory=list)
    automatic_transitions: list[dict] = field(default_factory=list)
    changed: bool = True

    @property
    def error_messages(self) -> list[str]:
        return [e["message"] for e in self.errors]

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "new_state": self.new_state,
            "changed": self.changed if self.success else False,
            "errors": self.error_messages,
            "violations": self.errors,
            "urgency": self.urgency.to_dict() if self.urgency else None,
            "automatic_transitions": self.automatic_transitions,
            "inspection": self.inspection.to_dict() if self.inspection else None,
        }


# ── Internals ────────────────────────────────────────────────────────────


def _apply_statement_timeout() -> None:
    """Bound lock waits inside the transition transaction (PostgreSQL only)."""
    timeout_ms = current_app.config.get("TRANSITION_TIMEOUT_MS")
    if not timeout_ms or db.engine.dialect.name != "postgresql":
        return
    db.session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))


def _urgency_for(inspection: Inspection, rules) -> UrgencyResult:
    return score_inspection(list(inspection.items), business_rules.resolve_thresholds(rules))


def _build_context(inspection, target_state, actor, permissions, urgency, reason) -> TransitionContext:
    customer = inspection.customer
    return TransitionContext(
        current_state=inspection.workflow_state,
        target_state=target_state,
        permissions=frozenset(permissions),
        actor_user_id=actor.user_id,
        actor_role=actor.role,
        technician_id=inspection.technician_id,
        urgency_level=urgency.level,
        items=tuple(inspection.items),
        estimated_cost=inspection.estimated_cost or 0.0,
        reason=reason,
        customer_phone=customer.phone if customer is not None else None,
    )


def _audit_denial(inspection, target_state, actor, validation) -> None:
    write_audit(
        entity_type="inspection",
        entity_id=inspection.id,
        action="inspection.transition_denied",
        shop_id=inspection.shop_id,
        actor_user_id=actor.user_id,
        diff={
            "from_state": inspection.workflow_state,
            "to_state": target_state,
            "required": [
                v.details.get("required") for v in validation.violations
                if v.code is ViolationCode.PERMISSION_DENIED
            ],
        },
    )
    db.session.commit()


def _attempt_transition(
    inspection_id: int,
    target_state: str,
    actor: ActorContext,
    reason: str | None = None,
    expected_version: int | None = None,
    automatic: bool = False,
    rule_name: str | None = None,
) -> TransitionResult:
    inspection = load_inspection(inspection_id, actor.shop_id)
    read_version = inspection.version
    from_state = inspection.workflow_state
    log_extra = {
        "inspection_id": inspection_id,
        "shop_id": actor.shop_id,
        "user_id": actor.user_id,
        "from_state": from_state,
        "to_state": target_state,
    }

    if expected_version is not None and expected_version != read_version:
        db.session.rollback()
        logger.warning(
            "Stale transition request for inspection %s (expected v%s, found v%s)",
            inspection_id, expected_version, read_version,
            extra={**log_extra, "event_type": "transition_conflict"},
        )
        raise ConcurrencyConflictError(inspection_id, expected_version, read_version)

    try:
        _apply_statement_timeout()
        rules = business_rules.load_active_rules(actor.shop_id)
        urgency = _urgency_for(inspection, rules)
        permissions = permission_service.get_effective_permissions(actor)
        ctx = _build_context(inspection, target_state, actor, permissions, urgency, reason)
        validation = validate_transition(ctx, rules)

        if not validation.allowed:
            db.session.rollback()
            if validation.has(ViolationCode.PERMISSION_DENIED) and not automatic:
                _audit_denial(inspection, target_state, actor, validation)
            logger.info(
                "Transition %s -> %s rejected for inspection %s: %s",
                from_state, target_state, inspection_id, "; ".join(validation.errors),
                extra={**log_extra, "event_type": "transition_rejected"},
            )
            return TransitionResult(
                success=False,
                inspection=inspection,
                new_state=from_state,
                urgency=urgency,
                errors=[v.to_dict() for v in validation.violations],
                changed=False,
            )

        if is_resend(from_state, target_state):
            db.session.rollback()
            logger.info(
                "Inspection %s already sent; re-send is a no-op", inspection_id,
                extra={**log_extra, "event_type": "transition_resend"},
            )
            return TransitionResult(
                success=True, inspection=inspection, new_state=from_state,
                urgency=urgency, changed=False,
            )

        now = datetime.now(timezone.utc)
        applied = versioned_update(
            inspection_id,
            read_version,
            workflow_state=target_state,
            previous_state=from_state,
            state_changed_at=now,
            state_changed_by=actor.user_id,
            urgency_level=urgency.level,
            urgency_score=urgency.score,
        )
        if not applied:
            db.session.rollback()
            actual = current_version(inspection_id)
            logger.warning(
                "Version conflict on inspection %s (read v%s, found v%s)",
                inspection_id, read_version, actual,
                extra={**log_extra, "event_type": "transition_conflict"},
            )
            raise ConcurrencyConflictError(inspection_id, read_version, actual)

        db.session.add(StateTransitionRecord(
            inspection_id=inspection_id,
            shop_id=inspection.shop_id,
            from_state=from_state,
            to_state=target_state,
            changed_by=actor.user_id,
            reason=reason,
            validation_passed=True,
            validation_errors=[],
            details={
                "urgency_level": urgency.level,
                "urgency_score": urgency.score,
                "version": read_version + 1,
                "automatic": automatic,
                "rule": rule_name,
            },
            changed_at=now,
        ))
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception(
            "Transition %s -> %s failed for inspection %s", from_state, target_state, inspection_id,
            extra={**log_extra, "event_type": "transition_failed"},
        )
        raise PersistenceError("Transition could not be saved; please retry") from exc

    db.session.refresh(inspection)
    logger.info(
        "Inspection %s: %s -> %s (v%s)%s", inspection_id, from_state, target_state,
        inspection.version, " [automatic]" if automatic else "",
        extra={**log_extra, "event_type": "transition_applied"},
    )
    return TransitionResult(
        success=True, inspection=inspection, new_state=target_state, urgency=urgency,
    )


def _run_automatic_transitions(result: TransitionResult, actor: ActorContext) -> None:
    limit = current_app.config.get("MAX_AUTO_TRANSITIONS", DEFAULT_MAX_AUTO_TRANSITIONS)
    inspection = result.inspection
    for _ in range(limit):
        rules = business_rules.load_active_rules(inspection.shop_id)
        urgency = _urgency_for(inspection, rules)
        rule_ctx = business_rules.RuleContext(
            from_state=inspection.workflow_state,
            target_state=None,
            items=tuple(inspection.items),
            urgency_level=urgency.level,
            estimated_cost=inspection.estimated_cost or 0.0,
        )
        rule = business_rules.next_automatic_transition(rules, rule_ctx)
        if rule is None:
            return

        hop = {"rule": rule.name, "from_state": inspection.workflow_state, "to_state": rule.action.to_state}
        try:
            hop_result = _attempt_transition(
                inspection.id,
                rule.action.to_state,
                actor,
                reason=f"Automatic: {rule.name}",
                automatic=True,
                rule_name=rule.name,
            )
        except (ConcurrencyConflictError, PersistenceError) as exc:
            logger.warning(
                "Automatic transition by rule '%s' not applied: %s", rule.name, exc,
                extra={"inspection_id": inspection.id, "shop_id": inspection.shop_id,
                       "event_type": "auto_transition_failed"},
            )
            result.automatic_transitions.append({**hop, "applied": False, "errors": [str(exc)]})
            return

        result.automatic_transitions.append({
            **hop,
            "applied": hop_result.success,
            "errors": hop_result.error_messages,
        })
        if not hop_result.success:
            return
        inspection = hop_result.inspection
        result.inspection = inspection
        result.new_state = hop_result.new_state
        result.urgency = hop_result.urgency
    logger.info(
        "Automatic transition limit (%s) reached for inspection %s", limit, inspection.id,
        extra={"inspection_id": inspection.id, "shop_id": inspection.shop_id},
    )


# ── Public API ───────────────────────────────────────────────────────────


def request_transition(
    inspection_id: int,
    target_state: str,
    actor: ActorContext,
    reason: str | None = None,
    expected_version: int | None = None,
) -> TransitionResult:
    """Validate and apply one workflow move, then any rule-driven follow-ups.

    Raises:
        NotFoundError: inspection missing, retired or in another shop.
        ConcurrencyConflictError: ``expected_version`` is stale, or the row
            changed between read and write.
        PersistenceError: the store failed; nothing was written.
    """
    result = _attempt_transition(
        inspection_id, target_state, actor, reason=reason, expected_version=expected_version,
    )
    if result.success and result.changed:
        _run_automatic_transitions(result, actor)
    return result


def get_available_transitions(inspection_id: int, actor: ActorContext) -> list[dict]:
    """Graph targets from the current state, each with whether this actor may take it now."""
    inspection = load_inspection(inspection_id, actor.shop_id)
    ensure_can_read(actor, inspection)
    rules = business_rules.load_active_rules(actor.shop_id)
    urgency = _urgency_for(inspection, rules)
    permissions = permission_service.get_effective_permissions(actor)

    out = []
    for target in allowed_targets(inspection.workflow_state):
        ctx = _build_context(inspection, target, actor, permissions, urgency, reason=None)
        validation = validate_transition(ctx, rules)
        # a rejection reason is supplied at request time, not known here
        blocking = [
            v for v in validation.violations
            if not (target == "rejected" and v.code is ViolationCode.PRECONDITION_FAILED)
        ]
        out.append({
            "target_state": target,
            "allowed": not blocking,
            "errors": [v.message for v in blocking],
            "requires_reason": target == "rejected",
        })
    return out


def recompute_urgency(inspection_id: int, actor: ActorContext | None = None) -> UrgencyResult:
    """Re-score an inspection and store the result if it changed (version + 1).

    Without an actor (maintenance jobs) the load is not shop-scoped and no
    read permission is checked.
    """
    if actor is not None:
        inspection = load_inspection(inspection_id, actor.shop_id)
        ensure_can_read(actor, inspection)
    else:
        inspection = db.session.get(Inspection, inspection_id)
        if inspection is None or inspection.is_deleted:
            raise NotFoundError(resource="Inspection", resource_id=inspection_id)
    rules = business_rules.load_active_rules(inspection.shop_id)
    urgency = _urgency_for(inspection, rules)
    if urgency.level == inspection.urgency_level and urgency.score == inspection.urgency_score:
        return urgency

    read_version = inspection.version
    try:
        applied = versioned_update(
            inspection_id, read_version,
            urgency_level=urgency.level, urgency_score=urgency.score,
        )
        if applied:
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Urgency update failed for inspection %s", inspection_id)
        raise PersistenceError("Urgency could not be saved; please retry") from exc
    if not applied:
        db.session.rollback()
        raise ConcurrencyConflictError(inspection_id, read_version, current_version(inspection_id))
    db.session.refresh(inspection)
    return urgency


def get_history(inspection_id: int, actor: ActorContext) -> list[StateTransitionRecord]:
    """Accepted transitions for one inspection, oldest first."""
    inspection = load_inspection(inspection_id, actor.shop_id)
    ensure_can_read(actor, inspection)
    return (
        StateTransitionRecord.query
        .filter_by(inspection_id=inspection_id)
        .order_by(StateTransitionRecord.changed_at, StateTransitionRecord.id)
        .all()
    )


def list_by_state(shop_id: int, state: str, limit: int = 50) -> list[Inspection]:
    """Live inspections of a shop in ``state``, longest-waiting first."""
    if state not in WORKFLOW_STATES:
        raise ValidationError(f"Unknown workflow state '{state}'", details={"states": list(WORKFLOW_STATES)})
    limit = max(1, min(int(limit), 200))
    return (
        Inspection.query_active()
        .filter(Inspection.shop_id == shop_id, Inspection.workflow_state == state)
        .order_by(Inspection.state_changed_at, Inspection.id)
        .limit(limit)
        .all()
    )


# (from_state, to_state) pairs behind each headline count
_STAT_EDGES = {
    "started": ("draft", "in_progress"),
    "submitted": ("in_progress", "pending_review"),
    "approved": ("pending_review", "approved"),
    "rejected": ("pending_review", "rejected"),
    "reworked": ("rejected", "in_progress"),
    "sent": ("approved", "sent_to_customer"),
    "completed": ("sent_to_customer", "completed"),
}


def workflow_statistics(shop_id: int, days: int = 30) -> dict:
    """Transition counts over the last ``days`` plus current per-state totals.

    Each count is keyed on its edge, so a rework (rejected -> in_progress) is
    not counted as a start. ``avg_completion_hours`` averages, over
    completions in the window, the time since the inspection's first
    draft -> in_progress move; None when nothing completed.
    """
    if days < 1:
        raise ValidationError("days must be at least 1", details={"days": days})
    since = datetime.now(timezone.utc) - timedelta(days=days)

    rows = (
        db.session.query(
            StateTransitionRecord.from_state,
            StateTransitionRecord.to_state,
            func.count(StateTransitionRecord.id),
        )
        .filter(StateTransitionRecord.shop_id == shop_id, StateTransitionRecord.changed_at >= since)
        .group_by(StateTransitionRecord.from_state, StateTransitionRecord.to_state)
        .all()
    )
    by_edge = {(src, dst): count for src, dst, count in rows}

    completions = (
        db.session.query(StateTransitionRecord.inspection_id, StateTransitionRecord.changed_at)
        .filter(
            StateTransitionRecord.shop_id == shop_id,
            StateTransitionRecord.to_state == "completed",
            StateTransitionRecord.changed_at >= since,
        )
        .all()
    )
    durations = []
    if completions:
        started_at = dict(
            db.session.query(StateTransitionRecord.inspection_id, func.min(StateTransitionRecord.changed_at))
            .filter(
                StateTransitionRecord.inspection_id.in_(sorted({c.inspection_id for c in completions})),
                StateTransitionRecord.from_state == "draft",
                StateTransitionRecord.to_state == "in_progress",
            )
            .group_by(StateTransitionRecord.inspection_id)
            .all()
        )
        for inspection_id, completed_at in completions:
            started = started_at.get(inspection_id)
            if started is not None:
                durations.append((_naive_utc(completed_at) - _naive_utc(started)).total_seconds() / 3600)

    current = (
        db.session.query(Inspection.workflow_state, func.count(Inspection.id))
        .filter(Inspection.shop_id == shop_id, Inspection.deleted_at.is_(None))
        .group_by(Inspection.workflow_state)
        .all()
    )
    by_state = {state: 0 for state in WORKFLOW_STATES}
    by_state.update(dict(current))

    stats = {"period_days": days, "total_transitions": sum(by_edge.values())}
    stats.update({name: by_edge.get(edge, 0) for name, edge in _STAT_EDGES.items()})
    stats["avg_completion_hours"] = round(sum(durations) / len(durations), 2) if durations else None
    stats["current"] = by_state
    return stats


def _naive_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; PostgreSQL aware ones
    return value.astimezone(timezone.utc).replace(tzinfo=None) if value.tzinfo else value


def purge_transition_history(older_than_days: int) -> int:
    """Retention job: delete history rows older than ``older_than_days``."""
    if older_than_days < 1:
        raise ValidationError("older_than_days must be at least 1", details={"days": older_than_days})
    cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
    try:
        deleted = (
            StateTransitionRecord.query
            .filter(StateTransitionRecord.changed_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError("History purge failed") from exc
    logger.info("Purged %d transition history rows older than %d days", deleted, older_than_days)
    return deleted


