"""
Workflow engine tests.

    - accepted transitions: state, version, history row, urgency snapshot
    - rejections write nothing (permission denials are audited)
    - safety override, rejection reason, customer phone, resend no-op
    - optimistic concurrency: stale expected_version and a competing write
      between read and conditional update
    - store failure -> PersistenceError with nothing written
    - rule-driven automatic transitions and their bound
    - queries: available transitions, history, queue, statistics, retention
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from inspectflow.core.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from inspectflow.models import db
from inspectflow.models.audit import AuditLog
from inspectflow.models.inspection import Inspection, StateTransitionRecord
from inspectflow.models.rules import BusinessRule
from inspectflow.services import business_rules, workflow_service
from inspectflow.services.workflow_service import request_transition

ASSESSED_ITEMS = [
    {"category": "Brakes", "component": "Front brake pads", "condition": "good",
     "measurements": {"pad_thickness_mm": 8}},
    {"category": "Tires", "component": "Front left tire", "condition": "fair",
     "measurements": {"tread_depth_32nds": 7}},
]

CRITICAL_ITEMS = ASSESSED_ITEMS + [
    {"category": "Brakes", "component": "Rear brake pads", "condition": "needs_immediate"},
]


def _history(inspection_id):
    return (
        StateTransitionRecord.query
        .filter_by(inspection_id=inspection_id)
        .order_by(StateTransitionRecord.id)
        .all()
    )


def _reload(inspection_id):
    db.session.expire_all()
    return db.session.get(Inspection, inspection_id)


def _advance_rule(name, from_state, to_state, priority=50, shop_id=None):
    rule = BusinessRule(
        shop_id=shop_id,
        rule_name=name,
        rule_type="state_transition",
        conditions={"from_states": [from_state]},
        actions={"kind": "advance", "to_state": to_state},
        priority=priority,
        is_active=True,
    )
    db.session.add(rule)
    db.session.commit()
    return rule


# ═════════════════════════════════════════════════════════════════════════════
# 1. ACCEPTED TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestAcceptedTransitions:
    def test_assigned_mechanic_starts_inspection(self, actors, users, make_inspection):
        insp = make_inspection("draft", items=ASSESSED_ITEMS)

        result = request_transition(insp.id, "in_progress", actors["mechanic"])

        assert result.success is True
        assert result.changed is True
        assert result.new_state == "in_progress"
        fresh = _reload(insp.id)
        assert fresh.workflow_state == "in_progress"
        assert fresh.previous_state == "draft"
        assert fresh.state_changed_by == users["mechanic"].id
        assert fresh.version == 2

        [record] = _history(insp.id)
        assert (record.from_state, record.to_state) == ("draft", "in_progress")
        assert record.changed_by == users["mechanic"].id
        assert record.validation_passed is True
        assert record.details["version"] == 2
        assert record.details["automatic"] is False

    def test_urgency_is_stored_with_the_move(self, actors, make_inspection):
        insp = make_inspection("draft", items=CRITICAL_ITEMS)

        result = request_transition(insp.id, "in_progress", actors["admin"])

        assert result.urgency.level == "critical"
        fresh = _reload(insp.id)
        assert (fresh.urgency_level, fresh.urgency_score) == ("critical", 95)
        assert _history(insp.id)[0].details["urgency_level"] == "critical"

    def test_full_lifecycle(self, actors, make_inspection):
        insp = make_inspection("draft", items=ASSESSED_ITEMS)
        mech, mgr = actors["mechanic"], actors["shop_manager"]

        assert request_transition(insp.id, "in_progress", mech).success
        assert request_transition(insp.id, "pending_review", mech).success
        assert request_transition(insp.id, "rejected", mgr, reason="Re-measure tread").success
        assert request_transition(insp.id, "in_progress", mech).success
        assert request_transition(insp.id, "pending_review", mech).success
        assert request_transition(insp.id, "approved", mgr).success
        assert request_transition(insp.id, "sent_to_customer", mgr).success
        assert request_transition(insp.id, "completed", mgr).success

        fresh = _reload(insp.id)
        assert fresh.workflow_state == "completed"
        assert fresh.version == 9
        records = _history(insp.id)
        assert [r.to_state for r in records] == [
            "in_progress", "pending_review", "rejected", "in_progress",
            "pending_review", "approved", "sent_to_customer", "completed",
        ]
        assert records[2].reason == "Re-measure tread"
        assert [r.details["version"] for r in records] == list(range(2, 10))

    def test_expected_version_match(self, actors, make_inspection):
        insp = make_inspection("draft")
        assert request_transition(insp.id, "in_progress", actors["admin"], expected_version=1).success


# ═════════════════════════════════════════════════════════════════════════════
# 2. REJECTIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestRejections:
    def test_illegal_transition_writes_nothing(self, actors, make_inspection):
        insp = make_inspection("draft")

        result = request_transition(insp.id, "approved", actors["admin"])

        assert result.success is False
        assert result.changed is False
        assert result.new_state == "draft"
        assert result.error_messages == ["Illegal transition from 'draft' to 'approved'"]
        fresh = _reload(insp.id)
        assert (fresh.workflow_state, fresh.version) == ("draft", 1)
        assert _history(insp.id) == []
        assert AuditLog.query.filter_by(action="inspection.transition_denied").count() == 0

    def test_permission_denial_is_audited(self, actors, users, make_inspection):
        insp = make_inspection("draft")

        result = request_transition(insp.id, "in_progress", actors["viewer"])

        assert result.success is False
        assert result.errors[0]["code"] == "PERMISSION_DENIED"
        assert _history(insp.id) == []
        log = AuditLog.query.filter_by(action="inspection.transition_denied").one()
        assert log.entity_id == str(insp.id)
        assert log.actor_user_id == users["viewer"].id
        assert log.diff == {"from_state": "draft", "to_state": "in_progress", "required": ["inspections.update"]}

    def test_unassigned_mechanic_denied(self, actors, users, make_inspection):
        insp = make_inspection("draft", technician=users["admin"])
        result = request_transition(insp.id, "in_progress", actors["mechanic"])
        assert result.error_messages == ["Missing permission: inspections.update"]

    def test_critical_item_blocks_manager_approval(self, actors, make_inspection):
        insp = make_inspection("pending_review", items=CRITICAL_ITEMS)

        result = request_transition(insp.id, "approved", actors["shop_manager"])

        assert result.success is False
        assert [e["code"] for e in result.errors] == ["SAFETY_BLOCKED"]
        assert _reload(insp.id).workflow_state == "pending_review"

    def test_admin_overrides_safety_block(self, actors, make_inspection):
        insp = make_inspection("pending_review", items=CRITICAL_ITEMS)
        assert request_transition(insp.id, "approved", actors["admin"]).success
        assert _reload(insp.id).workflow_state == "approved"

    def test_rejection_requires_reason(self, actors, make_inspection):
        insp = make_inspection("pending_review", items=ASSESSED_ITEMS)
        result = request_transition(insp.id, "rejected", actors["shop_manager"], reason="  ")
        assert result.error_messages == ["Rejection reason is required"]

    def test_send_requires_customer_phone(self, actors, make_inspection):
        insp = make_inspection("approved", items=ASSESSED_ITEMS, customer_id=None)
        result = request_transition(insp.id, "sent_to_customer", actors["shop_manager"])
        assert result.error_messages == ["Customer must have a phone number to send inspection results"]

    def test_active_validation_rule_blocks(self, actors, make_inspection):
        db.session.add(BusinessRule(
            shop_id=None, rule_name="Three Items Minimum", rule_type="validation",
            conditions={"target_states": ["pending_review"],
                        "when": [{"kind": "min_items", "value": 3, "not": True}]},
            actions={"kind": "block", "message": "At least three items are required"},
            priority=10, is_active=True,
        ))
        db.session.commit()
        insp = make_inspection("in_progress", items=ASSESSED_ITEMS)

        result = request_transition(insp.id, "pending_review", actors["mechanic"])

        assert result.error_messages == ["At least three items are required"]
        assert result.errors[0]["details"]["rule"] == "Three Items Minimum"


class TestResend:
    def test_resend_is_idempotent_success(self, actors, make_inspection):
        insp = make_inspection("sent_to_customer", items=ASSESSED_ITEMS)

        result = request_transition(insp.id, "sent_to_customer", actors["shop_manager"])

        assert result.success is True
        assert result.changed is False
        assert result.new_state == "sent_to_customer"
        assert _reload(insp.id).version == 1
        assert _history(insp.id) == []

    def test_resend_still_needs_send_permission(self, actors, make_inspection):
        insp = make_inspection("sent_to_customer")
        assert request_transition(insp.id, "sent_to_customer", actors["viewer"]).success is False


# ═════════════════════════════════════════════════════════════════════════════
# 3. NOT FOUND / CONCURRENCY / PERSISTENCE
# ═════════════════════════════════════════════════════════════════════════════


class TestFailures:
    def test_other_shop_is_not_found(self, actors, other_shop, make_inspection):
        insp = make_inspection("draft", shop_id=other_shop.id)
        with pytest.raises(NotFoundError):
            request_transition(insp.id, "in_progress", actors["admin"])

    def test_retired_is_not_found(self, actors, make_inspection):
        insp = make_inspection("draft", deleted_at=datetime.now(timezone.utc))
        with pytest.raises(NotFoundError):
            request_transition(insp.id, "in_progress", actors["admin"])

    def test_missing_is_not_found(self, actors):
        with pytest.raises(NotFoundError):
            request_transition(999999, "in_progress", actors["admin"])

    def test_stale_expected_version(self, actors, make_inspection):
        insp = make_inspection("draft")

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            request_transition(insp.id, "in_progress", actors["admin"], expected_version=0)

        assert (exc_info.value.expected_version, exc_info.value.actual_version) == (0, 1)
        assert _reload(insp.id).workflow_state == "draft"
        assert _history(insp.id) == []

    def test_competing_write_between_read_and_update(self, monkeypatch, actors, make_inspection):
        insp = make_inspection("draft", items=ASSESSED_ITEMS)
        insp_id = insp.id
        real_score = workflow_service.score_inspection
        raced = []

        def _racing_score(items, thresholds=None):
            if not raced:
                raced.append(True)
                db.session.execute(
                    update(Inspection)
                    .where(Inspection.id == insp_id)
                    .values(version=Inspection.version + 1)
                )
                db.session.commit()
            return real_score(items, thresholds)

        monkeypatch.setattr(workflow_service, "score_inspection", _racing_score)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            request_transition(insp_id, "in_progress", actors["admin"])

        assert (exc_info.value.expected_version, exc_info.value.actual_version) == (1, 2)
        fresh = _reload(insp_id)
        assert (fresh.workflow_state, fresh.version) == ("draft", 2)
        assert _history(insp_id) == []

    def test_store_failure_is_persistence_error(self, monkeypatch, actors, make_inspection):
        insp = make_inspection("draft")

        def _boom(*args, **kwargs):
            raise OperationalError("UPDATE inspections", {}, Exception("database is locked"))

        monkeypatch.setattr(workflow_service, "versioned_update", _boom)

        with pytest.raises(PersistenceError):
            request_transition(insp.id, "in_progress", actors["admin"])

        fresh = _reload(insp.id)
        assert (fresh.workflow_state, fresh.version) == ("draft", 1)
        assert _history(insp.id) == []


# ═════════════════════════════════════════════════════════════════════════════
# 4. AUTOMATIC TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════


class TestAutomaticTransitions:
    def test_auto_submit_when_all_items_assessed(self, actors, make_inspection):
        business_rules.seed_default_rules()
        insp = make_inspection("draft", items=ASSESSED_ITEMS)

        result = request_transition(insp.id, "in_progress", actors["mechanic"])

        assert result.success is True
        assert result.new_state == "pending_review"
        assert result.automatic_transitions == [{
            "rule": "Auto Submit After All Items",
            "from_state": "in_progress",
            "to_state": "pending_review",
            "applied": True,
            "errors": [],
        }]
        fresh = _reload(insp.id)
        assert (fresh.workflow_state, fresh.version) == ("pending_review", 3)
        records = _history(insp.id)
        assert [r.to_state for r in records] == ["in_progress", "pending_review"]
        assert records[1].details["automatic"] is True
        assert records[1].details["rule"] == "Auto Submit After All Items"
        assert records[1].reason == "Automatic: Auto Submit After All Items"

    def test_no_auto_submit_with_unassessed_items(self, actors, make_inspection):
        business_rules.seed_default_rules()
        insp = make_inspection("draft", items=ASSESSED_ITEMS + [{"category": "Wipers", "component": "Front wipers"}])

        result = request_transition(insp.id, "in_progress", actors["mechanic"])

        assert result.new_state == "in_progress"
        assert result.automatic_transitions == []

    def test_chain_is_bounded(self, app, monkeypatch, actors, make_inspection):
        business_rules.seed_default_rules()
        _advance_rule("Auto Approve", "pending_review", "approved")
        monkeypatch.setitem(app.config, "MAX_AUTO_TRANSITIONS", 1)
        insp = make_inspection("draft", items=ASSESSED_ITEMS)

        result = request_transition(insp.id, "in_progress", actors["admin"])

        assert [h["to_state"] for h in result.automatic_transitions] == ["pending_review"]
        assert _reload(insp.id).workflow_state == "pending_review"

    def test_chain_continues_under_limit(self, actors, make_inspection):
        business_rules.seed_default_rules()
        _advance_rule("Auto Approve", "pending_review", "approved")
        insp = make_inspection("draft", items=ASSESSED_ITEMS)

        result = request_transition(insp.id, "in_progress", actors["admin"])

        assert [h["to_state"] for h in result.automatic_transitions] == ["pending_review", "approved"]
        assert result.new_state == "approved"
        assert _reload(insp.id).version == 4

    def test_rejected_hop_is_reported_not_audited(self, actors, make_inspection):
        business_rules.seed_default_rules()
        _advance_rule("Auto Approve", "pending_review", "approved")
        insp = make_inspection("draft", items=ASSESSED_ITEMS)

        result = request_transition(insp.id, "in_progress", actors["mechanic"])

        assert result.success is True
        assert result.new_state == "pending_review"
        last = result.automatic_transitions[-1]
        assert last["applied"] is False
        assert last["errors"] == ["Missing permission: inspections.approve"]
        assert AuditLog.query.filter_by(action="inspection.transition_denied").count() == 0

    def test_no_hops_after_rejected_request(self, actors, make_inspection):
        business_rules.seed_default_rules()
        insp = make_inspection("draft", items=ASSESSED_ITEMS)
        result = request_transition(insp.id, "in_progress", actors["viewer"])
        assert result.automatic_transitions == []


# ═════════════════════════════════════════════════════════════════════════════
# 5. QUERIES
# ═════════════════════════════════════════════════════════════════════════════


class TestAvailableTransitions:
    def test_manager_in_review(self, actors, make_inspection):
        insp = make_inspection("pending_review", items=ASSESSED_ITEMS)
        options = workflow_service.get_available_transitions(insp.id, actors["shop_manager"])
        assert options == [
            {"target_state": "approved", "allowed": True, "errors": [], "requires_reason": False},
            {"target_state": "rejected", "allowed": True, "errors": [], "requires_reason": True},
        ]

    def test_mechanic_in_review(self, actors, make_inspection):
        insp = make_inspection("pending_review", items=ASSESSED_ITEMS)
        options = workflow_service.get_available_transitions(insp.id, actors["mechanic"])
        assert [o["allowed"] for o in options] == [False, False]
        assert options[0]["errors"] == ["Missing permission: inspections.approve"]

    def test_terminal_state_has_none(self, actors, make_inspection):
        insp = make_inspection("completed")
        assert workflow_service.get_available_transitions(insp.id, actors["admin"]) == []

    def test_read_permission_required(self, actors, users, make_inspection):
        insp = make_inspection("draft", technician=users["admin"])
        with pytest.raises(PermissionDeniedError):
            workflow_service.get_available_transitions(insp.id, actors["mechanic"])


class TestRecomputeUrgency:
    def test_writes_when_changed(self, actors, make_inspection):
        insp = make_inspection("in_progress", items=CRITICAL_ITEMS)

        urgency = workflow_service.recompute_urgency(insp.id, actors["viewer"])

        assert (urgency.level, urgency.score) == ("critical", 95)
        fresh = _reload(insp.id)
        assert (fresh.urgency_level, fresh.version) == ("critical", 2)

    def test_no_write_when_unchanged(self, actors, make_inspection):
        insp = make_inspection("in_progress")
        urgency = workflow_service.recompute_urgency(insp.id, actors["viewer"])
        assert urgency.level == "low"
        assert _reload(insp.id).version == 1

    def test_without_actor(self, other_shop, make_inspection):
        insp = make_inspection("in_progress", items=CRITICAL_ITEMS, shop_id=other_shop.id)
        assert workflow_service.recompute_urgency(insp.id).level == "critical"

    def test_calculation_rule_thresholds_apply(self, actors, shop, make_inspection):
        db.session.add(BusinessRule(
            shop_id=shop.id, rule_name="Strict Urgency", rule_type="calculation",
            conditions={}, actions={"kind": "thresholds", "critical": 50, "high": 40, "normal": 20},
            priority=1, is_active=True,
        ))
        db.session.commit()
        insp = make_inspection("in_progress", items=[
            {"category": "Tires", "component": "Front left tire", "condition": "fair"},
        ])
        # 52 is critical under these thresholds
        assert workflow_service.recompute_urgency(insp.id, actors["admin"]).level == "critical"


class TestHistoryAndQueues:
    def test_history_oldest_first(self, actors, make_inspection):
        insp = make_inspection("draft", items=ASSESSED_ITEMS)
        request_transition(insp.id, "in_progress", actors["admin"])
        request_transition(insp.id, "pending_review", actors["admin"])

        history = workflow_service.get_history(insp.id, actors["viewer"])

        assert [(h.from_state, h.to_state) for h in history] == [
            ("draft", "in_progress"), ("in_progress", "pending_review"),
        ]

    def test_history_survives_retirement(self, actors, make_inspection):
        from inspectflow.services.inspection_service import retire_inspection
        insp = make_inspection("draft")
        request_transition(insp.id, "in_progress", actors["admin"])
        retire_inspection(insp.id, actors["admin"])
        assert len(_history(insp.id)) == 1

    def test_list_by_state(self, shop, other_shop, make_inspection):
        a = make_inspection("pending_review")
        b = make_inspection("pending_review")
        make_inspection("draft")
        make_inspection("pending_review", deleted_at=datetime.now(timezone.utc))
        make_inspection("pending_review", shop_id=other_shop.id)

        queue = workflow_service.list_by_state(shop.id, "pending_review")

        assert {i.id for i in queue} == {a.id, b.id}
        assert len(workflow_service.list_by_state(shop.id, "pending_review", limit=1)) == 1

    def test_list_by_unknown_state(self, shop):
        with pytest.raises(ValidationError):
            workflow_service.list_by_state(shop.id, "parked")

    def test_statistics(self, shop, actors, make_inspection):
        one = make_inspection("draft", items=ASSESSED_ITEMS)
        two = make_inspection("draft", items=ASSESSED_ITEMS)
        for insp in (one, two):
            request_transition(insp.id, "in_progress", actors["admin"])
        request_transition(one.id, "pending_review", actors["admin"])
        request_transition(one.id, "approved", actors["admin"])

        stats = workflow_service.workflow_statistics(shop.id, days=7)

        assert stats["period_days"] == 7
        assert (stats["started"], stats["submitted"], stats["approved"], stats["rejected"]) == (2, 1, 1, 0)
        assert stats["current"]["approved"] == 1
        assert stats["current"]["in_progress"] == 1
        assert stats["current"]["draft"] == 0
        assert stats["total_transitions"] == 4
        assert stats["avg_completion_hours"] is None

    def test_statistics_rework_is_not_a_new_start(self, shop, actors, make_inspection):
        insp = make_inspection("draft", items=ASSESSED_ITEMS)
        request_transition(insp.id, "in_progress", actors["admin"])
        request_transition(insp.id, "pending_review", actors["admin"])
        request_transition(insp.id, "rejected", actors["admin"], reason="Photos missing")
        request_transition(insp.id, "in_progress", actors["admin"])
        request_transition(insp.id, "pending_review", actors["admin"])

        stats = workflow_service.workflow_statistics(shop.id)

        assert stats["started"] == 1
        assert stats["reworked"] == 1
        assert stats["submitted"] == 2
        assert stats["rejected"] == 1
        assert stats["total_transitions"] == 5

    def test_statistics_average_completion_hours(self, shop, make_inspection):
        now = datetime.now(timezone.utc)
        for started_hours_ago in (10, 6):
            insp = make_inspection("completed")
            for src, dst, hours_ago in (
                ("draft", "in_progress", started_hours_ago),
                ("sent_to_customer", "completed", 2),
            ):
                db.session.add(StateTransitionRecord(
                    inspection_id=insp.id, shop_id=shop.id, from_state=src, to_state=dst,
                    changed_at=now - timedelta(hours=hours_ago),
                ))
        db.session.commit()

        stats = workflow_service.workflow_statistics(shop.id)

        assert stats["completed"] == 2
        assert stats["avg_completion_hours"] == 6.0

    def test_statistics_rejects_bad_window(self, shop):
        with pytest.raises(ValidationError):
            workflow_service.workflow_statistics(shop.id, days=0)


class TestRetention:
    def test_purge_old_history(self, shop, actors, make_inspection):
        insp = make_inspection("draft")
        request_transition(insp.id, "in_progress", actors["admin"])
        db.session.add(StateTransitionRecord(
            inspection_id=insp.id, shop_id=shop.id,
            from_state="draft", to_state="in_progress",
            changed_at=datetime.now(timezone.utc) - timedelta(days=400),
        ))
        db.session.commit()

        assert workflow_service.purge_transition_history(365) == 1
        assert len(_history(insp.id)) == 1

    def test_purge_rejects_bad_window(self):
        with pytest.raises(ValidationError):
            workflow_service.purge_transition_history(0)
