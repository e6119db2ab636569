"""
Inspection service tests.

    - create (blank and from the default checklist), shop scoping of the
      vehicle / customer / technician references
    - item add / update / remove: urgency + cost recompute, version bump,
      payload validation, editable-state and permission gates
    - retirement (soft delete) and optimistic concurrency on item edits
"""

import pytest

from inspectflow.core.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from inspectflow.models import db
from inspectflow.models.audit import AuditLog
from inspectflow.models.inspection import Inspection, InspectionItem
from inspectflow.models.shop import Customer, Vehicle
from inspectflow.services import inspection_service as svc


def _reload(inspection_id):
    db.session.expire_all()
    return db.session.get(Inspection, inspection_id)


BRAKE_PADS = {"category": "Brakes", "component": "Front brake pads"}


# ═════════════════════════════════════════════════════════════════════════════
# 1. CREATE
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateInspection:
    def test_blank_inspection(self, actors, users, vehicle, customer):
        insp = svc.create_inspection(actors["mechanic"], vehicle_id=vehicle.id)

        assert insp.workflow_state == "draft"
        assert insp.version == 1
        assert insp.customer_id == customer.id
        assert insp.technician_id == users["mechanic"].id
        assert (insp.urgency_level, insp.urgency_score) == ("low", 0)
        assert insp.items == []
        log = AuditLog.query.filter_by(action="inspection.create").one()
        assert log.entity_id == str(insp.id)

    def test_from_template(self, actors):
        insp = svc.create_inspection(actors["mechanic"], use_template=True)

        assert len(insp.items) == 31
        assert all(i.condition is None for i in insp.items)
        by_component = {i.component: i for i in insp.items}
        assert by_component["Serpentine belt"].item_type == "belts_hoses"
        assert by_component["Front wipers"].item_type == "wipers"

    def test_manager_assigns_technician(self, actors, users):
        insp = svc.create_inspection(actors["shop_manager"], technician_id=users["mechanic"].id)
        assert insp.technician_id == users["mechanic"].id

    def test_viewer_cannot_create(self, actors):
        with pytest.raises(PermissionDeniedError):
            svc.create_inspection(actors["viewer"])

    def test_foreign_vehicle_not_found(self, actors, other_shop):
        foreign = Vehicle(shop_id=other_shop.id, make="Ford", model="Focus")
        db.session.add(foreign)
        db.session.commit()
        with pytest.raises(NotFoundError):
            svc.create_inspection(actors["mechanic"], vehicle_id=foreign.id)

    def test_foreign_customer_not_found(self, actors, other_shop):
        foreign = Customer(shop_id=other_shop.id, first_name="Sam")
        db.session.add(foreign)
        db.session.commit()
        with pytest.raises(NotFoundError):
            svc.create_inspection(actors["mechanic"], customer_id=foreign.id)

    def test_unknown_technician_not_found(self, actors):
        with pytest.raises(NotFoundError):
            svc.create_inspection(actors["shop_manager"], technician_id=424242)


# ═════════════════════════════════════════════════════════════════════════════
# 2. ITEMS
# ═════════════════════════════════════════════════════════════════════════════


class TestItems:
    def test_add_item_recomputes_urgency_and_cost(self, actors, make_inspection):
        insp = make_inspection("in_progress")

        item = svc.add_item(insp.id, actors["mechanic"], {
            **BRAKE_PADS,
            "condition": "needs_immediate",
            "measurements": {"pad_thickness_mm": 1.5},
            "estimated_cost": 289.99,
        })

        assert item.id is not None
        assert item.item_type == "brakes"
        assert item.requires_immediate_attention is True
        fresh = _reload(insp.id)
        assert (fresh.urgency_level, fresh.urgency_score) == ("critical", 95)
        assert fresh.estimated_cost == 289.99
        assert fresh.version == 2

    def test_update_item(self, actors, make_inspection):
        insp = make_inspection("in_progress", items=[{**BRAKE_PADS, "estimated_cost": 100.0}])
        item_id = insp.items[0].id

        item = svc.update_item(item_id, actors["mechanic"], {"condition": "good", "estimated_cost": 150})

        assert item.condition == "good"
        assert item.requires_immediate_attention is False
        fresh = _reload(insp.id)
        assert fresh.estimated_cost == 150.0
        assert fresh.version == 2

    def test_remove_item(self, actors, make_inspection):
        insp = make_inspection("draft", items=[
            {**BRAKE_PADS, "condition": "needs_immediate", "estimated_cost": 50.0},
            {"category": "Wipers", "component": "Front wipers", "condition": "good", "estimated_cost": 20.0},
        ])
        doomed = insp.items[0].id

        result = svc.remove_item(doomed, actors["mechanic"])

        assert result.version == 2
        assert result.urgency_level == "low"
        assert result.estimated_cost == 20.0
        assert db.session.get(InspectionItem, doomed) is None

    @pytest.mark.parametrize("payload,field", [
        ({"component": "Pads"}, "category"),
        ({**BRAKE_PADS, "component": "  "}, "component"),
        ({**BRAKE_PADS, "condition": "broken"}, "condition"),
        ({**BRAKE_PADS, "priority": 11}, "priority"),
        ({**BRAKE_PADS, "priority": True}, "priority"),
        ({**BRAKE_PADS, "estimated_cost": -5}, "estimated_cost"),
        ({**BRAKE_PADS, "measurements": [1, 2]}, "measurements"),
    ])
    def test_invalid_payload(self, actors, make_inspection, payload, field):
        insp = make_inspection("draft")
        with pytest.raises(ValidationError) as exc_info:
            svc.add_item(insp.id, actors["mechanic"], payload)
        assert field in exc_info.value.details
        assert _reload(insp.id).version == 1

    @pytest.mark.parametrize("state", ["pending_review", "approved", "sent_to_customer", "completed"])
    def test_items_frozen_outside_editable_states(self, actors, make_inspection, state):
        insp = make_inspection(state)
        with pytest.raises(ValidationError):
            svc.add_item(insp.id, actors["admin"], BRAKE_PADS)

    def test_items_editable_after_rejection(self, actors, make_inspection):
        insp = make_inspection("rejected")
        svc.add_item(insp.id, actors["mechanic"], BRAKE_PADS)
        assert len(_reload(insp.id).items) == 1

    def test_viewer_cannot_edit(self, actors, make_inspection):
        insp = make_inspection("draft")
        with pytest.raises(PermissionDeniedError) as exc_info:
            svc.add_item(insp.id, actors["viewer"], BRAKE_PADS)
        assert exc_info.value.permission == "items.create"

    def test_unassigned_mechanic_cannot_edit(self, actors, users, make_inspection):
        insp = make_inspection("draft", technician=users["admin"])
        with pytest.raises(PermissionDeniedError) as exc_info:
            svc.add_item(insp.id, actors["mechanic"], BRAKE_PADS)
        assert exc_info.value.permission == "inspections.update"

    def test_item_of_other_shop_not_found(self, actors, other_shop, make_inspection):
        insp = make_inspection("draft", shop_id=other_shop.id, items=[BRAKE_PADS])
        with pytest.raises(NotFoundError):
            svc.update_item(insp.items[0].id, actors["admin"], {"condition": "good"})

    def test_stale_expected_version(self, actors, make_inspection):
        insp = make_inspection("draft", items=[BRAKE_PADS])
        item_id = insp.items[0].id
        with pytest.raises(ConcurrencyConflictError):
            svc.update_item(item_id, actors["mechanic"], {"condition": "good"}, expected_version=7)
        assert db.session.get(InspectionItem, item_id).condition is None

    def test_each_edit_bumps_version_once(self, actors, make_inspection):
        insp = make_inspection("draft")
        for n in range(3):
            svc.add_item(insp.id, actors["mechanic"], {**BRAKE_PADS, "component": f"Pad {n}"},
                         expected_version=n + 1)
        assert _reload(insp.id).version == 4


# ═════════════════════════════════════════════════════════════════════════════
# 3. READ & RETIRE
# ═════════════════════════════════════════════════════════════════════════════


class TestReadAndRetire:
    def test_mechanic_reads_own(self, actors, make_inspection):
        insp = make_inspection("draft")
        assert svc.get_inspection(insp.id, actors["mechanic"]).id == insp.id

    def test_mechanic_cannot_read_others(self, actors, users, make_inspection):
        insp = make_inspection("draft", technician=users["admin"])
        with pytest.raises(PermissionDeniedError):
            svc.get_inspection(insp.id, actors["mechanic"])

    def test_retire(self, actors, make_inspection):
        insp = make_inspection("in_progress")

        retired = svc.retire_inspection(insp.id, actors["shop_manager"], expected_version=1)

        assert retired.deleted_at is not None
        assert retired.version == 2
        assert AuditLog.query.filter_by(action="inspection.retire").count() == 1
        with pytest.raises(NotFoundError):
            svc.get_inspection(insp.id, actors["shop_manager"])

    def test_mechanic_cannot_retire(self, actors, make_inspection):
        insp = make_inspection("draft")
        with pytest.raises(PermissionDeniedError):
            svc.retire_inspection(insp.id, actors["mechanic"])

    def test_retire_stale_version(self, actors, make_inspection):
        insp = make_inspection("draft")
        with pytest.raises(ConcurrencyConflictError):
            svc.retire_inspection(insp.id, actors["admin"], expected_version=3)
        assert _reload(insp.id).deleted_at is None
