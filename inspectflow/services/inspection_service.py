"""
Inspection Service — inspection creation, item edits and retirement.

Every item mutation recomputes urgency and estimated cost and bumps the
inspection ``version`` exactly once, through the same conditional
``UPDATE … WHERE version = :read`` the workflow engine uses. A stale write
raises ConcurrencyConflictError; any store error rolls back and raises
PersistenceError.

``workflow_state`` is never written here; state changes belong to
``workflow_service.request_transition``.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from inspectflow.core.actor import ActorContext
from inspectflow.core.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceError,
    ValidationError,
)
from inspectflow.models import db
from inspectflow.models.audit import write_audit
from inspectflow.models.inspection import (
    EDITABLE_STATES,
    INITIAL_STATE,
    ITEM_CONDITIONS,
    Inspection,
    InspectionItem,
)
from inspectflow.models.shop import Customer, User, Vehicle
from inspectflow.services import business_rules, permission_service
from inspectflow.services.urgency import item_type_for_category, score_inspection

logger = logging.getLogger(__name__)

# Default checklist used when an inspection is started from the template
DEFAULT_TEMPLATE = {
    "Brakes": [
        "Front brake pads", "Rear brake pads", "Front rotors", "Rear rotors",
        "Brake fluid", "Brake lines", "Calipers",
    ],
    "Tires": [
        "Front left tire", "Front right tire", "Rear left tire", "Rear right tire", "Spare tire",
    ],
    "Fluids": [
        "Engine oil", "Transmission fluid", "Coolant", "Power steering fluid", "Washer fluid",
    ],
    "Filters": ["Engine air filter", "Cabin air filter", "Fuel filter"],
    "Battery": ["Battery", "Battery terminals"],
    "Lights": ["Headlights", "Brake lights", "Turn signals", "Reverse lights"],
    "Wipers": ["Front wipers", "Rear wiper"],
    "Belts & Hoses": ["Serpentine belt", "Timing belt", "Radiator hoses"],
}

_ITEM_FIELDS = (
    "category", "component", "item_type", "condition", "measurements",
    "priority", "estimated_cost", "notes",
)


# ── Loading & access ─────────────────────────────────────────────────────


def load_inspection(inspection_id: int, shop_id: int) -> Inspection:
    """Shop-scoped load of a live inspection. Retired and foreign rows are NotFound."""
    inspection = db.session.get(Inspection, inspection_id)
    if inspection is None or inspection.shop_id != shop_id or inspection.is_deleted:
        raise NotFoundError(resource="Inspection", resource_id=inspection_id, shop_id=shop_id)
    return inspection


def ensure_can_read(actor: ActorContext, inspection: Inspection) -> None:
    ctx = {"shop_id": inspection.shop_id, "owner_id": inspection.technician_id}
    if not permission_service.check_permission(actor, "inspections", "read", ctx):
        raise PermissionDeniedError("inspections.read")


def get_inspection(inspection_id: int, actor: ActorContext) -> Inspection:
    inspection = load_inspection(inspection_id, actor.shop_id)
    ensure_can_read(actor, inspection)
    return inspection


def _ensure_can_edit_items(actor: ActorContext, inspection: Inspection, action: str) -> None:
    codename = f"items.{action}"
    if not permission_service.has_permission(actor, codename):
        raise PermissionDeniedError(codename)
    ctx = {"shop_id": inspection.shop_id, "owner_id": inspection.technician_id}
    if not permission_service.check_permission(actor, "inspections", "update", ctx):
        raise PermissionDeniedError("inspections.update")


def _ensure_editable(inspection: Inspection) -> None:
    if inspection.workflow_state not in EDITABLE_STATES:
        raise ValidationError(
            f"Items cannot be changed while the inspection is '{inspection.workflow_state}'",
            details={"workflow_state": inspection.workflow_state, "editable_states": sorted(EDITABLE_STATES)},
        )


def _check_expected_version(inspection: Inspection, expected_version: int | None) -> None:
    if expected_version is not None and expected_version != inspection.version:
        actual = inspection.version
        db.session.rollback()
        raise ConcurrencyConflictError(inspection.id, expected_version, actual)


# ── Versioned writes ─────────────────────────────────────────────────────


def versioned_update(inspection_id: int, read_version: int, **values) -> bool:
    """Conditionally update one inspection and bump its version.

    Returns False when the row's version no longer equals ``read_version``
    (nothing is written). Does not commit.
    """
    now = datetime.now(timezone.utc)
    result = db.session.execute(
        update(Inspection)
        .where(Inspection.id == inspection_id, Inspection.version == read_version)
        .values(version=Inspection.version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def current_version(inspection_id: int) -> int | None:
    return db.session.query(Inspection.version).filter(Inspection.id == inspection_id).scalar()


def _commit_item_change(inspection: Inspection, read_version: int, event: str) -> Inspection:
    """Recompute urgency + cost from the in-memory item list, bump version, commit."""
    items = list(inspection.items)
    rules = business_rules.load_active_rules(inspection.shop_id)
    urgency = score_inspection(items, business_rules.resolve_thresholds(rules))
    total_cost = round(sum(i.estimated_cost or 0 for i in items), 2)
    try:
        applied = versioned_update(
            inspection.id,
            read_version,
            urgency_level=urgency.level,
            urgency_score=urgency.score,
            estimated_cost=total_cost,
        )
        if applied:
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception(
            "Item change failed for inspection %s", inspection.id,
            extra={"shop_id": inspection.shop_id, "event_type": event},
        )
        raise PersistenceError("Inspection update failed; please retry") from exc
    if not applied:
        db.session.rollback()
        raise ConcurrencyConflictError(inspection.id, read_version, current_version(inspection.id))

    db.session.refresh(inspection)
    logger.info(
        "%s on inspection %s -> urgency=%s v%s", event, inspection.id,
        inspection.urgency_level, inspection.version,
        extra={"shop_id": inspection.shop_id, "event_type": event},
    )
    return inspection


# ── Item payloads ────────────────────────────────────────────────────────


def _clean_item_data(data: dict, *, creating: bool) -> dict:
    cleaned = {k: data[k] for k in _ITEM_FIELDS if k in data}
    errors = {}

    for key in ("category", "component"):
        if creating or key in cleaned:
            raw = cleaned.get(key)
            value = raw.strip() if isinstance(raw, str) else ""
            if not value:
                errors[key] = "required"
            else:
                cleaned[key] = value

    if "condition" in cleaned and cleaned["condition"] not in (None, *ITEM_CONDITIONS):
        errors["condition"] = f"must be one of {list(ITEM_CONDITIONS)}"

    if "priority" in cleaned:
        p = cleaned["priority"]
        if isinstance(p, bool) or not isinstance(p, int) or not 1 <= p <= 10:
            errors["priority"] = "must be an integer between 1 and 10"

    if "estimated_cost" in cleaned:
        c = cleaned["estimated_cost"]
        if c is None:
            cleaned["estimated_cost"] = 0.0
        elif isinstance(c, bool) or not isinstance(c, (int, float)) or c < 0:
            errors["estimated_cost"] = "must be a non-negative number"
        else:
            cleaned["estimated_cost"] = float(c)

    if "measurements" in cleaned:
        m = cleaned["measurements"]
        if m is None:
            cleaned["measurements"] = {}
        elif not isinstance(m, dict):
            errors["measurements"] = "must be an object of name -> number"

    if errors:
        raise ValidationError("Invalid inspection item", details=errors)
    return cleaned


def _apply_item_fields(item: InspectionItem, cleaned: dict) -> None:
    for key, value in cleaned.items():
        setattr(item, key, value)
    if not item.item_type:
        item.item_type = item_type_for_category(item.category)
    item.requires_immediate_attention = item.condition == "needs_immediate"


# ── Inspections ──────────────────────────────────────────────────────────


def create_inspection(
    actor: ActorContext,
    vehicle_id: int | None = None,
    customer_id: int | None = None,
    technician_id: int | None = None,
    use_template: bool = False,
) -> Inspection:
    """Start an inspection in ``draft`` (version 1), optionally from the default checklist."""
    if not permission_service.has_permission(actor, "inspections.create"):
        raise PermissionDeniedError("inspections.create")

    vehicle = None
    if vehicle_id is not None:
        vehicle = db.session.get(Vehicle, vehicle_id)
        if vehicle is None or vehicle.shop_id != actor.shop_id:
            raise NotFoundError(resource="Vehicle", resource_id=vehicle_id, shop_id=actor.shop_id)
    if customer_id is None and vehicle is not None:
        customer_id = vehicle.customer_id
    if customer_id is not None:
        customer = db.session.get(Customer, customer_id)
        if customer is None or customer.shop_id != actor.shop_id:
            raise NotFoundError(resource="Customer", resource_id=customer_id, shop_id=actor.shop_id)

    technician_id = technician_id if technician_id is not None else actor.user_id
    technician = db.session.get(User, technician_id)
    if technician is None or technician.shop_id != actor.shop_id:
        raise NotFoundError(resource="User", resource_id=technician_id, shop_id=actor.shop_id)

    inspection = Inspection(
        shop_id=actor.shop_id,
        vehicle_id=vehicle_id,
        customer_id=customer_id,
        technician_id=technician_id,
        workflow_state=INITIAL_STATE,
        state_changed_by=actor.user_id,
        version=1,
    )
    if use_template:
        for category, components in DEFAULT_TEMPLATE.items():
            for component in components:
                inspection.items.append(InspectionItem(
                    category=category,
                    component=component,
                    item_type=item_type_for_category(category),
                    measurements={},
                ))
    rules = business_rules.load_active_rules(actor.shop_id)
    urgency = score_inspection(inspection.items, business_rules.resolve_thresholds(rules))
    inspection.urgency_level = urgency.level
    inspection.urgency_score = urgency.score

    db.session.add(inspection)
    try:
        db.session.flush()
        write_audit(
            entity_type="inspection",
            entity_id=inspection.id,
            action="inspection.create",
            shop_id=actor.shop_id,
            actor_user_id=actor.user_id,
            diff={"technician_id": technician_id, "items": len(inspection.items), "template": use_template},
        )
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Inspection create failed", extra={"shop_id": actor.shop_id})
        raise PersistenceError("Inspection could not be created; please retry") from exc

    logger.info(
        "Inspection %s created by user %s", inspection.id, actor.user_id,
        extra={"shop_id": actor.shop_id, "event_type": "inspection_created"},
    )
    return inspection


def retire_inspection(inspection_id: int, actor: ActorContext, expected_version: int | None = None) -> Inspection:
    """Soft-delete an inspection. History rows are kept."""
    inspection = load_inspection(inspection_id, actor.shop_id)
    if not permission_service.has_permission(actor, "inspections.delete"):
        raise PermissionDeniedError("inspections.delete")
    _check_expected_version(inspection, expected_version)

    read_version = inspection.version
    try:
        applied = versioned_update(inspection.id, read_version, deleted_at=datetime.now(timezone.utc))
        if applied:
            write_audit(
                entity_type="inspection",
                entity_id=inspection.id,
                action="inspection.retire",
                shop_id=actor.shop_id,
                actor_user_id=actor.user_id,
                diff={"workflow_state": inspection.workflow_state, "version": read_version},
            )
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Inspection retire failed", extra={"shop_id": actor.shop_id})
        raise PersistenceError("Inspection could not be retired; please retry") from exc
    if not applied:
        db.session.rollback()
        raise ConcurrencyConflictError(inspection.id, read_version, current_version(inspection.id))
    db.session.refresh(inspection)
    return inspection


# ── Items ────────────────────────────────────────────────────────────────


def _load_item(item_id: int, actor: ActorContext) -> InspectionItem:
    item = db.session.get(InspectionItem, item_id)
    if item is None:
        raise NotFoundError(resource="InspectionItem", resource_id=item_id, shop_id=actor.shop_id)
    try:
        load_inspection(item.inspection_id, actor.shop_id)
    except NotFoundError:
        raise NotFoundError(resource="InspectionItem", resource_id=item_id, shop_id=actor.shop_id) from None
    return item


def add_item(
    inspection_id: int,
    actor: ActorContext,
    data: dict,
    expected_version: int | None = None,
) -> InspectionItem:
    inspection = load_inspection(inspection_id, actor.shop_id)
    _ensure_can_edit_items(actor, inspection, "create")
    _ensure_editable(inspection)
    _check_expected_version(inspection, expected_version)
    cleaned = _clean_item_data(data, creating=True)

    read_version = inspection.version
    item = InspectionItem(measurements={}, priority=1, estimated_cost=0.0)
    _apply_item_fields(item, cleaned)
    inspection.items.append(item)
    _commit_item_change(inspection, read_version, "item_added")
    return item


def update_item(
    item_id: int,
    actor: ActorContext,
    data: dict,
    expected_version: int | None = None,
) -> InspectionItem:
    item = _load_item(item_id, actor)
    inspection = item.inspection
    _ensure_can_edit_items(actor, inspection, "update")
    _ensure_editable(inspection)
    _check_expected_version(inspection, expected_version)
    cleaned = _clean_item_data(data, creating=False)

    read_version = inspection.version
    _apply_item_fields(item, cleaned)
    _commit_item_change(inspection, read_version, "item_updated")
    return item


def remove_item(item_id: int, actor: ActorContext, expected_version: int | None = None) -> Inspection:
    item = _load_item(item_id, actor)
    inspection = item.inspection
    _ensure_can_edit_items(actor, inspection, "delete")
    _ensure_editable(inspection)
    _check_expected_version(inspection, expected_version)

    read_version = inspection.version
    inspection.items.remove(item)
    return _commit_item_change(inspection, read_version, "item_removed")
