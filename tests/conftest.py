"""
Shared pytest fixtures for the InspectFlow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse); seeds
      the default permission catalogue
    - client: Flask test client (function-scoped)
    - shop / other_shop, users, customer, vehicle: committed ORM rows
    - actors: ActorContext per role
    - make_inspection: factory that writes an inspection in any state
    - auth_headers: builds a Bearer header for a user

Factories COMMIT: engine operations roll back on rejection, which would
otherwise discard flushed-only arrange rows.
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from inspectflow import create_app
from inspectflow.core.actor import ActorContext
from inspectflow.models import db as _db
from inspectflow.models.inspection import Inspection, InspectionItem
from inspectflow.models.shop import Customer, Shop, User, Vehicle
from inspectflow.services.permission_service import invalidate_all_cache, seed_default_permissions

ROLES = ("admin", "shop_manager", "mechanic", "viewer")


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, seed RBAC, rollback after test, recreate tables."""
    with app.app_context():
        # ids are reused after every recreate; a stale cache entry would
        # leak permissions between tests
        invalidate_all_cache()
        seed_default_permissions()
        yield
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Shop scope ───────────────────────────────────────────────────────────


def _shop(name, slug):
    s = Shop(name=name, slug=slug, phone="555-0100")
    _db.session.add(s)
    _db.session.commit()
    return s


@pytest.fixture()
def shop():
    return _shop("Main Street Auto", "main-street-auto")


@pytest.fixture()
def other_shop():
    return _shop("Harbor Garage", "harbor-garage")


@pytest.fixture()
def users(shop):
    """One committed user per default role, keyed by role name."""
    out = {}
    for role in ROLES:
        u = User(shop_id=shop.id, email=f"{role}@mainstreet.test", full_name=role.title(), role=role)
        _db.session.add(u)
        out[role] = u
    _db.session.commit()
    return out


@pytest.fixture()
def actors(users):
    return {role: ActorContext(user_id=u.id, role=u.role, shop_id=u.shop_id) for role, u in users.items()}


@pytest.fixture()
def customer(shop):
    c = Customer(shop_id=shop.id, first_name="Dana", last_name="Reyes", phone="555-0199")
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def vehicle(shop, customer):
    v = Vehicle(shop_id=shop.id, customer_id=customer.id, vin="1HGCM82633A004352",
                year=2019, make="Honda", model="Accord", mileage=64000)
    _db.session.add(v)
    _db.session.commit()
    return v


# ── Inspections ──────────────────────────────────────────────────────────


@pytest.fixture()
def make_inspection(shop, users, customer):
    """Write an inspection directly (bypassing the engine) in any state."""

    def _make(state="draft", items=None, technician=None, customer_id=..., shop_id=None, **fields):
        tech = technician if technician is not None else users["mechanic"]
        insp = Inspection(
            shop_id=shop_id or shop.id,
            customer_id=customer.id if customer_id is ... else customer_id,
            technician_id=tech.id,
            workflow_state=state,
            version=1,
            **fields,
        )
        for data in items or []:
            data = dict(data)
            data.setdefault("measurements", {})
            data.setdefault("priority", 1)
            data.setdefault("estimated_cost", 0.0)
            data["requires_immediate_attention"] = data.get("condition") == "needs_immediate"
            insp.items.append(InspectionItem(**data))
        _db.session.add(insp)
        _db.session.commit()
        return insp

    return _make


# ── Auth ─────────────────────────────────────────────────────────────────


def make_token(user, secret="test-jwt-secret", expires_in=900, **claims):
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "role": user.role,
        "shop_id": user.shop_id,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture()
def auth_headers():
    def _headers(user, **kwargs):
        return {"Authorization": f"Bearer {make_token(user, **kwargs)}"}

    return _headers
