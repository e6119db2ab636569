"""
InspectFlow
Shop domain models.

Models:
    - Shop: the tenant boundary; every inspection belongs to exactly one shop
    - User: shop staff (technicians, managers, admins)
    - Customer: vehicle owner contacted when results are sent
    - Vehicle: the subject of an inspection
"""

from datetime import datetime, timezone

from inspectflow.models import db
from inspectflow.models.base import ShopModel


# ═══════════════════════════════════════════════════════════════
# 1. SHOPS
# ═══════════════════════════════════════════════════════════════
class Shop(db.Model):
    __tablename__ = "shops"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    phone = db.Column(db.String(30))
    is_active = db.Column(db.Boolean, default=True)
    settings = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    users = db.relationship("User", back_populates="shop", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "phone": self.phone,
            "is_active": self.is_active,
            "settings": self.settings or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(ShopModel):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    role = db.Column(db.String(50), nullable=False, default="mechanic")  # admin, shop_manager, mechanic, viewer
    status = db.Column(db.String(20), default="active")
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("shop_id", "email", name="uq_user_shop_email"),
    )

    shop = db.relationship("Shop", back_populates="users")

    def to_dict(self):
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "status": self.status,
        }


# ═══════════════════════════════════════════════════════════════
# 3. CUSTOMERS & VEHICLES
# ═══════════════════════════════════════════════════════════════
class Customer(ShopModel):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100))
    phone = db.Column(db.String(30))
    email = db.Column(db.String(200))
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    vehicles = db.relationship("Vehicle", back_populates="customer", lazy="dynamic")

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self):
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "email": self.email,
        }


class Vehicle(ShopModel):
    __tablename__ = "vehicles"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    vin = db.Column(db.String(17))
    year = db.Column(db.Integer)
    make = db.Column(db.String(60))
    model = db.Column(db.String(60))
    mileage = db.Column(db.Integer)

    customer = db.relationship("Customer", back_populates="vehicles")

    def to_dict(self):
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "customer_id": self.customer_id,
            "vin": self.vin,
            "year": self.year,
            "make": self.make,
            "model": self.model,
            "mileage": self.mileage,
        }
