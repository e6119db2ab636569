"""
ShopModel — Abstract base class for shop-scoped models.

Every row that belongs to a single repair shop inherits from ShopModel
instead of db.Model directly. This adds:
  - shop_id FK column with index
  - query_for_shop(shop_id) classmethod
  - Composite index helper
"""

from inspectflow.models import db


class ShopModel(db.Model):
    """Abstract base for shop-scoped tables."""
    __abstract__ = True

    shop_id = db.Column(
        db.Integer,
        db.ForeignKey("shops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_shop(cls, shop_id):
        """Return a query filtered by shop_id."""
        return cls.query.filter_by(shop_id=shop_id)

    @classmethod
    def shop_composite_index(cls, tablename, *extra_cols):
        """Build a (shop_id, ...) composite index for ``__table_args__``."""
        name = f"ix_{tablename}_shop_{'_'.join(extra_cols)}"
        cols = ("shop_id",) + extra_cols
        return db.Index(name, *cols)
