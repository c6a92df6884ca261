from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


def decimal_str(value) -> str | None:
    """Money/cost columns are serialized as strings to keep Decimal precision."""
    return None if value is None else str(value)


class Category(db.Model):
    """
    Product category.

    SIZE CONFIGURATION:
    - sizes is the ordered list of sizes stock-ins may use for this category.
    - An empty list means products in the category are size-less; their
      stock-in entries carry the single synthetic size key ONE_SIZE and
      Product.size_stock stays empty.
    """
    __tablename__ = "categories"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_categories_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    sizes = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_sized(self) -> bool:
        return bool(self.sizes)

    def __repr__(self) -> str:
        return f"<Category id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sizes": list(self.sizes or []),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Product(db.Model):
    """
    A stocked variant.

    NATURAL KEY: (category_id, product_name, variant)
    - variant is the color (or IP category for lines without colors).
    - "no value" is stored as the empty string, never NULL, so equality joins
      and the unique constraint both see one canonical representation.
      NULL is tolerated only on legacy rows; the variant resolver folds it.

    COST STATE:
    - avg_unit_cost is the weighted average purchase cost. It is retained when
      stock reaches zero and only recomputed when stock-in data changes.
    - total_cost_value is the cost of the units still on hand.
    - size_stock is empty for size-less products; otherwise its values sum to
      total_stock.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("category_id", "product_name", "variant", name="uq_products_natural_key"),
        db.Index("ix_products_category_name", "category_id", "product_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    variant = db.Column(db.String(128), nullable=True, default="")
    ip_category = db.Column(db.String(128), nullable=True)

    size_stock = db.Column(db.JSON, nullable=False, default=dict)
    total_stock = db.Column(db.Integer, nullable=False, default=0)
    avg_unit_cost = db.Column(db.Numeric(18, 6), nullable=False, default=0)
    total_cost_value = db.Column(db.Numeric(18, 4), nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<Product id={self.id} name={self.product_name!r} variant={self.variant!r} "
            f"category_id={self.category_id}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category_id": self.category_id,
            "product_name": self.product_name,
            "variant": self.variant,
            "ip_category": self.ip_category,
            "size_stock": dict(self.size_stock or {}),
            "total_stock": self.total_stock,
            "avg_unit_cost": decimal_str(self.avg_unit_cost),
            "total_cost_value": decimal_str(self.total_cost_value),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
