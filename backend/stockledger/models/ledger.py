from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z
from .catalog import decimal_str


class StockInEntry(db.Model):
    """
    One purchase transaction.

    product_id is the stable product reference, stored at creation. The
    natural-key columns (category_id, product_name, variant) are kept for
    display and for resolving legacy rows that predate product_id.

    total_quantity and total_cost are derived:
        total_quantity = sum(quantities.values())
        total_cost = unit_cost * total_quantity
    and are recomputed on every edit.
    """
    __tablename__ = "stock_in_entries"
    __table_args__ = (
        db.Index("ix_stock_in_product_date", "product_id", "date"),
        db.Index("ix_stock_in_natural_key", "category_id", "product_name", "variant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    date = db.Column(db.Date, nullable=False, index=True)
    order_type = db.Column(db.String(16), nullable=False)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    variant = db.Column(db.String(128), nullable=True, default="")
    ip_category = db.Column(db.String(128), nullable=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    quantities = db.Column(db.JSON, nullable=False, default=dict)
    total_quantity = db.Column(db.Integer, nullable=False)
    unit_cost = db.Column(db.Numeric(18, 4), nullable=False)
    total_cost = db.Column(db.Numeric(18, 4), nullable=False)

    note = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date.isoformat() if self.date else None,
            "order_type": self.order_type,
            "category_id": self.category_id,
            "product_name": self.product_name,
            "variant": self.variant,
            "ip_category": self.ip_category,
            "product_id": self.product_id,
            "quantities": dict(self.quantities or {}),
            "total_quantity": self.total_quantity,
            "unit_cost": decimal_str(self.unit_cost),
            "total_cost": decimal_str(self.total_cost),
            "note": self.note,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class SaleEntry(db.Model):
    """
    One sale transaction.

    cost_of_goods_sold is a point-in-time snapshot of the product's average
    cost times quantity. It only changes when a stock-in edit/delete moves the
    product's average cost (re-costing pass) or when the sale itself is edited.
    """
    __tablename__ = "sale_entries"
    __table_args__ = (
        db.Index("ix_sale_product_date", "product_id", "date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    date = db.Column(db.Date, nullable=False, index=True)
    customer_type = db.Column(db.String(16), nullable=False, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    size = db.Column(db.String(32), nullable=True)

    channel = db.Column(db.String(16), nullable=True)
    shipping_method = db.Column(db.String(32), nullable=True)

    unit_price = db.Column(db.Numeric(18, 4), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    total_amount = db.Column(db.Numeric(18, 4), nullable=False)
    cost_of_goods_sold = db.Column(db.Numeric(18, 4), nullable=False, default=0)

    note = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date.isoformat() if self.date else None,
            "customer_type": self.customer_type,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "size": self.size,
            "channel": self.channel,
            "shipping_method": self.shipping_method,
            "unit_price": decimal_str(self.unit_price),
            "quantity": self.quantity,
            "total_amount": decimal_str(self.total_amount),
            "cost_of_goods_sold": decimal_str(self.cost_of_goods_sold),
            "note": self.note,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryMovement(db.Model):
    """
    Append-only audit record of a change to a product's quantity or cost basis.

    - quantity is the signed delta; previous_total/current_total are the
      on-hand figures for `size` (or the product total when size is NULL).
    - reference_type/reference_id point at the causing stock-in or sale.
    - Rows are never updated or deleted.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_movements_product_created", "product_id", "created_at"),
        db.Index("ix_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    movement_type = db.Column(db.String(16), nullable=False, index=True)
    size = db.Column(db.String(32), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    previous_total = db.Column(db.Integer, nullable=False)
    current_total = db.Column(db.Integer, nullable=False)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    note = db.Column(db.String(255), nullable=True)
    created_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "size": self.size,
            "quantity": self.quantity,
            "previous_total": self.previous_total,
            "current_total": self.current_total,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
