# Overview: Service-layer operations for sales; COGS snapshots and stock restoration.

from __future__ import annotations

import threading

from flask import current_app

from ..errors import NonPositiveQuantity, NotFound, OrphanedReference, ValidationError
from ..extensions import db
from ..models import Product, SaleEntry
from ..time_utils import today
from ..validation import (
    CUSTOMER_TYPES,
    SALE_CHANNELS,
    SHIPPING_METHODS,
    check_choice,
    coerce_date,
    coerce_int,
    coerce_money,
)
from .concurrency import lock_for_update, product_key
from .costing import ONE_SIZE, ProductState, apply_sale, quantize_money, reprice_sale, restore_sale
from .inventory_service import cost_epsilon, load_product_for_update
from .movement_service import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_SALE,
    REF_SALE,
    REF_SALE_DELETION,
    REF_SALE_EDIT,
    append_size_movements,
)
from .transaction import run_ledger_operation
"""
Sales Invariants (authoritative)

- A sale must reference an existing product; cost is never accepted as
  input. cost_of_goods_sold = avg_unit_cost * quantity at the time of sale.
- Sales are rejected (nothing written) when stock is insufficient or the
  product has no average cost (ZeroCostSale).
- total_amount = unit_price * quantity. Price never feeds into cost.
- Deleting a sale restores quantity and exactly the stored COGS.
- Editing a sale's quantity: extra units are costed at the current average,
  returned units at the sale's own per-unit COGS. Its size cannot change
  (delete and re-enter instead).
"""

SALE_EDITABLE_FIELDS = {
    "date", "customer_type", "channel", "shipping_method", "unit_price", "quantity", "note",
}


def _positive_quantity(value) -> int:
    qty = coerce_int(value, "quantity")
    if qty <= 0:
        raise NonPositiveQuantity("quantity must be greater than 0")
    return qty


def _sale_size(product: Product, size) -> str | None:
    """Canonical size for a sale: a configured size for sized categories, None otherwise."""
    size = None if size in (None, "", ONE_SIZE) else str(size).strip()
    category = product.category
    if category is not None and category.is_sized:
        if size is None:
            raise ValidationError("size is required for a sized product")
        if size not in category.sizes:
            raise ValidationError(f"size {size!r} is not configured for category {category.name!r}")
        return size
    if size is not None and not product.size_stock:
        raise ValidationError("product is size-less; omit size")
    return size


def _movement_key(size: str | None) -> str:
    return size if size else ONE_SIZE


def _load_sale(sale_id: int, *, refresh: bool = False) -> SaleEntry:
    query = db.session.query(SaleEntry).filter_by(id=sale_id)
    if refresh:
        query = lock_for_update(query).populate_existing()
    sale = query.first()
    if sale is None:
        raise NotFound(f"sale {sale_id} not found")
    return sale


def _sale_product(sale: SaleEntry) -> Product | None:
    if sale.product_id is None:
        return None
    return db.session.get(Product, sale.product_id)


def create_sale(
    *,
    product_id: int,
    quantity: int,
    unit_price,
    size: str | None = None,
    customer_type: str = "retail",
    channel: str | None = None,
    shipping_method: str | None = None,
    date=None,
    note: str | None = None,
    created_by: str | None = None,
    cancel_event: threading.Event | None = None,
) -> dict:
    """
    Record a sale and snapshot its COGS at the product's current average cost.

    Returns:
        {"sale_id", "product_id", "cost_of_goods_sold", "sale", "product"}

    Raises:
        NotFound: unknown product
        InsufficientStock: not enough units at the size (or in total)
        ZeroCostSale: the product has no average cost yet
    """
    def _op(tx):
        qty = _positive_quantity(quantity)
        price = quantize_money(coerce_money(unit_price, "unit_price"))
        kind = check_choice(customer_type, CUSTOMER_TYPES, "customer_type")
        chan = check_choice(channel, SALE_CHANNELS, "channel", nullable=True)
        ship = check_choice(shipping_method, SHIPPING_METHODS, "shipping_method", nullable=True)
        sale_date = coerce_date(date) or today()

        product = db.session.get(Product, product_id)
        if product is None:
            raise NotFound(f"product {product_id} not found")
        tx.lock(product_key(product.id))
        product = load_product_for_update(product.id)
        size_key = _sale_size(product, size)
        tx.validated()

        before = ProductState.from_product(product)
        result = apply_sale(before, size_key, qty)
        result.state.apply_to(product)

        sale = SaleEntry(
            date=sale_date,
            customer_type=kind,
            product_id=product.id,
            product_name=product.product_name,
            size=size_key,
            channel=chan,
            shipping_method=ship,
            unit_price=price,
            quantity=qty,
            total_amount=quantize_money(price * qty),
            cost_of_goods_sold=result.cost_of_goods_sold,
            note=note,
            created_by=created_by,
        )
        db.session.add(sale)
        db.session.flush()
        tx.applied()

        append_size_movements(
            product_id=product.id,
            movement_type=MOVEMENT_SALE,
            before=before.size_stock,
            after=result.state.size_stock,
            deltas={_movement_key(size_key): -qty},
            before_total=before.total_stock,
            reference_type=REF_SALE,
            reference_id=sale.id,
            note=f"sale {sale.id}",
            created_by=created_by,
        )
        tx.logged()
        return sale, product, result.cost_of_goods_sold

    sale, product, cogs = run_ledger_operation("create_sale", _op, cancel_event=cancel_event)
    return {
        "sale_id": sale.id,
        "product_id": product.id,
        "cost_of_goods_sold": cogs,
        "sale": sale.to_dict(),
        "product": product.to_dict(),
    }


def edit_sale(
    sale_id: int,
    patch: dict,
    *,
    created_by: str | None = None,
    cancel_event: threading.Event | None = None,
) -> dict:
    """
    Edit a recorded sale.

    A quantity increase costs the extra units at the current average; a
    decrease hands units back at the sale's own per-unit cost. Price and
    metadata edits never touch cost.

    Returns:
        {"sale_id", "product_id", "cost_of_goods_sold", "sale", "product"}
    """
    patch = dict(patch or {})
    if "size" in patch:
        raise ValidationError("size cannot be edited; delete the sale and record it again")
    unknown = sorted(set(patch) - SALE_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    def _op(tx):
        sale = _load_sale(sale_id)
        product = _sale_product(sale)
        if product is None:
            raise OrphanedReference(f"sale {sale_id} references product {sale.product_id}, which does not exist")
        tx.lock(product_key(product.id))
        sale = _load_sale(sale_id, refresh=True)
        product = load_product_for_update(product.id)

        new_quantity = int(sale.quantity)
        if "quantity" in patch:
            new_quantity = _positive_quantity(patch["quantity"])
        price = quantize_money(sale.unit_price)
        if "unit_price" in patch:
            price = quantize_money(coerce_money(patch["unit_price"], "unit_price"))
        if "date" in patch:
            sale_date = coerce_date(patch["date"])
            if sale_date is None:
                raise ValidationError("date cannot be null")
            sale.date = sale_date
        if "customer_type" in patch:
            sale.customer_type = check_choice(patch["customer_type"], CUSTOMER_TYPES, "customer_type")
        if "channel" in patch:
            sale.channel = check_choice(patch["channel"], SALE_CHANNELS, "channel", nullable=True)
        if "shipping_method" in patch:
            sale.shipping_method = check_choice(
                patch["shipping_method"], SHIPPING_METHODS, "shipping_method", nullable=True
            )
        if "note" in patch:
            sale.note = patch["note"]
        tx.validated()

        old_quantity = int(sale.quantity)
        before = ProductState.from_product(product)
        result = reprice_sale(
            before, sale.size, old_quantity, new_quantity, sale.cost_of_goods_sold, epsilon=cost_epsilon()
        )
        result.state.apply_to(product)
        sale.quantity = new_quantity
        sale.unit_price = price
        sale.total_amount = quantize_money(price * new_quantity)
        sale.cost_of_goods_sold = result.cost_of_goods_sold
        db.session.flush()
        tx.applied()

        append_size_movements(
            product_id=product.id,
            movement_type=MOVEMENT_ADJUSTMENT,
            before=before.size_stock,
            after=result.state.size_stock,
            deltas={_movement_key(sale.size): old_quantity - new_quantity},
            before_total=before.total_stock,
            reference_type=REF_SALE_EDIT,
            reference_id=sale.id,
            note=f"sale {sale.id} edited",
            created_by=created_by,
        )
        tx.logged()
        return sale, product, result.cost_of_goods_sold

    sale, product, cogs = run_ledger_operation("edit_sale", _op, cancel_event=cancel_event)
    return {
        "sale_id": sale.id,
        "product_id": product.id,
        "cost_of_goods_sold": cogs,
        "sale": sale.to_dict(),
        "product": product.to_dict(),
    }


def delete_sale(
    sale_id: int,
    *,
    force: bool = False,
    created_by: str | None = None,
    cancel_event: threading.Event | None = None,
) -> dict:
    """
    Delete a sale, restoring its units and exactly its stored COGS.

    Args:
        force: delete a sale whose product no longer exists, without restoring anything

    Returns:
        {"sale_id", "product_id", "restored_quantity", "restored_cost", "product"}
    """
    def _op(tx):
        sale = _load_sale(sale_id)
        product = _sale_product(sale)
        if product is None:
            if not force:
                raise OrphanedReference(
                    f"sale {sale_id} references product {sale.product_id}, which does not exist"
                )
            tx.validated()
            current_app.logger.warning("force-deleting orphaned sale %s; nothing restored", sale_id)
            db.session.delete(sale)
            db.session.flush()
            tx.applied()
            tx.logged()
            return None, 0, quantize_money(0)

        tx.lock(product_key(product.id))
        sale = _load_sale(sale_id, refresh=True)
        product = load_product_for_update(product.id)
        tx.validated()

        quantity = int(sale.quantity)
        cogs = quantize_money(sale.cost_of_goods_sold or 0)
        before = ProductState.from_product(product)
        after = restore_sale(before, sale.size, quantity, cogs, epsilon=cost_epsilon())
        after.apply_to(product)
        db.session.delete(sale)
        db.session.flush()
        tx.applied()

        append_size_movements(
            product_id=product.id,
            movement_type=MOVEMENT_ADJUSTMENT,
            before=before.size_stock,
            after=after.size_stock,
            deltas={_movement_key(sale.size): quantity},
            before_total=before.total_stock,
            reference_type=REF_SALE_DELETION,
            reference_id=sale_id,
            note=f"sale {sale_id} deleted",
            created_by=created_by,
        )
        tx.logged()
        return product, quantity, cogs

    product, quantity, cogs = run_ledger_operation("delete_sale", _op, cancel_event=cancel_event)
    return {
        "sale_id": sale_id,
        "product_id": product.id if product is not None else None,
        "restored_quantity": quantity,
        "restored_cost": cogs,
        "product": product.to_dict() if product is not None else None,
    }


def get_sale(sale_id: int) -> SaleEntry:
    return _load_sale(sale_id)


def list_sales(
    *,
    customer_type: str | None = None,
    product_id: int | None = None,
    limit: int = 100,
) -> list[SaleEntry]:
    q = db.session.query(SaleEntry)
    if customer_type:
        q = q.filter(SaleEntry.customer_type == check_choice(customer_type, CUSTOMER_TYPES, "customer_type"))
    if product_id is not None:
        q = q.filter(SaleEntry.product_id == product_id)

    limit = max(1, min(int(limit), 500))
    return q.order_by(SaleEntry.date.desc(), SaleEntry.id.desc()).limit(limit).all()
