# Overview: Service-layer operations for stock-in entries, products and categories.

from __future__ import annotations

import threading

from flask import current_app

from ..errors import ConflictError, NonPositiveQuantity, NotFound, OrphanedReference, ValidationError
from ..extensions import db
from ..models import Category, Product, SaleEntry, StockInEntry
from ..time_utils import today
from ..validation import (
    ORDER_TYPES,
    check_choice,
    coerce_date,
    coerce_int,
    coerce_money,
    coerce_quantities,
    enforce_rules_category,
)
from .concurrency import lock_for_update, product_key, variant_key
from .costing import (
    ONE_SIZE,
    DEFAULT_AVG_COST_EPSILON,
    DEFAULT_COST_EPSILON,
    ProductState,
    SaleCost,
    apply_stock_in,
    quantize_money,
    revise_stock_in,
    total_of,
)
from .movement_service import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_STOCK_IN,
    REF_STOCK_IN,
    REF_STOCK_IN_DELETION,
    REF_STOCK_IN_EDIT,
    append_movement,
    append_size_movements,
)
from .transaction import run_ledger_operation
from .variant_resolver import (
    get_category,
    matches_natural_key,
    natural_key_clauses,
    normalize_product_name,
    normalize_variant,
    resolve,
    resolve_stock_in_product,
)
"""
Stock-In Invariants (authoritative)

Entries:
- total_quantity = sum(quantities); total_cost = unit_cost * total_quantity.
  Both are derived and rewritten on every quantity/cost edit.
- Sized categories: quantities keys must come from Category.sizes.
- Size-less categories: quantities is {ONE_SIZE: n}; the product's size_stock
  stays empty.
- New entries always store product_id.

Create:
- Resolve (or create) the product under the natural-key lock, then merge the
  purchase into the weighted average under the product lock.
- One 'stock_in' movement per size.

Edit / delete (revision):
- Quantity or unit cost changes re-cost the product from the full post-edit
  set of its stock-ins; if the average moved, every sale of the product is
  re-costed in the same transaction. Date/order type/note edits never re-cost.
- Per-size stock deltas are logged as 'adjustment' movements; a re-costing
  pass adds one zero-quantity 'adjustment' row describing the average change.
- A revision that would leave stock negative or sales exceeding purchases
  fails with InsufficientHistoricalStock and changes nothing.
- force=True deletes an entry that no longer resolves to a product, without
  any stock rollback.
"""

STOCK_IN_EDITABLE_FIELDS = {"date", "order_type", "quantities", "quantity", "unit_cost", "note"}


def _normalize_quantities(category: Category, quantities, quantity) -> dict[str, int]:
    if quantities is not None and quantity is not None:
        raise ValidationError("send either quantities (sized) or quantity (size-less), not both")

    if category.is_sized:
        if quantity is not None:
            raise ValidationError(f"category {category.name!r} is sized; send quantities per size")
        if quantities is None:
            raise ValidationError("quantities is required")
        qtys = coerce_quantities(quantities)
        unknown = sorted(set(qtys) - set(category.sizes))
        if unknown:
            raise ValidationError(f"sizes {unknown} are not configured for category {category.name!r}")
    elif quantities is not None:
        qtys = coerce_quantities(quantities)
        if set(qtys) - {ONE_SIZE}:
            raise ValidationError(
                f"category {category.name!r} is size-less; send quantity or {{{ONE_SIZE!r}: n}}"
            )
    elif quantity is not None:
        qty = coerce_int(quantity, "quantity")
        if qty < 0:
            raise NonPositiveQuantity("quantity must be greater than 0")
        qtys = {ONE_SIZE: qty} if qty else {}
    else:
        raise ValidationError("quantity is required")

    if total_of(qtys) <= 0:
        raise NonPositiveQuantity("total quantity must be greater than 0")
    return qtys


def load_product_for_update(product_id: int) -> Product:
    """Re-read a product under its writer lock, discarding any stale identity-map state."""
    product = (
        lock_for_update(db.session.query(Product).filter_by(id=product_id))
        .populate_existing()
        .first()
    )
    if product is None:
        raise NotFound(f"product {product_id} not found")
    return product


def _load_stock_in(stock_in_id: int, *, refresh: bool = False) -> StockInEntry:
    query = db.session.query(StockInEntry).filter_by(id=stock_in_id)
    if refresh:
        query = lock_for_update(query).populate_existing()
    entry = query.first()
    if entry is None:
        raise NotFound(f"stock-in {stock_in_id} not found")
    return entry


def stock_ins_for_product(product: Product) -> list[StockInEntry]:
    """
    Every stock-in owned by a product: linked by product_id, plus legacy rows
    without a product_id whose normalized natural key matches.
    """
    name = normalize_variant(product.product_name)
    key = normalize_variant(product.variant)
    linked = db.session.query(StockInEntry).filter(StockInEntry.product_id == product.id).all()
    legacy = (
        db.session.query(StockInEntry)
        .filter(
            StockInEntry.product_id.is_(None),
            *natural_key_clauses(StockInEntry, product.category_id, name, key),
        )
        .all()
    )
    legacy = [e for e in legacy if matches_natural_key(e, name, key)]
    return sorted(linked + legacy, key=lambda e: (e.date, e.id))


def sales_for_product(product_id: int) -> list[SaleEntry]:
    return (
        db.session.query(SaleEntry)
        .filter(SaleEntry.product_id == product_id)
        .order_by(SaleEntry.date.asc(), SaleEntry.id.asc())
        .all()
    )


def _avg_epsilon():
    return current_app.config.get("LEDGER_AVG_COST_EPSILON", DEFAULT_AVG_COST_EPSILON)


def cost_epsilon():
    return current_app.config.get("LEDGER_COST_EPSILON", DEFAULT_COST_EPSILON)


def _revise_product(
    *,
    product: Product,
    entry: StockInEntry,
    old_quantities: dict,
    new_quantities: dict,
    purchases: list[StockInEntry],
    reference_type: str,
    created_by: str | None,
) -> int:
    """
    Apply a stock-in revision to `product` and its sales, then log it.

    `purchases` is the post-edit set of the product's stock-ins. Returns the
    number of sales whose COGS was rewritten.
    """
    before = ProductState.from_product(product)
    sales = sales_for_product(product.id)
    revision = revise_stock_in(
        before,
        old_quantities,
        new_quantities,
        [(p.total_cost, p.total_quantity) for p in purchases],
        [SaleCost(s.id, int(s.quantity), s.cost_of_goods_sold) for s in sales],
        avg_epsilon=_avg_epsilon(),
        cost_epsilon=cost_epsilon(),
    )
    revision.state.apply_to(product)
    for sale in sales:
        if sale.id in revision.sale_costs:
            sale.cost_of_goods_sold = revision.sale_costs[sale.id]
    db.session.flush()

    sizes = set(old_quantities) | set(new_quantities)
    deltas = {s: int(new_quantities.get(s, 0)) - int(old_quantities.get(s, 0)) for s in sizes}
    verb = "deleted" if reference_type == REF_STOCK_IN_DELETION else "edited"
    append_size_movements(
        product_id=product.id,
        movement_type=MOVEMENT_ADJUSTMENT,
        before=before.size_stock,
        after=revision.state.size_stock,
        deltas=deltas,
        before_total=before.total_stock,
        reference_type=reference_type,
        reference_id=entry.id,
        note=f"stock-in {entry.id} {verb}",
        created_by=created_by,
    )

    if revision.recomputed:
        current_app.logger.info(
            "re-costed %d sales of product %s: avg cost %s -> %s",
            revision.recomputed_sales_count,
            product.id,
            revision.previous_avg_unit_cost,
            revision.state.avg_unit_cost,
        )
        append_movement(
            product_id=product.id,
            movement_type=MOVEMENT_ADJUSTMENT,
            quantity=0,
            previous_total=revision.state.total_stock,
            current_total=revision.state.total_stock,
            reference_type=reference_type,
            reference_id=entry.id,
            note=(
                f"avg cost {revision.previous_avg_unit_cost} -> {revision.state.avg_unit_cost}; "
                f"{revision.recomputed_sales_count} sales re-costed"
            ),
            created_by=created_by,
        )
    return revision.recomputed_sales_count


# ---------------------------------------------------------------------------
# Stock-in operations
# ---------------------------------------------------------------------------

def create_stock_in(
    *,
    category_id: int,
    product_name: str,
    unit_cost,
    variant: str | None = None,
    quantities: dict | None = None,
    quantity: int | None = None,
    date=None,
    order_type: str = "purchase",
    ip_category: str | None = None,
    note: str | None = None,
    created_by: str | None = None,
    cancel_event: threading.Event | None = None,
) -> dict:
    """
    Record a purchase and merge it into the product's weighted average.

    The product is resolved by natural key and created (zero stock, zero
    cost) on first stock-in.

    Returns:
        {"stock_in_id", "product_id", "stock_in", "product"}

    Raises:
        ValidationError / NonPositiveQuantity: bad input, nothing written
        NotFound: unknown category
        AmbiguousVariant: the natural key matches several products
    """
    def _op(tx):
        category = get_category(category_id)
        name = normalize_product_name(product_name)
        key = normalize_variant(variant)
        qtys = _normalize_quantities(category, quantities, quantity)
        cost = quantize_money(coerce_money(unit_cost, "unit_cost"))
        entry_date = coerce_date(date) or today()
        kind = check_choice(order_type, ORDER_TYPES, "order_type")

        tx.lock(variant_key(category.id, name, key))
        product = resolve(category.id, name, key, ip_category=ip_category)
        tx.lock(product_key(product.id))
        product = load_product_for_update(product.id)
        tx.validated()

        before = ProductState.from_product(product)
        total_quantity = total_of(qtys)
        total_cost = quantize_money(cost * total_quantity)
        after = apply_stock_in(before, qtys, total_cost)
        after.apply_to(product)

        entry = StockInEntry(
            date=entry_date,
            order_type=kind,
            category_id=category.id,
            product_name=name,
            variant=key,
            ip_category=normalize_variant(ip_category) or None,
            product_id=product.id,
            quantities=dict(qtys),
            total_quantity=total_quantity,
            unit_cost=cost,
            total_cost=total_cost,
            note=note,
            created_by=created_by,
        )
        db.session.add(entry)
        db.session.flush()
        tx.applied()

        append_size_movements(
            product_id=product.id,
            movement_type=MOVEMENT_STOCK_IN,
            before=before.size_stock,
            after=after.size_stock,
            deltas=qtys,
            before_total=before.total_stock,
            reference_type=REF_STOCK_IN,
            reference_id=entry.id,
            note=f"stock-in {entry.id}",
            created_by=created_by,
        )
        tx.logged()
        return entry, product

    entry, product = run_ledger_operation("create_stock_in", _op, cancel_event=cancel_event)
    return {
        "stock_in_id": entry.id,
        "product_id": product.id,
        "stock_in": entry.to_dict(),
        "product": product.to_dict(),
    }


def edit_stock_in(
    stock_in_id: int,
    patch: dict,
    *,
    created_by: str | None = None,
    cancel_event: threading.Event | None = None,
) -> dict:
    """
    Edit a stock-in entry.

    Quantity/unit-cost changes re-cost the owning product (and its sales when
    the average moves); date/order_type/note changes only touch the entry.

    Returns:
        {"stock_in_id", "product_id", "recomputed_sales_count", "stock_in", "product"}
    """
    patch = dict(patch or {})
    unknown = sorted(set(patch) - STOCK_IN_EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    def _op(tx):
        entry = _load_stock_in(stock_in_id)
        product = resolve_stock_in_product(entry)
        tx.lock(product_key(product.id))
        entry = _load_stock_in(stock_in_id, refresh=True)
        product = load_product_for_update(product.id)
        category = get_category(entry.category_id)

        old_quantities = {k: int(v) for k, v in (entry.quantities or {}).items()}
        new_quantities = old_quantities
        if "quantities" in patch or "quantity" in patch:
            new_quantities = _normalize_quantities(category, patch.get("quantities"), patch.get("quantity"))
        old_cost = quantize_money(entry.unit_cost)
        new_cost = old_cost
        if "unit_cost" in patch:
            new_cost = quantize_money(coerce_money(patch["unit_cost"], "unit_cost"))

        if "date" in patch:
            entry_date = coerce_date(patch["date"])
            if entry_date is None:
                raise ValidationError("date cannot be null")
            entry.date = entry_date
        if "order_type" in patch:
            entry.order_type = check_choice(patch["order_type"], ORDER_TYPES, "order_type")
        if "note" in patch:
            entry.note = patch["note"]
        if entry.product_id is None:
            entry.product_id = product.id
            entry.variant = normalize_variant(entry.variant)
        tx.validated()

        recomputed = 0
        if new_quantities != old_quantities or new_cost != old_cost:
            entry.quantities = dict(new_quantities)
            entry.total_quantity = total_of(new_quantities)
            entry.unit_cost = new_cost
            entry.total_cost = quantize_money(new_cost * entry.total_quantity)
            db.session.flush()
            tx.applied()
            recomputed = _revise_product(
                product=product,
                entry=entry,
                old_quantities=old_quantities,
                new_quantities=new_quantities,
                purchases=stock_ins_for_product(product),
                reference_type=REF_STOCK_IN_EDIT,
                created_by=created_by,
            )
        else:
            tx.applied()
        tx.logged()
        return entry, product, recomputed

    entry, product, recomputed = run_ledger_operation("edit_stock_in", _op, cancel_event=cancel_event)
    return {
        "stock_in_id": entry.id,
        "product_id": product.id,
        "recomputed_sales_count": recomputed,
        "stock_in": entry.to_dict(),
        "product": product.to_dict(),
    }


def delete_stock_in(
    stock_in_id: int,
    *,
    force: bool = False,
    created_by: str | None = None,
    cancel_event: threading.Event | None = None,
) -> dict:
    """
    Delete a stock-in entry and re-cost its product.

    Args:
        force: delete an entry whose product can no longer be resolved,
            skipping the stock rollback (data repair only)

    Returns:
        {"stock_in_id", "product_id", "recomputed_sales_count", "stock_rolled_back", "product"}

    Raises:
        OrphanedReference: the entry does not resolve to a product and force is False
        InsufficientHistoricalStock: the deletion would leave stock negative or
            sales exceeding purchases
    """
    def _op(tx):
        entry = _load_stock_in(stock_in_id)
        try:
            product = resolve_stock_in_product(entry)
        except OrphanedReference:
            if not force:
                raise
            tx.validated()
            current_app.logger.warning(
                "force-deleting orphaned stock-in %s (%r); no stock rolled back", stock_in_id, entry.product_name
            )
            db.session.delete(entry)
            db.session.flush()
            tx.applied()
            tx.logged()
            return None, 0

        tx.lock(product_key(product.id))
        entry = _load_stock_in(stock_in_id, refresh=True)
        product = load_product_for_update(product.id)
        tx.validated()

        old_quantities = {k: int(v) for k, v in (entry.quantities or {}).items()}
        remaining = [p for p in stock_ins_for_product(product) if p.id != entry.id]
        recomputed = _revise_product(
            product=product,
            entry=entry,
            old_quantities=old_quantities,
            new_quantities={},
            purchases=remaining,
            reference_type=REF_STOCK_IN_DELETION,
            created_by=created_by,
        )
        db.session.delete(entry)
        db.session.flush()
        tx.applied()
        tx.logged()
        return product, recomputed

    product, recomputed = run_ledger_operation("delete_stock_in", _op, cancel_event=cancel_event)
    return {
        "stock_in_id": stock_in_id,
        "product_id": product.id if product is not None else None,
        "recomputed_sales_count": recomputed,
        "stock_rolled_back": product is not None,
        "product": product.to_dict() if product is not None else None,
    }


def get_stock_in(stock_in_id: int) -> StockInEntry:
    return _load_stock_in(stock_in_id)


def list_stock_ins(
    *,
    category_id: int | None = None,
    product_id: int | None = None,
    limit: int = 100,
) -> list[StockInEntry]:
    q = db.session.query(StockInEntry)
    if category_id is not None:
        q = q.filter(StockInEntry.category_id == category_id)
    if product_id is not None:
        q = q.filter(StockInEntry.product_id == product_id)

    limit = max(1, min(int(limit), 500))
    return q.order_by(StockInEntry.date.desc(), StockInEntry.id.desc()).limit(limit).all()


# ---------------------------------------------------------------------------
# Products and categories
# ---------------------------------------------------------------------------

def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound(f"product {product_id} not found")
    return product


def list_products(category_id: int | None = None) -> list[Product]:
    q = db.session.query(Product)
    if category_id is not None:
        q = q.filter(Product.category_id == category_id)
    return q.order_by(Product.product_name.asc(), Product.variant.asc(), Product.id.asc()).all()


def create_category(*, name: str, sizes: list[str] | None = None) -> Category:
    """
    Create a product category.

    Raises:
        ValidationError: blank name or malformed size list
        ConflictError: a category with this name already exists
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name cannot be blank")
    patch = {"sizes": list(sizes or [])}
    enforce_rules_category(patch)

    existing = db.session.query(Category).filter(Category.name == name).first()
    if existing:
        raise ConflictError(f"category {name!r} already exists")

    category = Category(name=name, sizes=patch["sizes"])
    db.session.add(category)
    db.session.commit()
    return category


def list_categories() -> list[Category]:
    return db.session.query(Category).order_by(Category.name.asc(), Category.id.asc()).all()
