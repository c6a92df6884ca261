# Overview: Reconciliation auditor; read-only consistency checks over the ledger.

from __future__ import annotations

from flask import current_app

from ..errors import AmbiguousVariant, OrphanedReference
from ..extensions import db
from ..models import Product, SaleEntry, StockInEntry
from .costing import (
    DEFAULT_COST_EPSILON,
    ZERO,
    ProductState,
    identity_divergence,
    quantize_money,
    state_issues,
    to_decimal,
    total_of,
)
from .inventory_service import get_product, list_products, sales_for_product, stock_ins_for_product
from .movement_service import net_quantity
from .variant_resolver import resolve_stock_in_product
"""
Reconciliation Auditor (authoritative)

- Read-only: never writes, never commits, never takes writer locks.
- Recomputes from first principles, per product:
    sum(stock_in.total_cost) == total_cost_value + sum(sale.cost_of_goods_sold)
  plus the structural invariants (size sum, non-negativity, cost value vs
  avg * stock), purchased - sold == on hand, the movement log's net quantity,
  and each stock-in's derived totals.
- Deterministic: the same data always yields the same report.
- The only component that continues on error: a product that cannot be
  audited is recorded as a failure and the pass moves on.
"""


def _epsilon(value):
    if value is None:
        value = current_app.config.get("LEDGER_COST_EPSILON", DEFAULT_COST_EPSILON)
    return to_decimal(value, field_name="epsilon")


def _stock_in_issues(entry: StockInEntry, epsilon) -> list[str]:
    issues = []
    quantities = {k: int(v) for k, v in (entry.quantities or {}).items()}
    if total_of(quantities) != int(entry.total_quantity or 0):
        issues.append(
            f"stock-in {entry.id}: quantities sum to {total_of(quantities)} "
            f"but total_quantity is {entry.total_quantity}"
        )
    expected = quantize_money(to_decimal(entry.unit_cost or 0) * int(entry.total_quantity or 0))
    if abs(expected - quantize_money(entry.total_cost or 0)) > epsilon:
        issues.append(
            f"stock-in {entry.id}: total_cost {quantize_money(entry.total_cost or 0)} "
            f"!= unit_cost * total_quantity ({expected})"
        )
    return issues


def audit_product(product_id: int, *, epsilon=None) -> dict:
    """
    Audit one product.

    Returns:
        {"product_id", "consistent", "divergence", "details"} where divergence
        is purchased cost minus (on-hand value + COGS) and details carries the
        identity terms and every issue found.

    Raises:
        NotFound: unknown product
    """
    epsilon = _epsilon(epsilon)
    product = get_product(product_id)
    state = ProductState.from_product(product)
    stock_ins = stock_ins_for_product(product)
    sales = sales_for_product(product.id)

    purchased_cost = sum((quantize_money(e.total_cost or 0) for e in stock_ins), ZERO)
    purchased_quantity = sum(int(e.total_quantity or 0) for e in stock_ins)
    cogs_total = sum((quantize_money(s.cost_of_goods_sold or 0) for s in sales), ZERO)
    sold_quantity = sum(int(s.quantity or 0) for s in sales)
    divergence = identity_divergence(purchased_cost, state.total_cost_value, cogs_total)
    movement_net = net_quantity(product.id)

    issues = []
    if abs(divergence) > epsilon:
        issues.append(
            f"accounting identity off by {divergence}: purchased {purchased_cost} "
            f"!= on hand {state.total_cost_value} + sold {cogs_total}"
        )
    issues.extend(state_issues(state, epsilon=epsilon))
    if purchased_quantity - sold_quantity != state.total_stock:
        issues.append(
            f"purchased {purchased_quantity} - sold {sold_quantity} "
            f"!= total_stock {state.total_stock}"
        )
    if movement_net != state.total_stock:
        issues.append(f"movement log nets to {movement_net} but total_stock is {state.total_stock}")
    for entry in stock_ins:
        issues.extend(_stock_in_issues(entry, epsilon))

    return {
        "product_id": product.id,
        "consistent": not issues,
        "divergence": divergence,
        "details": {
            "product_name": product.product_name,
            "variant": product.variant,
            "purchased_cost": str(purchased_cost),
            "total_cost_value": str(state.total_cost_value),
            "cogs_total": str(cogs_total),
            "purchased_quantity": purchased_quantity,
            "sold_quantity": sold_quantity,
            "total_stock": state.total_stock,
            "movement_net": movement_net,
            "stock_in_count": len(stock_ins),
            "sale_count": len(sales),
            "issues": issues,
        },
    }


def _orphaned_sales() -> list[int]:
    rows = (
        db.session.query(SaleEntry.id)
        .outerjoin(Product, Product.id == SaleEntry.product_id)
        .filter(Product.id.is_(None))
        .order_by(SaleEntry.id.asc())
        .all()
    )
    return [r[0] for r in rows]


def _unresolved_stock_ins(category_id: int | None) -> list[dict]:
    q = (
        db.session.query(StockInEntry)
        .outerjoin(Product, Product.id == StockInEntry.product_id)
        .filter(Product.id.is_(None))
    )
    if category_id is not None:
        q = q.filter(StockInEntry.category_id == category_id)

    unresolved = []
    for entry in q.order_by(StockInEntry.id.asc()).all():
        try:
            resolve_stock_in_product(entry)
        except OrphanedReference:
            unresolved.append({"stock_in_id": entry.id, "reason": "orphaned"})
        except AmbiguousVariant as exc:
            unresolved.append({"stock_in_id": entry.id, "reason": "ambiguous", "candidate_ids": exc.candidate_ids})
    return unresolved


def audit_all(*, category_id: int | None = None, epsilon=None) -> dict:
    """
    Audit every product (optionally one category) plus ledger-wide references.

    Per-product failures are logged and reported; the pass continues.
    """
    epsilon = _epsilon(epsilon)
    reports, failures = [], []
    for product in list_products(category_id):
        product_id = product.id
        try:
            reports.append(audit_product(product_id, epsilon=epsilon))
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("audit of product %s failed", product_id)
            failures.append({"product_id": product_id, "error": str(exc)})

    orphaned_sales = _orphaned_sales() if category_id is None else []
    unresolved_stock_ins = _unresolved_stock_ins(category_id)
    inconsistent = [r["product_id"] for r in reports if not r["consistent"]]
    total_divergence = sum((r["divergence"] for r in reports), ZERO)

    return {
        "consistent": not (inconsistent or failures or orphaned_sales or unresolved_stock_ins),
        "product_count": len(reports),
        "inconsistent_product_ids": inconsistent,
        "total_divergence": quantize_money(total_divergence),
        "products": reports,
        "failures": failures,
        "orphaned_sales": orphaned_sales,
        "unresolved_stock_ins": unresolved_stock_ins,
    }
