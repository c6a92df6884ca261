# Overview: Service-layer operations for reporting; profit and loss over recorded sales.

from __future__ import annotations

from datetime import date
from decimal import Decimal, ROUND_HALF_UP

from ..errors import ValidationError
from ..extensions import db
from ..models import Product, SaleEntry
from ..validation import coerce_date
from .costing import ZERO, quantize_money
"""
Profit Report Invariants (authoritative)

- Read-only, like the auditor: no writes, no locks.
- Revenue is sum(sale.total_amount); cost is the COGS stored on each sale,
  never the product's current average.
- gross_profit = revenue - cogs; margin_pct = gross_profit / revenue * 100
  rounded to 2 places, None when there is no revenue.
- inventory_value is the cost value still on hand (sum of
  Product.total_cost_value), independent of the date range.
"""

PCT_PLACES = Decimal("0.01")


def _margin_pct(gross_profit, revenue):
    if not revenue:
        return None
    return str((gross_profit / revenue * 100).quantize(PCT_PLACES, rounding=ROUND_HALF_UP))


def _parse_range(start_date, end_date) -> tuple[date | None, date | None]:
    start = coerce_date(start_date, "start_date") if start_date else None
    end = coerce_date(end_date, "end_date") if end_date else None
    if start and end and start > end:
        raise ValidationError("start_date must be on or before end_date")
    return start, end


def profit_summary(
    *,
    start_date=None,
    end_date=None,
    product_id: int | None = None,
    category_id: int | None = None,
) -> dict:
    """
    Revenue, COGS and gross profit over sales in [start_date, end_date].

    Returns:
        {"start_date", "end_date", "sales_count", "units_sold", "revenue",
         "cogs", "gross_profit", "margin_pct", "inventory_value", "rows"}
        with one row per product that sold in the range.

    Raises:
        ValidationError: unparsable dates or start after end
    """
    start, end = _parse_range(start_date, end_date)

    sales_q = db.session.query(SaleEntry)
    products_q = db.session.query(Product)
    if product_id is not None:
        sales_q = sales_q.filter(SaleEntry.product_id == product_id)
        products_q = products_q.filter(Product.id == product_id)
    if category_id is not None:
        sales_q = sales_q.join(Product, Product.id == SaleEntry.product_id).filter(
            Product.category_id == category_id
        )
        products_q = products_q.filter(Product.category_id == category_id)
    if start:
        sales_q = sales_q.filter(SaleEntry.date >= start)
    if end:
        sales_q = sales_q.filter(SaleEntry.date <= end)

    # Summed in Decimal here; SQLite's SUM over NUMERIC is a float.
    by_product: dict = {}
    for sale in sales_q.order_by(SaleEntry.product_id.asc(), SaleEntry.id.asc()).all():
        row = by_product.setdefault(
            sale.product_id,
            {
                "product_id": sale.product_id,
                "product_name": sale.product_name,
                "sales_count": 0,
                "units_sold": 0,
                "revenue": ZERO,
                "cogs": ZERO,
            },
        )
        row["sales_count"] += 1
        row["units_sold"] += int(sale.quantity or 0)
        row["revenue"] += quantize_money(sale.total_amount or 0)
        row["cogs"] += quantize_money(sale.cost_of_goods_sold or 0)

    revenue = sum((r["revenue"] for r in by_product.values()), ZERO)
    cogs = sum((r["cogs"] for r in by_product.values()), ZERO)
    gross_profit = quantize_money(revenue - cogs)
    inventory_value = sum((quantize_money(p.total_cost_value or 0) for p in products_q.all()), ZERO)

    rows = []
    for row in by_product.values():
        row_profit = quantize_money(row["revenue"] - row["cogs"])
        rows.append(
            {
                "product_id": row["product_id"],
                "product_name": row["product_name"],
                "sales_count": row["sales_count"],
                "units_sold": row["units_sold"],
                "revenue": str(quantize_money(row["revenue"])),
                "cogs": str(quantize_money(row["cogs"])),
                "gross_profit": str(row_profit),
                "margin_pct": _margin_pct(row_profit, row["revenue"]),
            }
        )

    return {
        "start_date": start.isoformat() if start else None,
        "end_date": end.isoformat() if end else None,
        "sales_count": sum(r["sales_count"] for r in rows),
        "units_sold": sum(r["units_sold"] for r in rows),
        "revenue": str(quantize_money(revenue)),
        "cogs": str(quantize_money(cogs)),
        "gross_profit": str(gross_profit),
        "margin_pct": _margin_pct(gross_profit, revenue),
        "inventory_value": str(quantize_money(inventory_value)),
        "rows": rows,
    }
