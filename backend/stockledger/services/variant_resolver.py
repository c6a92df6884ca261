# Overview: Variant resolver; maps (category, name, variant) to one canonical Product.

from __future__ import annotations

import re

from sqlalchemy import func

from ..errors import AmbiguousVariant, NotFound, OrphanedReference, ValidationError
from ..extensions import db
from ..models import Category, Product, StockInEntry
"""
Variant Resolver Invariants (authoritative)

Natural key normalization:
- product_name: trimmed, internal whitespace collapsed; blank is rejected.
- variant (color / IP line): None, "" and whitespace-only are ONE value, the
  empty string. Anything else is trimmed with internal whitespace collapsed.
- Legacy rows may still hold NULL, padded or doubly spaced values. Lookups
  narrow in SQL on the whitespace-free form (COALESCE + REPLACE) and confirm
  the normalized key in Python, so such rows are matched, not duplicated.

Identity:
- At most one Product per normalized (category_id, product_name, variant).
- If more than one row matches (legacy data or a race), resolution fails with
  AmbiguousVariant. The resolver never picks one.
- New StockInEntry/SaleEntry rows store Product.id; the natural key is only
  used to resolve legacy rows that have no product_id.
"""

_WS = re.compile(r"\s+")


def normalize_variant(value) -> str:
    if value is None:
        return ""
    return _WS.sub(" ", str(value)).strip()


def normalize_product_name(value) -> str:
    name = _WS.sub(" ", str(value or "")).strip()
    if not name:
        raise ValidationError("product_name cannot be blank")
    return name


# Stored whitespace REPLACE strips before comparing; exotic separators
# (e.g. NBSP) in legacy rows are not folded by the SQL pre-filter.
_SQL_WHITESPACE = (" ", "\t", "\n", "\r")


def squeezed(column):
    """SQL expression: `column` (NULL as "") with its whitespace removed."""
    expr = func.coalesce(column, "")
    for ch in _SQL_WHITESPACE:
        expr = func.replace(expr, ch, "")
    return expr


def natural_key_clauses(model, category_id: int, product_name: str, variant: str) -> list:
    """
    SQL pre-filter for rows of `model` whose natural key may normalize to
    (category_id, product_name, variant). Confirm with `matches_natural_key`.
    """
    return [
        model.category_id == category_id,
        squeezed(model.product_name) == product_name.replace(" ", ""),
        squeezed(model.variant) == variant.replace(" ", ""),
    ]


def matches_natural_key(row, product_name: str, variant: str) -> bool:
    return (
        normalize_variant(row.product_name) == product_name
        and normalize_variant(row.variant) == variant
    )


def _natural_key_matches(category_id: int, product_name: str, variant: str) -> list[Product]:
    candidates = (
        db.session.query(Product)
        .filter(*natural_key_clauses(Product, category_id, product_name, variant))
        .order_by(Product.id.asc())
        .all()
    )
    return [p for p in candidates if matches_natural_key(p, product_name, variant)]


def find_product(category_id: int, product_name, variant) -> Product | None:
    """
    Look up a product by natural key without creating it.

    Raises:
        AmbiguousVariant: more than one product matches the normalized key
    """
    name = normalize_product_name(product_name)
    key = normalize_variant(variant)
    matches = _natural_key_matches(category_id, name, key)
    if len(matches) > 1:
        ids = [p.id for p in matches]
        raise AmbiguousVariant(
            f"{len(matches)} products match category={category_id} name={name!r} variant={key!r}: {ids}",
            candidate_ids=ids,
        )
    return matches[0] if matches else None


def get_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFound(f"category {category_id} not found")
    return category


def resolve(category_id: int, product_name, variant, *, ip_category: str | None = None) -> Product:
    """
    Return the product for a natural key, creating it with zero stock and
    zero cost if it does not exist yet. New rows are flushed, not committed.
    """
    get_category(category_id)
    existing = find_product(category_id, product_name, variant)
    if existing is not None:
        return existing

    product = Product(
        category_id=category_id,
        product_name=normalize_product_name(product_name),
        variant=normalize_variant(variant),
        ip_category=normalize_variant(ip_category) or None,
        size_stock={},
        total_stock=0,
        avg_unit_cost=0,
        total_cost_value=0,
    )
    db.session.add(product)
    db.session.flush()
    return product


def resolve_stock_in_product(entry: StockInEntry, *, lock_query=None) -> Product:
    """
    The product that owns a stock-in entry.

    Uses the stored product_id; legacy rows without one are resolved by
    natural key (never created).

    Raises:
        OrphanedReference: the entry no longer resolves to any product
        AmbiguousVariant: a legacy natural key matches several products
    """
    if entry.product_id is not None:
        query = db.session.query(Product).filter_by(id=entry.product_id)
        if lock_query is not None:
            query = lock_query(query)
        product = query.first()
        if product is None:
            raise OrphanedReference(
                f"stock-in {entry.id} references product {entry.product_id}, which no longer exists"
            )
        return product

    product = find_product(entry.category_id, entry.product_name, entry.variant)
    if product is None:
        raise OrphanedReference(
            f"stock-in {entry.id} ({entry.product_name!r}, variant={normalize_variant(entry.variant)!r}) "
            "does not resolve to any product"
        )
    return product


def backfill_stock_in_links(*, dry_run: bool = False) -> dict:
    """
    One-time compatibility pass for legacy stock-in rows.

    Stores the resolved product_id on rows that lack one and rewrites their
    variant to the canonical form. Rows that resolve to no product or to
    several products are reported and left untouched.
    """
    linked, orphaned, ambiguous = [], [], []
    rows = (
        db.session.query(StockInEntry)
        .filter(StockInEntry.product_id.is_(None))
        .order_by(StockInEntry.id.asc())
        .all()
    )
    for entry in rows:
        try:
            product = find_product(entry.category_id, entry.product_name, entry.variant)
        except AmbiguousVariant as exc:
            ambiguous.append({"stock_in_id": entry.id, "candidate_ids": exc.candidate_ids})
            continue
        if product is None:
            orphaned.append(entry.id)
            continue
        if not dry_run:
            entry.product_id = product.id
            entry.variant = normalize_variant(entry.variant)
        linked.append({"stock_in_id": entry.id, "product_id": product.id})

    if dry_run:
        db.session.rollback()
    else:
        db.session.commit()

    return {
        "dry_run": dry_run,
        "linked": linked,
        "orphaned": orphaned,
        "ambiguous": ambiguous,
    }
