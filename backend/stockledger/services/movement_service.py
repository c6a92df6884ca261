# Overview: Service-layer operations for the movement log; append-only inventory audit trail.

from __future__ import annotations

from typing import Optional

from sqlalchemy import func

from ..errors import ValidationError
from ..extensions import db
from ..models import InventoryMovement
from .costing import ONE_SIZE
"""
Movement Log Invariants (authoritative)

- Append-only audit log of every change to a product's on-hand quantity,
  plus zero-quantity 'adjustment' rows recording cost re-basing.
- No domain/business logic in the log itself.
- Rows are written inside the same DB transaction as the change they record
  (flush only, never commit here).
- The signed quantities of a product's movements sum to its total_stock.
"""

MOVEMENT_STOCK_IN = "stock_in"
MOVEMENT_SALE = "sale"
MOVEMENT_ADJUSTMENT = "adjustment"

MOVEMENT_TYPES = {MOVEMENT_STOCK_IN, MOVEMENT_SALE, MOVEMENT_ADJUSTMENT}

REF_STOCK_IN = "stock_in"
REF_STOCK_IN_EDIT = "stock_in_edit"
REF_STOCK_IN_DELETION = "stock_in_deletion"
REF_SALE = "sale"
REF_SALE_EDIT = "sale_edit"
REF_SALE_DELETION = "sale_deletion"


def append_movement(
    *,
    product_id: int,
    movement_type: str,
    quantity: int,
    previous_total: int,
    current_total: int,
    size: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    note: Optional[str] = None,
    created_by: Optional[str] = None,
) -> InventoryMovement:
    """
    Append-only movement record.

    - No deletes/updates of existing rows.
    - created_at is system time (db default).
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"unknown movement_type {movement_type!r}")

    mv = InventoryMovement(
        product_id=product_id,
        movement_type=movement_type,
        size=size,
        quantity=quantity,
        previous_total=previous_total,
        current_total=current_total,
        reference_type=reference_type,
        reference_id=reference_id,
        note=(note or None) and note[:255],
        created_by=created_by,
    )
    db.session.add(mv)
    db.session.flush()  # ensures mv.id is assigned without committing
    return mv


def append_size_movements(
    *,
    product_id: int,
    movement_type: str,
    before: dict,
    after: dict,
    deltas: dict,
    before_total: int,
    reference_type: str,
    reference_id: int,
    note: str,
    created_by: str | None = None,
) -> list[InventoryMovement]:
    """
    One movement per size that changed. Size-less deltas (ONE_SIZE) become a
    single product-level movement whose totals are product totals; named sizes
    carry per-size totals taken from `before`/`after`.
    """
    rows = []
    running_total = before_total
    for size in sorted(deltas):
        qty = int(deltas[size])
        if qty == 0:
            continue
        if size == ONE_SIZE:
            rows.append(append_movement(
                product_id=product_id,
                movement_type=movement_type,
                size=None,
                quantity=qty,
                previous_total=running_total,
                current_total=running_total + qty,
                reference_type=reference_type,
                reference_id=reference_id,
                note=note,
                created_by=created_by,
            ))
        else:
            rows.append(append_movement(
                product_id=product_id,
                movement_type=movement_type,
                size=size,
                quantity=qty,
                previous_total=int(before.get(size, 0)),
                current_total=int(after.get(size, 0)),
                reference_type=reference_type,
                reference_id=reference_id,
                note=f"{note} ({size})",
                created_by=created_by,
            ))
        running_total += qty
    return rows


def list_movements(
    *,
    product_id: int | None = None,
    movement_type: str | None = None,
    reference_type: str | None = None,
    limit: int = 100,
) -> list[InventoryMovement]:
    q = db.session.query(InventoryMovement)
    if product_id is not None:
        q = q.filter(InventoryMovement.product_id == product_id)
    if movement_type:
        if movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"movement_type must be one of {sorted(MOVEMENT_TYPES)}")
        q = q.filter(InventoryMovement.movement_type == movement_type)
    if reference_type:
        q = q.filter(InventoryMovement.reference_type == reference_type)

    limit = max(1, min(int(limit), 500))
    return (
        q.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
        .limit(limit)
        .all()
    )


def net_quantity(product_id: int) -> int:
    """Sum of signed movement quantities for a product."""
    total = db.session.query(
        func.coalesce(func.sum(InventoryMovement.quantity), 0)
    ).filter(InventoryMovement.product_id == product_id).scalar()
    return int(total or 0)
