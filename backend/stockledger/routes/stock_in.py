# Overview: Flask API routes for stock-in entries; parses input and returns JSON responses.

# backend/stockledger/routes/stock_in.py
"""
Stock-in (purchase) routes.

Sized categories send {"quantities": {"S": 2, "M": 5}}; size-less categories
send {"quantity": 7}. Every write returns the updated product snapshot.
"""
from flask import Blueprint, request

from ..errors import LedgerError, error_response
from ..models import StockInEntry
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_stock_in,
    ValidationError,
)

STOCK_IN_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "date", "order_type", "category_id", "product_name", "variant", "ip_category",
        "quantities", "unit_cost", "note", "created_by",
    },
    required_on_create={"category_id", "product_name", "unit_cost"},
    extra_fields={"quantity"},
)

STOCK_IN_EDIT_POLICY = ModelValidationPolicy(
    writable_fields={"date", "order_type", "quantities", "unit_cost", "note"},
    extra_fields={"quantity"},
)

stock_in_bp = Blueprint("stock_in", __name__, url_prefix="/api/stock-in")


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


@stock_in_bp.post("")
def create_stock_in_route():
    """
    Record a purchase.

    Resolves (or creates) the product by category + name + variant and merges
    the purchase into its weighted average cost.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=StockInEntry,
            payload=payload,
            policy=STOCK_IN_CREATE_POLICY,
            partial=False,
        )
        enforce_rules_stock_in(patch)
    except ValidationError as e:
        return error_response(e)

    from ..services.inventory_service import create_stock_in

    try:
        result = create_stock_in(**patch)
    except LedgerError as e:
        return error_response(e)

    return result, 201


@stock_in_bp.get("")
def list_stock_ins_route():
    from ..services.inventory_service import list_stock_ins

    category_id = request.args.get("category_id", type=int)
    product_id = request.args.get("product_id", type=int)
    limit = request.args.get("limit", default=100, type=int)

    items = [e.to_dict() for e in list_stock_ins(category_id=category_id, product_id=product_id, limit=limit)]
    return {"items": items, "count": len(items)}


@stock_in_bp.get("/<int:stock_in_id>")
def get_stock_in_route(stock_in_id: int):
    from ..services.inventory_service import get_stock_in

    try:
        entry = get_stock_in(stock_in_id)
    except LedgerError as e:
        return error_response(e)

    return entry.to_dict()


@stock_in_bp.patch("/<int:stock_in_id>")
def edit_stock_in_route(stock_in_id: int):
    """
    Edit a stock-in.

    Quantity or unit-cost changes re-cost the product and, when its average
    cost moves, every sale of that product.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(
            model=StockInEntry,
            payload=payload,
            policy=STOCK_IN_EDIT_POLICY,
            partial=True,
        )
        enforce_rules_stock_in(patch)
    except ValidationError as e:
        return error_response(e)

    if not patch:
        return {"error": "nothing to update", "code": "validation_error"}, 400

    from ..services.inventory_service import edit_stock_in

    try:
        result = edit_stock_in(stock_in_id, patch)
    except LedgerError as e:
        return error_response(e)

    return result


@stock_in_bp.delete("/<int:stock_in_id>")
def delete_stock_in_route(stock_in_id: int):
    """
    Delete a stock-in and re-cost its product.

    ?force=true deletes an entry whose product can no longer be resolved,
    without rolling back any stock.
    """
    from ..services.inventory_service import delete_stock_in

    try:
        result = delete_stock_in(stock_in_id, force=_flag("force"))
    except LedgerError as e:
        return error_response(e)

    return result
