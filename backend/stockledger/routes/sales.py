# Overview: Flask API routes for sale entries; parses input and returns JSON responses.

from flask import Blueprint, request

from ..errors import LedgerError, error_response
from ..models import SaleEntry
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_sale,
    ValidationError,
)

# cost_of_goods_sold is never writable: the backend snapshots it from the product's average cost
SALE_CREATE_POLICY = ModelValidationPolicy(
    writable_fields={
        "date", "customer_type", "product_id", "size", "channel", "shipping_method",
        "unit_price", "quantity", "note", "created_by",
    },
    required_on_create={"product_id", "unit_price", "quantity"},
)

SALE_EDIT_POLICY = ModelValidationPolicy(
    writable_fields={"date", "customer_type", "channel", "shipping_method", "unit_price", "quantity", "note"},
)

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("")
def create_sale_route():
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=SaleEntry, payload=payload, policy=SALE_CREATE_POLICY, partial=False)
        enforce_rules_sale(patch)
    except ValidationError as e:
        return error_response(e)

    from ..services.sales_service import create_sale

    try:
        result = create_sale(**patch)
    except LedgerError as e:
        return error_response(e)

    return result, 201


@sales_bp.get("")
def list_sales_route():
    from ..services.sales_service import list_sales

    customer_type = request.args.get("customer_type")
    product_id = request.args.get("product_id", type=int)
    limit = request.args.get("limit", default=100, type=int)

    try:
        sales = list_sales(customer_type=customer_type, product_id=product_id, limit=limit)
    except LedgerError as e:
        return error_response(e)

    items = [s.to_dict() for s in sales]
    return {"items": items, "count": len(items)}


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    from ..services.sales_service import get_sale

    try:
        sale = get_sale(sale_id)
    except LedgerError as e:
        return error_response(e)

    return sale.to_dict()


@sales_bp.patch("/<int:sale_id>")
def edit_sale_route(sale_id: int):
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=SaleEntry, payload=payload, policy=SALE_EDIT_POLICY, partial=True)
        enforce_rules_sale(patch)
    except ValidationError as e:
        return error_response(e)

    if not patch:
        return {"error": "nothing to update", "code": "validation_error"}, 400

    from ..services.sales_service import edit_sale

    try:
        result = edit_sale(sale_id, patch)
    except LedgerError as e:
        return error_response(e)

    return result


@sales_bp.delete("/<int:sale_id>")
def delete_sale_route(sale_id: int):
    """
    Delete a sale. Stock and cost are restored from the sale's stored COGS.

    ?force=true deletes a sale whose product no longer exists.
    """
    from ..services.sales_service import delete_sale

    force = (request.args.get("force") or "").strip().lower() in ("1", "true", "yes")
    try:
        result = delete_sale(sale_id, force=force)
    except LedgerError as e:
        return error_response(e)

    return result
