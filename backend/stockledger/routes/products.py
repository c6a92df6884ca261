# Overview: Flask API routes for products; read-only snapshots and per-product audit.

# backend/stockledger/routes/products.py
"""
Products are created by stock-ins (variant resolver) and mutated only by the
ledger write path, so this blueprint is read-only.
"""
from flask import Blueprint, request

from ..errors import LedgerError, error_response

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("")
def list_products_route():
    """
    List products.

    Query params:
    - category_id: int (optional) - filter by category
    """
    from ..services.inventory_service import list_products

    category_id = request.args.get("category_id", type=int)
    items = [p.to_dict() for p in list_products(category_id)]
    return {"items": items, "count": len(items)}


@products_bp.get("/<int:product_id>")
def get_product_route(product_id: int):
    from ..services.inventory_service import get_product

    try:
        product = get_product(product_id)
    except LedgerError as e:
        return error_response(e)

    return product.to_dict()


@products_bp.get("/<int:product_id>/audit")
def audit_product_route(product_id: int):
    """Reconciliation report for one product (read-only)."""
    from ..services.audit_service import audit_product

    try:
        report = audit_product(product_id)
    except LedgerError as e:
        return error_response(e)

    return report
