# Overview: Flask API routes for the movement log (read-only).

from flask import Blueprint, request

from ..errors import LedgerError, error_response

movements_bp = Blueprint("movements", __name__, url_prefix="/api/movements")


@movements_bp.get("")
def list_movements_route():
    """
    Movement log, newest first.

    Query params:
    - product_id: int (optional)
    - movement_type: stock_in | sale | adjustment (optional)
    - reference_type: e.g. stock_in_edit, sale_deletion (optional)
    - limit: int (default 100, max 500)
    """
    from ..services.movement_service import list_movements

    limit = request.args.get("limit", default=100, type=int)
    try:
        rows = list_movements(
            product_id=request.args.get("product_id", type=int),
            movement_type=request.args.get("movement_type"),
            reference_type=request.args.get("reference_type"),
            limit=limit,
        )
    except LedgerError as e:
        return error_response(e)

    items = [m.to_dict() for m in rows]
    return {"items": items, "count": len(items)}
