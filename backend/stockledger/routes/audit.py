# Overview: Flask API route for the ledger-wide reconciliation audit.

from flask import Blueprint, request

audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.get("")
def audit_all_route():
    """
    Read-only reconciliation over every product (or one category).

    Always 200: divergence is reported in the body ("consistent": false),
    not as an HTTP error.
    """
    from ..services.audit_service import audit_all

    category_id = request.args.get("category_id", type=int)
    return audit_all(category_id=category_id)
