# Overview: Flask API routes for reports; profit and loss over recorded sales.

from flask import Blueprint, request

from ..errors import LedgerError, error_response

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


@reports_bp.get("/profit")
def profit_report_route():
    """
    Revenue, COGS (as stored on each sale) and gross profit.

    Query params:
    - start_date, end_date: ISO dates, inclusive (optional)
    - product_id: int (optional)
    - category_id: int (optional)
    """
    from ..services.reporting_service import profit_summary

    try:
        return profit_summary(
            start_date=request.args.get("start_date"),
            end_date=request.args.get("end_date"),
            product_id=request.args.get("product_id", type=int),
            category_id=request.args.get("category_id", type=int),
        )
    except LedgerError as e:
        return error_response(e)
