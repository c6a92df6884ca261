# Overview: Flask API routes for product categories; parses input and returns JSON responses.

from flask import Blueprint, request

from ..errors import LedgerError, error_response
from ..models import Category
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_category,
    ValidationError,
)

CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields={"name", "sizes"},
    required_on_create={"name"},
)

categories_bp = Blueprint("categories", __name__, url_prefix="/api/categories")


@categories_bp.get("")
def list_categories_route():
    from ..services.inventory_service import list_categories

    items = [c.to_dict() for c in list_categories()]
    return {"items": items, "count": len(items)}


@categories_bp.post("")
def create_category_route():
    """
    Create a category.

    Body: {"name": "T-Shirts", "sizes": ["S", "M", "L"]}
    An empty or missing size list makes the category size-less.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Category, payload=payload, policy=CATEGORY_POLICY, partial=False)
        enforce_rules_category(patch)
    except ValidationError as e:
        return error_response(e)

    from ..services.inventory_service import create_category

    try:
        category = create_category(name=patch["name"], sizes=patch.get("sizes"))
    except LedgerError as e:
        return error_response(e)

    return category.to_dict(), 201
