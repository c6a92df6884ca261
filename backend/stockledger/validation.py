from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from stockledger.time_utils import parse_iso_date, parse_iso_datetime

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ConflictError, ValidationError  # noqa: F401  (re-exported for routes)
from .services.costing import to_decimal


# Maximum money amount: 9,999,999,999.9999
# This prevents database overflow issues and nonsensical prices/costs
MAX_MONEY = Decimal("9999999999.9999")

# Maximum units in one entry line
MAX_QUANTITY = 1_000_000

ORDER_TYPES = {"purchase", "preorder"}
CUSTOMER_TYPES = {"retail", "wholesale", "preorder"}
SALE_CHANNELS = {"group", "store", "overseas"}
SHIPPING_METHODS = {"pickup", "store_to_store", "home_delivery"}


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set
    - required_on_create: fields required for POST
    - extra_fields: accepted keys that are not model columns (e.g. `quantity`
      shorthand for size-less stock-ins); passed through unchanged
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore
    extra_fields: set[str] | None = None


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(value: Any, field: str) -> int:
    """Strict integer coercion: rejects floats, booleans and scientific notation."""
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    # Reject floats explicitly
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_money(value: Any, field: str) -> Decimal:
    """Non-negative, bounded money amount as Decimal."""
    amount = to_decimal(value, field_name=field)
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_MONEY:
        raise ValidationError(f"{field} cannot exceed {MAX_MONEY}")
    return amount


def coerce_date(value: Any, field: str = "date") -> date | None:
    try:
        return parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date")


def coerce_quantities(value: Any, field: str = "quantities") -> dict[str, int]:
    """size -> positive int map; zero lines are dropped."""
    if not isinstance(value, dict):
        raise ValidationError(f"{field} must be an object of size -> quantity")
    result = {}
    for size, raw in value.items():
        size_key = str(size).strip()
        if not size_key:
            raise ValidationError(f"{field} contains a blank size")
        qty = coerce_int(raw, f"{field}[{size_key}]")
        if qty < 0:
            raise ValidationError(f"{field}[{size_key}] must be >= 0")
        if qty > MAX_QUANTITY:
            raise ValidationError(f"{field}[{size_key}] cannot exceed {MAX_QUANTITY}")
        if qty:
            result[size_key] = result.get(size_key, 0) + qty
    return result


def check_choice(value: Any, allowed: set[str], field: str, *, nullable: bool = False) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if nullable:
            return None
        raise ValidationError(f"{field} is required")
    value = str(value).strip()
    if value not in allowed:
        raise ValidationError(f"{field} must be one of {sorted(allowed)}")
    return value


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    # Money / cost columns
    if isinstance(coltype, Numeric):
        return coerce_money(value, col.key)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Business dates
    if isinstance(coltype, Date) and not isinstance(coltype, DateTime):
        return coerce_date(value, col.key)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except Exception:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # JSON maps (quantities, size lists) are validated by the enforce_rules_* layer
    if isinstance(coltype, JSON):
        return value

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)
    extra = policy.extra_fields or set()

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields and k not in extra:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols and k not in extra:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in extra:
            patch[k] = raw
            continue

        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_category(patch: dict) -> None:
    sizes = patch.get("sizes")
    if sizes is None:
        return
    if not isinstance(sizes, list) or not all(isinstance(s, str) and s.strip() for s in sizes):
        raise ValidationError("sizes must be a list of non-blank strings")
    cleaned = [s.strip() for s in sizes]
    if len(set(cleaned)) != len(cleaned):
        raise ValidationError("sizes must not repeat")
    patch["sizes"] = cleaned


def enforce_rules_stock_in(patch: dict) -> None:
    """
    Business rules for stock-in create/edit that SQLAlchemy metadata cannot
    express. Keep these small and centralized.
    """
    if "quantities" in patch and "quantity" in patch:
        raise ValidationError("send either quantities (sized) or quantity (size-less), not both")
    if "quantities" in patch:
        patch["quantities"] = coerce_quantities(patch["quantities"])
    if "quantity" in patch:
        qty = coerce_int(patch["quantity"], "quantity")
        if qty <= 0:
            raise ValidationError("quantity must be > 0")
        patch["quantity"] = qty
    if "order_type" in patch:
        patch["order_type"] = check_choice(patch["order_type"], ORDER_TYPES, "order_type")


def enforce_rules_sale(patch: dict) -> None:
    # SALE requires qty > 0; cost is never accepted as input (backend snapshots COGS)
    if "quantity" in patch:
        if patch["quantity"] is None or patch["quantity"] <= 0:
            raise ValidationError("quantity must be > 0")
        if patch["quantity"] > MAX_QUANTITY:
            raise ValidationError(f"quantity cannot exceed {MAX_QUANTITY}")

    if "customer_type" in patch:
        patch["customer_type"] = check_choice(patch["customer_type"], CUSTOMER_TYPES, "customer_type")
    if "channel" in patch:
        patch["channel"] = check_choice(patch["channel"], SALE_CHANNELS, "channel", nullable=True)
    if "shipping_method" in patch:
        patch["shipping_method"] = check_choice(
            patch["shipping_method"], SHIPPING_METHODS, "shipping_method", nullable=True
        )
    if "size" in patch and patch["size"] == "":
        patch["size"] = None
