# Overview: Weighted-average costing engine; pure computation over product cost state.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Mapping

from ..errors import (
    InsufficientHistoricalStock,
    InsufficientStock,
    NonPositiveQuantity,
    ValidationError,
    ZeroCostSale,
)
"""
Costing Engine Invariants (authoritative)

Weighted average cost:
- Every unit of a product shares one average cost.
- A stock-in merges its cost into the pool:
    avg = (total_cost_value + entry.total_cost) / (total_stock + entry.total_quantity)
- A sale never changes the average. It depletes quantity and cost value by
    cogs = avg * quantity
  capped at total_cost_value; the sale of the last unit takes the whole pool.
- A stock-in edit/delete recomputes the average from the full post-edit set of
  purchases (not from the delta) and, when the average moves, re-costs every
  sale of the product. total_cost_value = max(0, purchased cost - sum(COGS)).
  Sales are also re-costed when their stored COGS would leave the pool away
  from avg * stock.
- Deleting a sale restores exactly the COGS stored on the sale. The average
  stays put unless avg * stock would then miss total_cost_value; in that case
  it is re-blended as total_cost_value / total_stock.
- Editing a sale quantity: extra units leave at the average (as a sale),
  returned units come back at the sale's own unit cost (as a delete).

Accounting identity (per product, at every transaction boundary):
    sum(stock_in.total_cost) == total_cost_value + sum(sale.cost_of_goods_sold)

Precision:
- Money (costs, COGS, cost value) is quantized to 4 places, half-up.
- Average unit cost is quantized to 6 places, half-up.

No function in this module performs I/O.
"""

# Synthetic size key carried by stock-in entries of size-less products.
ONE_SIZE = "ONE_SIZE"

MONEY_PLACES = Decimal("0.0001")
COST_PLACES = Decimal("0.000001")
ZERO = Decimal("0")

DEFAULT_COST_EPSILON = Decimal("0.01")
DEFAULT_AVG_COST_EPSILON = Decimal("0.000001")


def to_decimal(value, *, field_name: str = "value") -> Decimal:
    """Coerce ints, strings, floats and Decimals to a finite Decimal."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # floats go through str() so 0.1 stays 0.1
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def quantize_money(value) -> Decimal:
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def quantize_cost(value) -> Decimal:
    return to_decimal(value).quantize(COST_PLACES, rounding=ROUND_HALF_UP)


def total_of(quantities: Mapping[str, int]) -> int:
    return sum(int(q) for q in quantities.values())


@dataclass(frozen=True)
class ProductState:
    size_stock: dict = field(default_factory=dict)
    total_stock: int = 0
    avg_unit_cost: Decimal = ZERO
    total_cost_value: Decimal = ZERO

    @classmethod
    def from_product(cls, product) -> "ProductState":
        return cls(
            size_stock={k: int(v) for k, v in (product.size_stock or {}).items()},
            total_stock=int(product.total_stock or 0),
            avg_unit_cost=quantize_cost(product.avg_unit_cost or 0),
            total_cost_value=quantize_money(product.total_cost_value or 0),
        )

    def apply_to(self, product) -> None:
        # Always assign a fresh dict so the JSON column registers the change.
        product.size_stock = dict(self.size_stock)
        product.total_stock = self.total_stock
        product.avg_unit_cost = self.avg_unit_cost
        product.total_cost_value = self.total_cost_value

    def available(self, size: str | None) -> int:
        if size is None or size == ONE_SIZE:
            return self.total_stock
        return int(self.size_stock.get(size, 0))


@dataclass(frozen=True)
class SaleCost:
    """Cost view of one recorded sale, as needed for re-costing."""
    sale_id: int
    quantity: int
    cost_of_goods_sold: Decimal


@dataclass(frozen=True)
class SaleApplication:
    state: ProductState
    cost_of_goods_sold: Decimal


@dataclass(frozen=True)
class StockInRevision:
    state: ProductState
    previous_avg_unit_cost: Decimal
    purchased_cost: Decimal
    purchased_quantity: int
    recomputed: bool
    # sale_id -> new COGS; only populated when recomputed is True
    sale_costs: dict = field(default_factory=dict)

    @property
    def recomputed_sales_count(self) -> int:
        return len(self.sale_costs)


def _check_quantities(quantities: Mapping[str, int]) -> int:
    for size, qty in quantities.items():
        if int(qty) < 0:
            raise NonPositiveQuantity(f"quantity for size {size!r} must be positive")
    total = total_of(quantities)
    if total <= 0:
        raise NonPositiveQuantity("total quantity must be greater than 0")
    return total


def _check_shape(state: ProductState, quantities: Mapping[str, int]) -> None:
    """Sized and size-less quantities never mix on one product."""
    sized = any(s != ONE_SIZE for s in quantities)
    sizeless = ONE_SIZE in quantities
    if sized and sizeless:
        raise ValidationError(f"quantities cannot mix {ONE_SIZE} with named sizes")
    if sizeless and state.size_stock:
        raise ValidationError("product is stocked by size; quantities must name sizes")
    if sized and not state.size_stock and state.total_stock > 0:
        raise ValidationError("product is size-less; quantities must use a single total")


def _shift_sizes(size_stock: Mapping[str, int], deltas: Mapping[str, int], error_cls, label: str) -> dict:
    """Add per-size deltas; sizes that reach zero are dropped from the map."""
    result = dict(size_stock)
    for size, delta in deltas.items():
        if size == ONE_SIZE or delta == 0:
            continue
        new_qty = int(result.get(size, 0)) + int(delta)
        if new_qty < 0:
            raise error_cls(f"{label}: size {size!r} would drop to {new_qty}")
        if new_qty == 0:
            result.pop(size, None)
        else:
            result[size] = new_qty
    return result


def apply_stock_in(state: ProductState, quantities: Mapping[str, int], total_cost) -> ProductState:
    """Merge a purchase into the product's stock and weighted average."""
    total_quantity = _check_quantities(quantities)
    _check_shape(state, quantities)
    total_cost = quantize_money(total_cost)
    if total_cost < 0:
        raise ValidationError("total cost must be >= 0")

    size_stock = _shift_sizes(state.size_stock, quantities, ValidationError, "stock-in")
    new_total_stock = state.total_stock + total_quantity
    new_total_cost_value = quantize_money(state.total_cost_value + total_cost)
    if new_total_stock > 0:
        new_avg = quantize_cost(new_total_cost_value / new_total_stock)
    else:
        new_avg = ZERO

    return ProductState(
        size_stock=size_stock,
        total_stock=new_total_stock,
        avg_unit_cost=new_avg,
        total_cost_value=new_total_cost_value,
    )


def _depletion_cost(state: ProductState, quantity: int) -> Decimal:
    """
    Cost value that leaves the pool with `quantity` units at the average.

    Never more than the pool holds; taking the last unit takes the whole pool.
    """
    if quantity >= state.total_stock:
        return state.total_cost_value
    return min(quantize_money(state.avg_unit_cost * quantity), state.total_cost_value)


def _settled_average(total_stock: int, avg_unit_cost: Decimal, total_cost_value: Decimal, epsilon) -> Decimal:
    """
    Keep the average unless it no longer prices the pool; then re-blend it.

    Units returned at a historical cost can move the pool away from
    avg * stock; the average follows the pool so the two stay in step.
    """
    if total_stock <= 0:
        return avg_unit_cost
    expected = quantize_money(avg_unit_cost * total_stock)
    if abs(expected - total_cost_value) <= to_decimal(epsilon):
        return avg_unit_cost
    return quantize_cost(total_cost_value / total_stock)


def apply_sale(state: ProductState, size: str | None, quantity: int) -> SaleApplication:
    """
    Deplete stock for a sale and compute its COGS at the current average.

    The average itself is unchanged by a sale. Selling the last unit moves
    whatever cost value is left into COGS, so no value strands at zero stock.
    """
    if quantity is None or int(quantity) <= 0:
        raise NonPositiveQuantity("sale quantity must be greater than 0")
    quantity = int(quantity)

    if size in (None, ONE_SIZE) and state.size_stock:
        raise ValidationError("size is required for a sized product")

    available = state.available(size)
    if available < quantity:
        label = f" ({size})" if size not in (None, ONE_SIZE) else ""
        raise InsufficientStock(
            f"insufficient stock{label}: available {available}, requested {quantity}",
            available=available,
            requested=quantity,
        )

    if state.avg_unit_cost <= 0:
        raise ZeroCostSale("product has no average cost; record a stock-in with a real unit cost first")

    cogs = _depletion_cost(state, quantity)
    size_stock = state.size_stock
    if size not in (None, ONE_SIZE):
        size_stock = _shift_sizes(state.size_stock, {size: -quantity}, InsufficientStock, "sale")

    new_state = ProductState(
        size_stock=size_stock,
        total_stock=state.total_stock - quantity,
        avg_unit_cost=state.avg_unit_cost,
        total_cost_value=quantize_money(state.total_cost_value - cogs),
    )
    return SaleApplication(state=new_state, cost_of_goods_sold=cogs)


def restore_sale(
    state: ProductState,
    size: str | None,
    quantity: int,
    cost_of_goods_sold,
    *,
    epsilon=DEFAULT_COST_EPSILON,
) -> ProductState:
    """
    Undo a deleted sale using the COGS stored on the sale, never its price.

    The average is left alone unless the restored pool no longer equals
    avg * stock within `epsilon`; then it is re-blended from the pool.
    """
    quantity = int(quantity)
    cogs = quantize_money(cost_of_goods_sold or 0)
    size_stock = state.size_stock
    if size not in (None, ONE_SIZE):
        size_stock = _shift_sizes(state.size_stock, {size: quantity}, ValidationError, "sale restore")

    total_stock = state.total_stock + quantity
    total_cost_value = quantize_money(state.total_cost_value + cogs)
    return ProductState(
        size_stock=size_stock,
        total_stock=total_stock,
        avg_unit_cost=_settled_average(total_stock, state.avg_unit_cost, total_cost_value, epsilon),
        total_cost_value=total_cost_value,
    )


def reprice_sale(
    state: ProductState,
    size: str | None,
    old_quantity: int,
    new_quantity: int,
    old_cost_of_goods_sold,
    *,
    epsilon=DEFAULT_COST_EPSILON,
) -> SaleApplication:
    """
    Change the quantity of a recorded sale.

    Extra units leave the pool at the current average, exactly like a new
    sale. Units handed back return at the sale's own per-unit cost
    (old COGS / old quantity), exactly like a partial delete.
    """
    if new_quantity is None or int(new_quantity) <= 0:
        raise NonPositiveQuantity("sale quantity must be greater than 0")
    old_quantity = int(old_quantity)
    new_quantity = int(new_quantity)
    old_cogs = quantize_money(old_cost_of_goods_sold or 0)

    diff = new_quantity - old_quantity
    if diff == 0:
        return SaleApplication(state=state, cost_of_goods_sold=old_cogs)

    if diff > 0:
        available = state.available(size)
        if available < diff:
            raise InsufficientStock(
                f"insufficient stock: available {available}, additional {diff} requested",
                available=available,
                requested=diff,
            )
        if state.avg_unit_cost <= 0:
            raise ZeroCostSale("product has no average cost; record a stock-in with a real unit cost first")
        moved = _depletion_cost(state, diff)
        new_cogs = quantize_money(old_cogs + moved)
        total_cost_value = quantize_money(state.total_cost_value - moved)
    else:
        new_cogs = quantize_money(old_cogs * new_quantity / old_quantity)
        total_cost_value = quantize_money(state.total_cost_value + (old_cogs - new_cogs))

    size_stock = state.size_stock
    if size not in (None, ONE_SIZE):
        size_stock = _shift_sizes(state.size_stock, {size: -diff}, InsufficientStock, "sale edit")

    total_stock = state.total_stock - diff
    if diff > 0:
        avg_unit_cost = state.avg_unit_cost
    else:
        avg_unit_cost = _settled_average(total_stock, state.avg_unit_cost, total_cost_value, epsilon)

    new_state = ProductState(
        size_stock=size_stock,
        total_stock=total_stock,
        avg_unit_cost=avg_unit_cost,
        total_cost_value=total_cost_value,
    )
    return SaleApplication(state=new_state, cost_of_goods_sold=new_cogs)


def revise_stock_in(
    state: ProductState,
    old_quantities: Mapping[str, int],
    new_quantities: Mapping[str, int],
    purchases: Iterable[tuple],
    sales: Iterable[SaleCost],
    *,
    avg_epsilon=DEFAULT_AVG_COST_EPSILON,
    cost_epsilon=DEFAULT_COST_EPSILON,
) -> StockInRevision:
    """
    Re-cost a product after one of its stock-ins was edited or deleted.

    Args:
        state: product state before the edit
        old_quantities: the entry's quantities before the edit
        new_quantities: the entry's quantities after the edit ({} for delete)
        purchases: (total_cost, total_quantity) of every stock-in of the
            product after the edit (the deleted entry excluded)
        sales: every sale of the product
        avg_epsilon: average-cost change that triggers re-costing of sales
        cost_epsilon: how far the stored COGS may leave the remaining pool
            away from new_avg * stock before sales are re-costed anyway

    Raises:
        InsufficientHistoricalStock: the edit would leave on-hand stock
            negative, or recorded sales consume more units than remain
            purchased.
    """
    sales = list(sales)

    sizes = set(old_quantities) | set(new_quantities)
    deltas = {s: int(new_quantities.get(s, 0)) - int(old_quantities.get(s, 0)) for s in sizes}
    size_stock = _shift_sizes(state.size_stock, deltas, InsufficientHistoricalStock, "purchase revision")
    new_total_stock = state.total_stock + sum(deltas.values())
    if new_total_stock < 0:
        raise InsufficientHistoricalStock(
            f"purchase revision would leave {new_total_stock} units on hand"
        )

    purchased_cost = ZERO
    purchased_quantity = 0
    for total_cost, total_quantity in purchases:
        purchased_cost += quantize_money(total_cost or 0)
        purchased_quantity += int(total_quantity or 0)

    sold_quantity = sum(s.quantity for s in sales)
    if purchased_quantity < sold_quantity:
        raise InsufficientHistoricalStock(
            f"recorded sales consume {sold_quantity} units but only {purchased_quantity} remain purchased"
        )

    if purchased_quantity > 0:
        new_avg = quantize_cost(purchased_cost / purchased_quantity)
    else:
        new_avg = ZERO

    recomputed = abs(new_avg - state.avg_unit_cost) > to_decimal(avg_epsilon)
    if not recomputed:
        stored_cogs = sum((quantize_money(s.cost_of_goods_sold or 0) for s in sales), ZERO)
        remaining = quantize_money(purchased_cost - stored_cogs)
        if abs(quantize_money(new_avg * new_total_stock) - remaining) > to_decimal(cost_epsilon):
            recomputed = True
    sale_costs = {}
    if recomputed:
        for sale in sales:
            sale_costs[sale.sale_id] = quantize_money(new_avg * sale.quantity)
        total_cogs = sum(sale_costs.values(), ZERO)
    else:
        total_cogs = sum((quantize_money(s.cost_of_goods_sold or 0) for s in sales), ZERO)

    new_state = ProductState(
        size_stock=size_stock,
        total_stock=new_total_stock,
        avg_unit_cost=new_avg,
        total_cost_value=max(ZERO, quantize_money(purchased_cost - total_cogs)),
    )
    return StockInRevision(
        state=new_state,
        previous_avg_unit_cost=state.avg_unit_cost,
        purchased_cost=purchased_cost,
        purchased_quantity=purchased_quantity,
        recomputed=recomputed,
        sale_costs=sale_costs,
    )


def identity_divergence(purchased_cost, total_cost_value, total_cogs) -> Decimal:
    """purchased - (on hand + sold); zero when the accounting identity holds."""
    return quantize_money(
        to_decimal(purchased_cost) - (to_decimal(total_cost_value) + to_decimal(total_cogs))
    )


def state_issues(state: ProductState, *, epsilon=DEFAULT_COST_EPSILON) -> list[str]:
    """Structural invariant violations of a product state (empty list = healthy)."""
    epsilon = to_decimal(epsilon)
    issues = []
    if state.total_stock < 0:
        issues.append(f"total_stock is negative ({state.total_stock})")
    negative = sorted(s for s, q in state.size_stock.items() if int(q) < 0)
    if negative:
        issues.append(f"negative size stock for sizes {negative}")
    if state.size_stock and total_of(state.size_stock) != state.total_stock:
        issues.append(
            f"size_stock sums to {total_of(state.size_stock)} but total_stock is {state.total_stock}"
        )
    if state.total_cost_value < 0:
        issues.append(f"total_cost_value is negative ({state.total_cost_value})")
    expected_value = quantize_money(state.avg_unit_cost * state.total_stock)
    if abs(expected_value - state.total_cost_value) > epsilon:
        issues.append(
            f"total_cost_value {state.total_cost_value} != avg_unit_cost * total_stock ({expected_value})"
        )
    return issues
