"""
Sales service tests: COGS snapshots, rejection paths, exact restore on delete.
"""

from decimal import Decimal

import pytest

from stockledger.errors import (
    InsufficientStock,
    NonPositiveQuantity,
    NotFound,
    OrphanedReference,
    ValidationError,
    ZeroCostSale,
)
from stockledger.models import InventoryMovement, Product, SaleEntry
from stockledger.services import audit_service, inventory_service, sales_service

pytestmark = pytest.mark.sales


def D(value):
    return Decimal(str(value))


def _snapshot(db_session, product_id):
    db_session.expire_all()
    p = db_session.get(Product, product_id)
    return dict(p.size_stock), p.total_stock, D(p.avg_unit_cost), D(p.total_cost_value)


@pytest.fixture
def tee(db_session, sized_category):
    result = inventory_service.create_stock_in(
        category_id=sized_category.id,
        product_name="Logo Tee",
        variant="Black",
        quantities={"S": 3, "M": 4},
        unit_cost="33.3333",
    )
    return result["product_id"]


@pytest.fixture
def keychain(db_session, category):
    result = inventory_service.create_stock_in(
        category_id=category.id, product_name="Keychain", quantity=10, unit_cost="100"
    )
    return result["product_id"]


def test_create_sale_snapshots_cogs(db_session, keychain):
    result = sales_service.create_sale(
        product_id=keychain, quantity=4, unit_price="150", customer_type="wholesale", channel="store"
    )

    assert result["cost_of_goods_sold"] == D("400")
    sale = db_session.get(SaleEntry, result["sale_id"])
    assert D(sale.total_amount) == D("600")
    assert sale.customer_type == "wholesale"
    assert sale.product_name == "Keychain"
    assert result["product"]["total_stock"] == 6
    assert D(result["product"]["total_cost_value"]) == D("600")

    movement = db_session.query(InventoryMovement).filter_by(reference_type="sale").one()
    assert movement.quantity == -4
    assert movement.previous_total == 10
    assert movement.current_total == 6


def test_sale_price_never_affects_cost(db_session, keychain):
    cheap = sales_service.create_sale(product_id=keychain, quantity=1, unit_price="1")
    pricey = sales_service.create_sale(product_id=keychain, quantity=1, unit_price="9999")
    assert cheap["cost_of_goods_sold"] == pricey["cost_of_goods_sold"] == D("100")


def test_sale_round_trip_restores_exactly(db_session, tee):
    before = _snapshot(db_session, tee)

    sale = sales_service.create_sale(product_id=tee, size="S", quantity=2, unit_price="80")
    assert _snapshot(db_session, tee) != before

    result = sales_service.delete_sale(sale["sale_id"])

    assert result["product_id"] == tee
    assert result["restored_quantity"] == 2
    assert result["restored_cost"] == sale["cost_of_goods_sold"]
    assert _snapshot(db_session, tee) == before
    assert db_session.get(SaleEntry, sale["sale_id"]) is None


def test_selling_last_unit_of_size_removes_it(db_session, tee):
    sales_service.create_sale(product_id=tee, size="S", quantity=3, unit_price="80")
    size_stock, total, _, _ = _snapshot(db_session, tee)
    assert size_stock == {"M": 4}
    assert total == 4


def test_insufficient_stock_leaves_no_trace(db_session, tee):
    before = _snapshot(db_session, tee)
    movements = db_session.query(InventoryMovement).count()

    with pytest.raises(InsufficientStock) as exc_info:
        sales_service.create_sale(product_id=tee, size="S", quantity=4, unit_price="80")

    assert exc_info.value.available == 3
    assert _snapshot(db_session, tee) == before
    assert db_session.query(SaleEntry).count() == 0
    assert db_session.query(InventoryMovement).count() == movements


def test_zero_cost_sale_is_rejected(db_session, category):
    free = inventory_service.create_stock_in(
        category_id=category.id, product_name="Flyer", quantity=50, unit_cost="0"
    )

    with pytest.raises(ZeroCostSale):
        sales_service.create_sale(product_id=free["product_id"], quantity=1, unit_price="5")

    assert db_session.query(SaleEntry).count() == 0


def test_sale_validation(db_session, tee, keychain):
    with pytest.raises(ValidationError):
        sales_service.create_sale(product_id=tee, quantity=1, unit_price="10")  # size missing
    with pytest.raises(ValidationError):
        sales_service.create_sale(product_id=tee, size="XXL", quantity=1, unit_price="10")
    with pytest.raises(ValidationError):
        sales_service.create_sale(product_id=keychain, size="M", quantity=1, unit_price="10")
    with pytest.raises(NonPositiveQuantity):
        sales_service.create_sale(product_id=keychain, quantity=0, unit_price="10")
    with pytest.raises(ValidationError):
        sales_service.create_sale(product_id=keychain, quantity=1, unit_price="10", channel="mail")
    with pytest.raises(NotFound):
        sales_service.create_sale(product_id=999, quantity=1, unit_price="10")


def test_edit_sale_quantity_increase_costs_extra_units_at_average(db_session, category, keychain):
    sale = sales_service.create_sale(product_id=keychain, quantity=2, unit_price="150")
    # a later, more expensive purchase moves the average to 150
    inventory_service.create_stock_in(
        category_id=category.id, product_name="Keychain", quantity=8, unit_cost="200"
    )

    result = sales_service.edit_sale(sale["sale_id"], {"quantity": 3, "unit_price": "120"})

    assert result["cost_of_goods_sold"] == D("350")
    edited = db_session.get(SaleEntry, sale["sale_id"])
    assert edited.quantity == 3
    assert D(edited.total_amount) == D("360")
    assert result["product"]["total_stock"] == 15
    assert D(result["product"]["total_cost_value"]) == D("2250")
    assert audit_service.audit_product(keychain)["consistent"] is True


@pytest.fixture
def restocked_sale(db_session, category, keychain):
    """10 @ 100, sell 4, then 5 @ 200."""
    sale = sales_service.create_sale(product_id=keychain, quantity=4, unit_price="150")
    inventory_service.create_stock_in(
        category_id=category.id, product_name="Keychain", quantity=5, unit_cost="200"
    )
    return sale


def test_delete_sale_after_restock_then_sell_out(db_session, keychain, restocked_sale):
    sales_service.delete_sale(restocked_sale["sale_id"])

    _, total, avg, value = _snapshot(db_session, keychain)
    assert total == 15
    assert value == D("2000")
    assert avg == D("133.333333")
    assert audit_service.audit_product(keychain)["consistent"] is True

    result = sales_service.create_sale(product_id=keychain, quantity=15, unit_price="150")

    assert result["cost_of_goods_sold"] == D("2000")
    _, total, _, value = _snapshot(db_session, keychain)
    assert total == 0
    assert value == D("0")
    assert audit_service.audit_product(keychain)["consistent"] is True


def test_edit_sale_up_after_restock_then_sell_out(db_session, keychain, restocked_sale):
    edited = sales_service.edit_sale(restocked_sale["sale_id"], {"quantity": 10})
    assert audit_service.audit_product(keychain)["consistent"] is True

    last = sales_service.create_sale(product_id=keychain, quantity=5, unit_price="150")

    assert edited["cost_of_goods_sold"] + last["cost_of_goods_sold"] == D("2000")
    _, total, _, value = _snapshot(db_session, keychain)
    assert total == 0
    assert value == D("0")
    assert audit_service.audit_product(keychain)["consistent"] is True


def test_edit_sale_down_after_restock_returns_sale_cost(db_session, keychain, restocked_sale):
    result = sales_service.edit_sale(restocked_sale["sale_id"], {"quantity": 1})

    assert result["cost_of_goods_sold"] == D("100")
    _, total, _, value = _snapshot(db_session, keychain)
    assert total == 14
    assert value == D("1900")
    assert audit_service.audit_product(keychain)["consistent"] is True


def test_edit_sale_rejects_size_change(db_session, tee):
    sale = sales_service.create_sale(product_id=tee, size="S", quantity=1, unit_price="80")
    with pytest.raises(ValidationError):
        sales_service.edit_sale(sale["sale_id"], {"size": "M"})


def test_delete_sale_of_missing_product_requires_force(db_session, keychain):
    sale = sales_service.create_sale(product_id=keychain, quantity=1, unit_price="150")
    row = db_session.get(SaleEntry, sale["sale_id"])
    row.product_id = None
    db_session.commit()

    with pytest.raises(OrphanedReference):
        sales_service.delete_sale(sale["sale_id"])

    result = sales_service.delete_sale(sale["sale_id"], force=True)
    assert result["product_id"] is None
    assert result["restored_quantity"] == 0


def test_list_sales_filters(db_session, keychain, tee):
    sales_service.create_sale(product_id=keychain, quantity=1, unit_price="150", customer_type="retail")
    sales_service.create_sale(product_id=tee, size="M", quantity=1, unit_price="80", customer_type="preorder")

    assert len(sales_service.list_sales()) == 2
    assert [s.product_id for s in sales_service.list_sales(customer_type="preorder")] == [tee]
    assert [s.customer_type for s in sales_service.list_sales(product_id=keychain)] == ["retail"]
    with pytest.raises(NotFound):
        sales_service.get_sale(999)
