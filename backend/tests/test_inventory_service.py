"""
Stock-in service tests: creation, retroactive re-costing on edit/delete,
forced deletes and variant identity.
"""

from decimal import Decimal

import pytest

from stockledger.errors import (
    ConflictError,
    InsufficientHistoricalStock,
    NonPositiveQuantity,
    NotFound,
    OrphanedReference,
    ValidationError,
)
from stockledger.models import InventoryMovement, Product, SaleEntry, StockInEntry
from stockledger.services import inventory_service, sales_service
from stockledger.services.audit_service import audit_product

pytestmark = pytest.mark.inventory


def D(value):
    return Decimal(str(value))


def _stock_in(category, name="Logo Tee", **kwargs):
    kwargs.setdefault("unit_cost", "100")
    if category.sizes:
        kwargs.setdefault("quantities", {"M": 10})
    else:
        kwargs.setdefault("quantity", 10)
    return inventory_service.create_stock_in(category_id=category.id, product_name=name, **kwargs)


def _product(db_session, product_id):
    return db_session.get(Product, product_id)


def test_create_stock_in_creates_product_and_movement(db_session, category):
    result = _stock_in(category, name="Keychain", quantity=10, unit_cost="100")

    product = _product(db_session, result["product_id"])
    assert product.total_stock == 10
    assert product.size_stock == {}
    assert D(product.avg_unit_cost) == D("100")
    assert D(product.total_cost_value) == D("1000")

    entry = db_session.get(StockInEntry, result["stock_in_id"])
    assert entry.product_id == product.id
    assert entry.quantities == {"ONE_SIZE": 10}
    assert entry.total_quantity == 10
    assert D(entry.total_cost) == D("1000")

    movements = db_session.query(InventoryMovement).filter_by(product_id=product.id).all()
    assert len(movements) == 1
    assert movements[0].movement_type == "stock_in"
    assert movements[0].quantity == 10
    assert movements[0].current_total == 10


def test_create_stock_in_sized_logs_one_movement_per_size(db_session, sized_category):
    result = _stock_in(sized_category, quantities={"S": 2, "M": 3, "L": 0}, unit_cost="50")

    product = _product(db_session, result["product_id"])
    assert product.size_stock == {"S": 2, "M": 3}
    assert product.total_stock == 5

    sizes = sorted(
        m.size for m in db_session.query(InventoryMovement).filter_by(product_id=product.id).all()
    )
    assert sizes == ["M", "S"]


def test_create_stock_in_validation(db_session, category, sized_category):
    with pytest.raises(NonPositiveQuantity):
        _stock_in(category, quantity=0)
    with pytest.raises(ValidationError):
        _stock_in(sized_category, quantities={"XXL": 1})
    with pytest.raises(ValidationError):
        _stock_in(category, unit_cost="-1")
    with pytest.raises(ValidationError):
        _stock_in(category, order_type="gift")
    with pytest.raises(NotFound):
        inventory_service.create_stock_in(category_id=999, product_name="X", quantity=1, unit_cost="1")

    assert db_session.query(Product).count() == 0
    assert db_session.query(StockInEntry).count() == 0


def test_empty_and_null_variant_resolve_to_same_product(db_session, category):
    first = _stock_in(category, name="Poster", variant="")
    second = _stock_in(category, name="Poster", variant=None)

    assert first["product_id"] == second["product_id"]
    assert db_session.query(Product).count() == 1
    assert _product(db_session, first["product_id"]).total_stock == 20


def test_retroactive_recompute_on_unit_cost_edit(db_session, category):
    created = _stock_in(category, quantity=10, unit_cost="100")
    sale = sales_service.create_sale(product_id=created["product_id"], quantity=3, unit_price="150")
    assert sale["cost_of_goods_sold"] == D("300")

    result = inventory_service.edit_stock_in(created["stock_in_id"], {"unit_cost": "150"})

    assert result["recomputed_sales_count"] == 1
    assert D(db_session.get(SaleEntry, sale["sale_id"]).cost_of_goods_sold) == D("450")
    product = _product(db_session, created["product_id"])
    assert D(product.avg_unit_cost) == D("150")
    assert D(product.total_cost_value) == D("1050")
    assert product.total_stock == 7
    assert audit_product(product.id)["consistent"] is True


def test_metadata_edit_does_not_recost(db_session, category):
    created = _stock_in(category)
    before = db_session.query(InventoryMovement).count()

    result = inventory_service.edit_stock_in(
        created["stock_in_id"], {"note": "invoice #42", "date": "2024-03-01", "order_type": "preorder"}
    )

    assert result["recomputed_sales_count"] == 0
    entry = db_session.get(StockInEntry, created["stock_in_id"])
    assert entry.note == "invoice #42"
    assert entry.order_type == "preorder"
    assert entry.date.isoformat() == "2024-03-01"
    assert db_session.query(InventoryMovement).count() == before


def test_quantity_edit_adjusts_sizes_and_logs_adjustment(db_session, sized_category):
    created = _stock_in(sized_category, quantities={"S": 2, "M": 4}, unit_cost="10")

    inventory_service.edit_stock_in(created["stock_in_id"], {"quantities": {"S": 5, "M": 1}})

    product = _product(db_session, created["product_id"])
    assert product.size_stock == {"S": 5, "M": 1}
    assert product.total_stock == 6
    adjustments = (
        db_session.query(InventoryMovement)
        .filter_by(product_id=product.id, reference_type="stock_in_edit")
        .order_by(InventoryMovement.size.asc())
        .all()
    )
    assert [(m.size, m.quantity) for m in adjustments] == [("M", -3), ("S", 3)]


def test_edit_below_sold_quantity_fails_without_changes(db_session, category):
    created = _stock_in(category, quantity=5, unit_cost="10")
    sales_service.create_sale(product_id=created["product_id"], quantity=4, unit_price="20")

    with pytest.raises(InsufficientHistoricalStock):
        inventory_service.edit_stock_in(created["stock_in_id"], {"quantity": 2})

    entry = db_session.get(StockInEntry, created["stock_in_id"])
    assert entry.total_quantity == 5
    assert _product(db_session, created["product_id"]).total_stock == 1


def test_edit_rejects_unknown_fields(db_session, category):
    created = _stock_in(category)
    with pytest.raises(ValidationError):
        inventory_service.edit_stock_in(created["stock_in_id"], {"product_name": "Other"})


def test_delete_scenario_recosts_remaining_sale(db_session, category):
    first = _stock_in(category, quantity=10, unit_cost="100")
    product_id = first["product_id"]

    sale = sales_service.create_sale(product_id=product_id, quantity=4, unit_price="150")
    assert sale["cost_of_goods_sold"] == D("400")
    product = _product(db_session, product_id)
    assert product.total_stock == 6
    assert D(product.total_cost_value) == D("600")

    _stock_in(category, quantity=5, unit_cost="200")
    product = _product(db_session, product_id)
    assert product.total_stock == 11
    assert D(product.avg_unit_cost) == D("145.454545")
    assert D(product.total_cost_value) == D("1600")

    result = inventory_service.delete_stock_in(first["stock_in_id"])

    assert result["product_id"] == product_id
    assert result["recomputed_sales_count"] == 1
    product = _product(db_session, product_id)
    assert product.total_stock == 1
    assert D(product.avg_unit_cost) == D("200")
    assert D(product.total_cost_value) == D("200")
    assert D(db_session.get(SaleEntry, sale["sale_id"]).cost_of_goods_sold) == D("800")
    assert db_session.get(StockInEntry, first["stock_in_id"]) is None
    assert audit_product(product_id)["consistent"] is True


def test_delete_that_oversells_history_is_rejected(db_session, category):
    first = _stock_in(category, quantity=10, unit_cost="100")
    sales_service.create_sale(product_id=first["product_id"], quantity=8, unit_price="150")
    _stock_in(category, quantity=5, unit_cost="200")

    with pytest.raises(InsufficientHistoricalStock):
        inventory_service.delete_stock_in(first["stock_in_id"])

    assert db_session.get(StockInEntry, first["stock_in_id"]) is not None
    assert _product(db_session, first["product_id"]).total_stock == 7


def test_orphaned_delete_requires_force(db_session, category):
    created = _stock_in(category, name="Ghost")
    entry = db_session.get(StockInEntry, created["stock_in_id"])
    entry.product_id = None
    entry.product_name = "Renamed elsewhere"
    db_session.commit()

    with pytest.raises(OrphanedReference):
        inventory_service.delete_stock_in(created["stock_in_id"])

    result = inventory_service.delete_stock_in(created["stock_in_id"], force=True)
    assert result["product_id"] is None
    assert result["stock_rolled_back"] is False
    assert db_session.get(StockInEntry, created["stock_in_id"]) is None
    # No rollback: the product keeps its stock
    assert _product(db_session, created["product_id"]).total_stock == 10


def test_delete_missing_stock_in(db_session):
    with pytest.raises(NotFound):
        inventory_service.delete_stock_in(12345)


def test_list_products_and_stock_ins(db_session, category, sized_category):
    a = _stock_in(category, name="Badge")
    b = _stock_in(sized_category, name="Hoodie")

    assert [p.id for p in inventory_service.list_products(category.id)] == [a["product_id"]]
    assert len(inventory_service.list_products()) == 2
    assert [e.id for e in inventory_service.list_stock_ins(product_id=b["product_id"])] == [b["stock_in_id"]]
    assert inventory_service.get_product(a["product_id"]).product_name == "Badge"
    with pytest.raises(NotFound):
        inventory_service.get_product(999)


def test_create_category(db_session):
    category = inventory_service.create_category(name="Caps", sizes=["S", "M"])
    assert category.sizes == ["S", "M"]
    assert [c.name for c in inventory_service.list_categories()] == ["Caps"]

    with pytest.raises(ConflictError):
        inventory_service.create_category(name="Caps")
    with pytest.raises(ValidationError):
        inventory_service.create_category(name="Socks", sizes=["S", "S"])
