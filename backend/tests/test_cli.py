"""
CLI tests: `flask ledger ...` commands through Flask's CLI runner.
"""

import json

import pytest

from stockledger.models import Category, Product, StockInEntry
from stockledger.services import inventory_service
from stockledger.time_utils import today

pytestmark = pytest.mark.audit


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def test_audit_passes_on_clean_ledger(runner, db_session, category):
    inventory_service.create_stock_in(category_id=category.id, product_name="Keychain", quantity=3, unit_cost="7")

    result = runner.invoke(args=["ledger", "audit"])

    assert result.exit_code == 0, result.output
    assert "PASS product" in result.output
    assert "PASS 1 products audited, 0 inconsistent" in result.output


def test_audit_fails_on_divergence(runner, db_session, category):
    created = inventory_service.create_stock_in(
        category_id=category.id, product_name="Keychain", quantity=3, unit_cost="7"
    )
    product = db_session.get(Product, created["product_id"])
    product.total_cost_value = 1
    db_session.commit()

    result = runner.invoke(args=["ledger", "audit", "--product-id", str(created["product_id"])])

    assert result.exit_code == 1
    assert "FAIL product" in result.output
    assert "accounting identity" in result.output


def test_audit_json_output(runner, db_session, category):
    inventory_service.create_stock_in(category_id=category.id, product_name="Keychain", quantity=3, unit_cost="7")

    result = runner.invoke(args=["ledger", "audit", "--json"])

    assert result.exit_code == 0, result.output
    report = json.loads(result.output)
    assert report["consistent"] is True
    assert report["total_divergence"] == "0.0000"


def test_audit_unknown_product_exits_2(runner, db_session):
    result = runner.invoke(args=["ledger", "audit", "--product-id", "999"])
    assert result.exit_code == 2


def test_categories_create_and_list(runner, db_session):
    result = runner.invoke(args=["ledger", "categories", "create", "--name", "T-Shirts", "--sizes", "S, M,L"])
    assert result.exit_code == 0, result.output
    assert db_session.query(Category).filter_by(name="T-Shirts").one().sizes == ["S", "M", "L"]

    result = runner.invoke(args=["ledger", "categories", "create", "--name", "T-Shirts"])
    assert result.exit_code != 0

    result = runner.invoke(args=["ledger", "categories", "list"])
    assert "T-Shirts" in result.output
    assert "S, M, L" in result.output


def test_backfill_links(runner, db_session, category):
    created = inventory_service.create_stock_in(
        category_id=category.id, product_name="Keychain", quantity=3, unit_cost="7"
    )
    legacy = StockInEntry(
        date=today(),
        order_type="purchase",
        category_id=category.id,
        product_name="Keychain",
        variant=None,
        quantities={"ONE_SIZE": 1},
        total_quantity=1,
        unit_cost=7,
        total_cost=7,
    )
    db_session.add(legacy)
    db_session.commit()
    legacy_id = legacy.id

    result = runner.invoke(args=["ledger", "backfill-links", "--dry-run"])
    assert "DRY-RUN linked 1 stock-in rows" in result.output
    assert db_session.get(StockInEntry, legacy_id).product_id is None

    result = runner.invoke(args=["ledger", "backfill-links"])
    assert "PASS linked 1 stock-in rows" in result.output
    db_session.expire_all()
    assert db_session.get(StockInEntry, legacy_id).product_id == created["product_id"]
