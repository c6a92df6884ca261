import unittest
from decimal import Decimal
from unittest import mock

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Category, InventoryMovement, Product, SaleEntry, StockInEntry
from stockledger.services import audit_service, inventory_service, sales_service
from stockledger.time_utils import today


class AuditServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = create_app({
            "SECRET_KEY": "test",
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SQLALCHEMY_TRACK_MODIFICATIONS": False,
            "TESTING": True,
        })
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        db.session.query(InventoryMovement).delete()
        db.session.query(SaleEntry).delete()
        db.session.query(StockInEntry).delete()
        db.session.query(Product).delete()
        db.session.query(Category).delete()
        db.session.commit()

        self.category = Category(name="Figures", sizes=[])
        db.session.add(self.category)
        db.session.commit()

        first = inventory_service.create_stock_in(
            category_id=self.category.id, product_name="Dragon", quantity=10, unit_cost="100"
        )
        self.product_id = first["product_id"]
        self.first_stock_in_id = first["stock_in_id"]
        self.sale = sales_service.create_sale(product_id=self.product_id, quantity=4, unit_price="150")
        inventory_service.create_stock_in(
            category_id=self.category.id, product_name="Dragon", quantity=5, unit_cost="200"
        )

    def test_consistent_after_normal_operations(self):
        report = audit_service.audit_product(self.product_id)

        self.assertTrue(report["consistent"])
        self.assertEqual(report["divergence"], Decimal("0"))
        details = report["details"]
        self.assertEqual(details["purchased_cost"], "2000.0000")
        self.assertEqual(details["cogs_total"], "400.0000")
        self.assertEqual(details["purchased_quantity"], 15)
        self.assertEqual(details["sold_quantity"], 4)
        self.assertEqual(details["movement_net"], 11)
        self.assertEqual(details["issues"], [])

    def test_consistent_after_recosting_delete(self):
        inventory_service.delete_stock_in(self.first_stock_in_id)
        sales_service.create_sale(product_id=self.product_id, quantity=1, unit_price="250")

        result = audit_service.audit_all()

        self.assertTrue(result["consistent"])
        self.assertEqual(result["product_count"], 1)
        self.assertEqual(result["total_divergence"], Decimal("0"))

    def test_audit_is_idempotent_and_read_only(self):
        before = db.session.get(Product, self.product_id).version_id
        first = audit_service.audit_all()
        second = audit_service.audit_all()

        self.assertEqual(first, second)
        db.session.expire_all()
        self.assertEqual(db.session.get(Product, self.product_id).version_id, before)

    def test_detects_corrupted_cost_value(self):
        product = db.session.get(Product, self.product_id)
        product.total_cost_value = Decimal(str(product.total_cost_value)) + Decimal("50")
        db.session.commit()

        report = audit_service.audit_product(self.product_id)

        self.assertFalse(report["consistent"])
        self.assertEqual(report["divergence"], Decimal("-50"))
        self.assertTrue(any("accounting identity" in i for i in report["details"]["issues"]))

        result = audit_service.audit_all()
        self.assertEqual(result["inconsistent_product_ids"], [self.product_id])

    def test_detects_stock_that_does_not_match_history(self):
        product = db.session.get(Product, self.product_id)
        product.total_stock = product.total_stock + 1
        db.session.commit()

        issues = audit_service.audit_product(self.product_id)["details"]["issues"]

        self.assertTrue(any("total_stock" in i and "purchased" in i for i in issues))
        self.assertTrue(any("movement log" in i for i in issues))

    def test_reports_orphaned_sale(self):
        sale = db.session.get(SaleEntry, self.sale["sale_id"])
        sale.product_id = None
        db.session.commit()

        result = audit_service.audit_all()

        self.assertFalse(result["consistent"])
        self.assertEqual(result["orphaned_sales"], [self.sale["sale_id"]])

    def test_reports_unresolved_stock_in(self):
        entry = StockInEntry(
            date=today(),
            order_type="purchase",
            category_id=self.category.id,
            product_name="Unicorn",
            variant="",
            quantities={"ONE_SIZE": 1},
            total_quantity=1,
            unit_cost=5,
            total_cost=5,
        )
        db.session.add(entry)
        db.session.commit()

        result = audit_service.audit_all(category_id=self.category.id)

        self.assertFalse(result["consistent"])
        self.assertEqual(result["unresolved_stock_ins"], [{"stock_in_id": entry.id, "reason": "orphaned"}])

    def test_audit_all_continues_past_failing_product(self):
        other = inventory_service.create_stock_in(
            category_id=self.category.id, product_name="Phoenix", quantity=2, unit_cost="30"
        )
        real_audit = audit_service.audit_product

        def flaky(product_id, **kwargs):
            if product_id == self.product_id:
                raise RuntimeError("boom")
            return real_audit(product_id, **kwargs)

        with mock.patch.object(audit_service, "audit_product", side_effect=flaky):
            with self.assertLogs(self.app.logger, level="ERROR"):
                result = audit_service.audit_all()

        self.assertFalse(result["consistent"])
        self.assertEqual(result["failures"], [{"product_id": self.product_id, "error": "boom"}])
        self.assertEqual([r["product_id"] for r in result["products"]], [other["product_id"]])

    def test_epsilon_tolerates_small_drift(self):
        product = db.session.get(Product, self.product_id)
        product.total_cost_value = Decimal(str(product.total_cost_value)) + Decimal("0.005")
        db.session.commit()

        self.assertEqual(audit_service.audit_product(self.product_id)["divergence"], Decimal("-0.005"))
        self.assertTrue(audit_service.audit_product(self.product_id)["consistent"])
        self.assertFalse(audit_service.audit_product(self.product_id, epsilon="0.001")["consistent"])


if __name__ == "__main__":
    unittest.main()
