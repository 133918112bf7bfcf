from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import transaction
from django.test import TestCase
from rest_framework.test import APIClient

from common.exceptions import InsufficientStock, SerialUnavailable, StateConflict
from inventory.ledger import adjust_stock
from inventory.models import Category, Product, ProductSerial, Purchase, PurchaseItem, PurchaseReturn, Supplier
from inventory.serials import can_transition, mark_available, mark_sold


class InventoryApiTestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = get_user_model().objects.create_superuser(
            username="inventory-admin",
            email="inventory-admin@example.com",
            password="pass1234",
        )
        self.client.force_authenticate(user=self.admin)

        self.category = Category.objects.create(name="Phones")
        self.supplier = Supplier.objects.create(supplier_code="SUP-00001", name="Main Supplier", phone="0100")
        self.bulk = Product.objects.create(
            product_code="PRD-00001",
            name="Charger",
            category=self.category,
            quantity=10,
            purchase_price=Decimal("5.00"),
            retail_price=Decimal("9.00"),
        )
        self.tracked = Product.objects.create(
            product_code="PRD-00002",
            name="Handset",
            category=self.category,
            use_individual_serials=True,
            purchase_price=Decimal("100.00"),
            retail_price=Decimal("150.00"),
        )

    def create_purchase(self, items, **extra):
        payload = {"supplier_id": self.supplier.id, "items": items}
        payload.update(extra)
        return self.client.post("/api/v1/purchases/", payload, format="json")


class ProductApiTests(InventoryApiTestCase):
    def test_create_bulk_product_assigns_next_code(self):
        response = self.client.post(
            "/api/v1/products/",
            {"name": "Cable", "quantity": 4, "retailPrice": "3.50", "category_id": self.category.id},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["product_code"], "PRD-00003")
        self.assertEqual(payload["quantity"], 4)
        self.assertEqual(payload["available_stock"], 4)
        self.assertEqual(payload["category_name"], "Phones")

    def test_create_serialized_product_registers_serials(self):
        response = self.client.post(
            "/api/v1/products/",
            {
                "name": "Tablet",
                "useIndividualSerials": True,
                "individualSerials": ["TB-1", {"serial": "TB-2", "warranty": "Yes"}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        product = Product.objects.get(id=response.json()["id"])
        self.assertEqual(response.json()["available_stock"], 2)
        serials = {row.serial: row for row in product.serials.all()}
        self.assertEqual(set(serials), {"TB-1", "TB-2"})
        self.assertFalse(serials["TB-1"].warranty)
        self.assertTrue(serials["TB-2"].warranty)
        self.assertTrue(all(row.state == ProductSerial.State.AVAILABLE for row in serials.values()))

    def test_serial_count_mismatch_is_rejected(self):
        response = self.client.post(
            "/api/v1/products/",
            {"name": "Tablet", "quantity": 3, "useIndividualSerials": True, "individualSerials": ["TB-1", "TB-2"]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertIn("individualSerials", payload["errors"])
        self.assertFalse(Product.objects.filter(name="Tablet").exists())

    def test_serial_numbers_are_unique_across_products(self):
        ProductSerial.objects.create(product=self.tracked, serial="DUP-1")

        response = self.client.post(
            "/api/v1/products/",
            {"name": "Other", "useIndividualSerials": True, "individualSerials": ["DUP-1"]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(ProductSerial.objects.filter(serial="DUP-1").count(), 1)

    def test_update_rejects_serial_owned_by_another_product(self):
        ProductSerial.objects.create(product=self.tracked, serial="H-1")
        other = Product.objects.create(product_code="PRD-00003", name="Other", use_individual_serials=True)
        ProductSerial.objects.create(product=other, serial="X-1")

        response = self.client.patch(
            f"/api/v1/products/{self.tracked.id}/",
            {"individualSerials": ["H-1", "X-1"]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("individualSerials", response.json()["errors"])
        self.assertEqual(list(self.tracked.serials.values_list("serial", flat=True)), ["H-1"])
        self.assertEqual(ProductSerial.objects.filter(serial="X-1").count(), 1)
        self.assertEqual(ProductSerial.objects.get(serial="X-1").product_id, other.id)

    def test_update_accepts_product_own_serials(self):
        ProductSerial.objects.create(product=self.tracked, serial="H-1")
        ProductSerial.objects.create(product=self.tracked, serial="H-2")

        response = self.client.patch(
            f"/api/v1/products/{self.tracked.id}/",
            {"individualSerials": ["H-1", "H-2", "H-3"]},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["available_stock"], 3)
        self.assertEqual(sorted(self.tracked.serials.values_list("serial", flat=True)), ["H-1", "H-2", "H-3"])

    def test_serials_endpoint_filters_by_state(self):
        ProductSerial.objects.create(product=self.tracked, serial="H-1")
        ProductSerial.objects.create(product=self.tracked, serial="H-2", state=ProductSerial.State.SOLD)

        response = self.client.get(f"/api/v1/products/{self.tracked.id}/serials/", {"state": "available"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["serial"] for row in response.json()["results"]], ["H-1"])

        response = self.client.get(f"/api/v1/products/{self.tracked.id}/serials/", {"state": "lost"})
        self.assertEqual(response.status_code, 400)

    def test_referenced_product_cannot_be_deleted(self):
        response = self.create_purchase([{"product_id": self.bulk.id, "quantity": 1, "unitPrice": "5.00"}])
        self.assertEqual(response.status_code, 201)

        response = self.client.delete(f"/api/v1/products/{self.bulk.id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "state_conflict")
        self.assertTrue(Product.objects.filter(id=self.bulk.id).exists())

    def test_unreferenced_product_delete_returns_200(self):
        response = self.client.delete(f"/api/v1/products/{self.bulk.id}/")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(Product.objects.filter(id=self.bulk.id).exists())


class PurchaseApiTests(InventoryApiTestCase):
    def test_purchase_update_nets_bulk_stock(self):
        response = self.create_purchase([{"product_id": self.bulk.id, "quantity": 5, "unitPrice": "10.00"}])

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["purchase_no"], "PUR-00001")
        self.assertEqual(Decimal(payload["total_amount"]), Decimal("50.00"))
        self.assertEqual(len(payload["items"]), 1)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 15)

        response = self.client.patch(
            f"/api/v1/purchases/{payload['id']}/",
            {"items": [{"product_id": self.bulk.id, "quantity": 8, "unitPrice": "10.00"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 18)
        self.assertEqual(PurchaseItem.objects.filter(purchase_id=payload["id"]).count(), 1)

    def test_delete_purchase_reverses_stock_and_serials(self):
        response = self.create_purchase(
            [
                {"product_id": self.bulk.id, "quantity": 2, "unitPrice": "5.00"},
                {"product_id": self.tracked.id, "quantity": 2, "unitPrice": "100.00", "serials": ["P-1", "P-2"]},
            ]
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(self.tracked.serials.count(), 2)
        self.assertEqual(sorted(response.json()["items"][1]["serials"] + response.json()["items"][0]["serials"]), ["P-1", "P-2"])

        response = self.client.delete(f"/api/v1/purchases/{response.json()['id']}/")

        self.assertEqual(response.status_code, 200)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 10)
        self.assertFalse(ProductSerial.objects.filter(serial__in=["P-1", "P-2"]).exists())
        self.assertFalse(Purchase.objects.exists())

    def test_invalid_serial_batch_leaves_stock_untouched(self):
        response = self.create_purchase(
            [
                {"product_id": self.bulk.id, "quantity": 3, "unitPrice": "5.00"},
                {"product_id": self.tracked.id, "quantity": 2, "unitPrice": "100.00", "serials": ["P-1"]},
            ]
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("serials", response.json()["errors"])
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 10)
        self.assertFalse(Purchase.objects.exists())

    def test_serials_must_be_unique_within_request(self):
        response = self.create_purchase(
            [
                {"product_id": self.tracked.id, "quantity": 1, "unitPrice": "100.00", "serials": ["P-1"]},
                {"product_id": self.tracked.id, "quantity": 1, "unitPrice": "100.00", "serials": ["P-1"]},
            ]
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(ProductSerial.objects.exists())

    def test_unknown_product_is_not_found(self):
        response = self.create_purchase([{"product_id": 9999, "quantity": 1, "unitPrice": "1.00"}])

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")


class PurchaseReturnApiTests(InventoryApiTestCase):
    def setUp(self):
        super().setUp()
        response = self.create_purchase(
            [
                {"product_id": self.bulk.id, "quantity": 4, "unitPrice": "5.00"},
                {"product_id": self.tracked.id, "quantity": 2, "unitPrice": "100.00", "serials": ["R-1", "R-2"]},
            ]
        )
        self.purchase_id = response.json()["id"]

    def test_bulk_return_and_delete_restore_stock(self):
        response = self.client.post(
            "/api/v1/purchase-returns/",
            {"purchase_id": self.purchase_id, "items": [{"product_id": self.bulk.id, "quantity": 3}]},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["return_number"], "PRN-00001")
        self.assertEqual(Decimal(payload["items"][0]["price"]), Decimal("5.00"))
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 11)

        response = self.client.delete(f"/api/v1/purchase-returns/{payload['id']}/")

        self.assertEqual(response.status_code, 200)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 14)

    def test_return_line_price_can_be_given_as_unit_price(self):
        response = self.client.post(
            "/api/v1/purchase-returns/",
            {"purchase_id": self.purchase_id, "items": [{"product_id": self.bulk.id, "quantity": 1, "unitPrice": "4.00"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Decimal(response.json()["items"][0]["price"]), Decimal("4.00"))

    def test_serial_return_retires_and_delete_registers_again(self):
        origin = ProductSerial.objects.get(serial="R-1").purchase_item_id

        response = self.client.post(
            "/api/v1/purchase-returns/",
            {"purchase_id": self.purchase_id, "items": [{"product_id": self.tracked.id, "quantity": 1, "serials": ["R-1"]}]},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertFalse(ProductSerial.objects.filter(serial="R-1").exists())
        self.assertEqual(response.json()["items"][0]["serials"], ["R-1"])

        response = self.client.delete(f"/api/v1/purchase-returns/{response.json()['id']}/")

        self.assertEqual(response.status_code, 200)
        restored = ProductSerial.objects.get(serial="R-1")
        self.assertEqual(restored.state, ProductSerial.State.AVAILABLE)
        self.assertEqual(restored.purchase_item_id, origin)

    def test_return_cannot_exceed_purchased_quantity(self):
        response = self.client.post(
            "/api/v1/purchase-returns/",
            {"purchase_id": self.purchase_id, "items": [{"product_id": self.bulk.id, "quantity": 5}]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(PurchaseReturn.objects.exists())
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 14)

    def test_purchase_with_returns_cannot_be_deleted(self):
        self.client.post(
            "/api/v1/purchase-returns/",
            {"purchase_id": self.purchase_id, "items": [{"product_id": self.bulk.id, "quantity": 1}]},
            format="json",
        )

        response = self.client.delete(f"/api/v1/purchases/{self.purchase_id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "state_conflict")
        self.assertTrue(Purchase.objects.filter(id=self.purchase_id).exists())


class LedgerTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(product_code="PRD-00001", name="Bulk", quantity=2)
        self.tracked = Product.objects.create(product_code="PRD-00002", name="Tracked", use_individual_serials=True)

    def test_adjust_stock_refuses_negative_result(self):
        with self.assertRaises(InsufficientStock):
            with transaction.atomic():
                adjust_stock(self.product, -3)

        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 2)

    def test_adjust_stock_refuses_serialized_products(self):
        with self.assertRaises(StateConflict):
            adjust_stock(self.tracked, 1)

    def test_serial_lifecycle(self):
        serial = ProductSerial.objects.create(product=self.tracked, serial="L-1")

        self.assertTrue(can_transition(ProductSerial.State.AVAILABLE, ProductSerial.State.SOLD))
        self.assertFalse(can_transition(ProductSerial.State.SOLD, ProductSerial.State.SOLD))

        mark_sold([serial])
        serial.refresh_from_db()
        self.assertEqual(serial.state, ProductSerial.State.SOLD)

        with self.assertRaises(SerialUnavailable):
            mark_sold([serial])

        mark_available([serial])
        with self.assertRaises(StateConflict):
            mark_available([serial])
