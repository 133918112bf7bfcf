from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from inventory.models import Product, ProductSerial
from sales.models import Customer, Exchange, Sale, SaleItemSerial, SalesReturn


class SalesApiTestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = get_user_model().objects.create_superuser(
            username="sales-admin",
            email="sales-admin@example.com",
            password="pass1234",
        )
        self.client.force_authenticate(user=self.admin)

        self.customer = Customer.objects.create(customer_code="CUS-00001", name="Walk-in", phone="0111")
        self.other_customer = Customer.objects.create(customer_code="CUS-00002", name="Regular", phone="0222")
        self.bulk = Product.objects.create(
            product_code="PRD-00001",
            name="Charger",
            quantity=10,
            retail_price=Decimal("9.00"),
        )
        self.tracked = Product.objects.create(
            product_code="PRD-00002",
            name="Handset",
            use_individual_serials=True,
            retail_price=Decimal("150.00"),
        )
        self.s1 = ProductSerial.objects.create(product=self.tracked, serial="S1")
        self.s2 = ProductSerial.objects.create(product=self.tracked, serial="S2")
        self.s3 = ProductSerial.objects.create(product=self.tracked, serial="S3", state=ProductSerial.State.SOLD)

    def sell(self, items, **extra):
        payload = {"customer_id": self.customer.id, "items": items}
        payload.update(extra)
        return self.client.post("/api/v1/sales/", payload, format="json")

    def assert_state(self, serial, state):
        serial.refresh_from_db()
        self.assertEqual(serial.state, state)


class SaleApiTests(SalesApiTestCase):
    def test_bulk_sale_and_delete_round_trip_stock(self):
        response = self.sell([{"product_id": self.bulk.id, "quantity": 3, "unitPrice": "9.00"}])

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["sale_no"], "SALE-00001")
        self.assertEqual(Decimal(payload["total_amount"]), Decimal("27.00"))
        self.assertEqual(payload["status"], Sale.Status.PENDING)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 7)

        response = self.client.delete(f"/api/v1/sales/{payload['id']}/")

        self.assertEqual(response.status_code, 200)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 10)
        self.assertFalse(Sale.objects.exists())

    def test_unavailable_serial_fails_whole_sale(self):
        response = self.sell(
            [{"product_id": self.tracked.id, "quantity": 2, "unitPrice": "150.00", "serials": ["S1", "S3"]}]
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "serial_unavailable")
        self.assert_state(self.s1, ProductSerial.State.AVAILABLE)
        self.assert_state(self.s2, ProductSerial.State.AVAILABLE)
        self.assertFalse(Sale.objects.exists())

    def test_oversell_leaves_state_unchanged(self):
        response = self.sell(
            [
                {"product_id": self.tracked.id, "quantity": 1, "unitPrice": "150.00", "serials": ["S1"]},
                {"product_id": self.bulk.id, "quantity": 11, "unitPrice": "9.00"},
            ]
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "insufficient_stock")
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 10)
        self.assert_state(self.s1, ProductSerial.State.AVAILABLE)
        self.assertFalse(Sale.objects.exists())

    def test_serial_sale_without_list_reserves_available_units(self):
        response = self.sell([{"product_id": self.tracked.id, "quantity": 2, "unitPrice": "150.00"}])

        self.assertEqual(response.status_code, 201)
        self.assertEqual(sorted(response.json()["items"][0]["serials"]), ["S1", "S2"])
        self.assert_state(self.s1, ProductSerial.State.SOLD)
        self.assert_state(self.s2, ProductSerial.State.SOLD)

        response = self.sell([{"product_id": self.tracked.id, "quantity": 1, "unitPrice": "150.00"}])
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "insufficient_serials")

    def test_deleting_serial_sale_restores_serials(self):
        response = self.sell([{"product_id": self.tracked.id, "quantity": 1, "unitPrice": "150.00", "serials": ["S2"]}])
        self.assert_state(self.s2, ProductSerial.State.SOLD)

        self.client.delete(f"/api/v1/sales/{response.json()['id']}/")

        self.assert_state(self.s2, ProductSerial.State.AVAILABLE)
        self.assertFalse(SaleItemSerial.objects.exists())

    def test_unit_price_must_match_retail_price(self):
        response = self.sell([{"product_id": self.bulk.id, "quantity": 1, "unitPrice": "8.00"}])

        self.assertEqual(response.status_code, 400)
        self.assertIn("unitPrice", response.json()["errors"])

    @override_settings(SALES_ENFORCE_RETAIL_PRICE=False)
    def test_retail_price_check_can_be_disabled(self):
        response = self.sell([{"product_id": self.bulk.id, "quantity": 1, "unitPrice": "8.00"}])

        self.assertEqual(response.status_code, 201)

    def test_paying_in_full_completes_sale(self):
        response = self.sell([{"product_id": self.bulk.id, "quantity": 2, "unitPrice": "9.00"}])
        sale_id = response.json()["id"]

        response = self.client.patch(f"/api/v1/sales/{sale_id}/", {"totalPaid": "18.00"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], Sale.Status.COMPLETED)

    def test_inactive_product_cannot_be_sold(self):
        Product.objects.filter(id=self.bulk.id).update(status=Product.Status.UNAVAILABLE)

        response = self.sell([{"product_id": self.bulk.id, "quantity": 1, "unitPrice": "9.00"}])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "state_conflict")


class SalesReturnApiTests(SalesApiTestCase):
    def setUp(self):
        super().setUp()
        response = self.sell(
            [
                {"product_id": self.bulk.id, "quantity": 3, "unitPrice": "9.00"},
                {"product_id": self.tracked.id, "quantity": 1, "unitPrice": "150.00", "serials": ["S1"]},
            ]
        )
        self.sale_id = response.json()["id"]

    def create_return(self, items, **extra):
        payload = {"sales_id": self.sale_id, "items": items}
        payload.update(extra)
        return self.client.post("/api/v1/sales-returns/", payload, format="json")

    def test_bulk_return_restores_stock_and_delete_consumes_it(self):
        response = self.create_return([{"product_id": self.bulk.id, "quantity": 2}], total_payback="18.00")

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["return_number"], "SRN-00001")
        self.assertEqual(payload["original_invoice"], "SALE-00001")
        self.assertEqual(Decimal(payload["items"][0]["price"]), Decimal("9.00"))
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 9)

        response = self.create_return([{"product_id": self.bulk.id, "quantity": 2}])
        self.assertEqual(response.status_code, 400)

        self.client.delete(f"/api/v1/sales-returns/{payload['id']}/")
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 7)

    def test_return_line_accepts_unit_price_and_legacy_price(self):
        response = self.create_return([{"product_id": self.bulk.id, "quantity": 1, "unitPrice": "8.50"}])
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Decimal(response.json()["items"][0]["price"]), Decimal("8.50"))

        response = self.create_return([{"product_id": self.bulk.id, "quantity": 1, "price": "7.25"}])
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Decimal(response.json()["items"][0]["price"]), Decimal("7.25"))

    def test_serial_return_and_delete(self):
        response = self.create_return([{"product_id": self.tracked.id, "quantity": 1, "serials": ["S1"]}])

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["items"][0]["serials"], ["S1"])
        self.assert_state(self.s1, ProductSerial.State.AVAILABLE)

        self.client.delete(f"/api/v1/sales-returns/{response.json()['id']}/")

        self.assert_state(self.s1, ProductSerial.State.SOLD)

    def test_serial_not_issued_by_sale_is_rejected(self):
        response = self.create_return([{"product_id": self.tracked.id, "quantity": 1, "serials": ["S3"]}])

        self.assertEqual(response.status_code, 400)
        self.assertIn("serials", response.json()["errors"])
        self.assert_state(self.s3, ProductSerial.State.SOLD)

    def test_customer_must_match_sale(self):
        response = self.create_return(
            [{"product_id": self.bulk.id, "quantity": 1}], customer_id=self.other_customer.id
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("customer_id", response.json()["errors"])
        self.assertFalse(SalesReturn.objects.exists())

    def test_sale_with_returns_cannot_be_deleted(self):
        self.create_return([{"product_id": self.bulk.id, "quantity": 1}])

        response = self.client.delete(f"/api/v1/sales/{self.sale_id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "state_conflict")
        self.assertTrue(Sale.objects.filter(id=self.sale_id).exists())


class ExchangeApiTests(SalesApiTestCase):
    def setUp(self):
        super().setUp()
        response = self.sell([{"product_id": self.tracked.id, "quantity": 1, "unitPrice": "150.00", "serials": ["S1"]}])
        self.sale_id = response.json()["id"]

    def test_exchange_swaps_units_and_delete_reverses(self):
        response = self.client.post(
            "/api/v1/exchanges/",
            {
                "sales_id": self.sale_id,
                "totalPayback": "141.00",
                "items": [
                    {
                        "old_product_id": self.tracked.id,
                        "new_product_id": self.bulk.id,
                        "quantity": 1,
                        "unit_price": "9.00",
                        "returned_serials": ["S1"],
                    }
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["exchange_number"], "EXC-00001")
        self.assertEqual(payload["net_amount"], "-141.00")
        self.assertEqual(payload["items"][0]["returned_serials"], ["S1"])
        self.assert_state(self.s1, ProductSerial.State.AVAILABLE)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 9)

        response = self.client.delete(f"/api/v1/exchanges/{payload['id']}/")

        self.assertEqual(response.status_code, 200)
        self.assert_state(self.s1, ProductSerial.State.SOLD)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 10)
        self.assertFalse(Exchange.objects.exists())

    def test_exchange_issues_explicit_serial(self):
        response = self.client.post(
            "/api/v1/exchanges/",
            {
                "sales_id": self.sale_id,
                "items": [
                    {
                        "old_product_id": self.tracked.id,
                        "new_product_id": self.tracked.id,
                        "quantity": 1,
                        "returned_serials": ["S1"],
                        "issued_serials": ["S2"],
                    }
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["items"][0]["issued_serials"], ["S2"])
        self.assert_state(self.s1, ProductSerial.State.AVAILABLE)
        self.assert_state(self.s2, ProductSerial.State.SOLD)

        # The issued unit is now returnable against the same sale.
        response = self.client.post(
            "/api/v1/sales-returns/",
            {"sales_id": self.sale_id, "items": [{"product_id": self.tracked.id, "quantity": 1, "serials": ["S2"]}]},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assert_state(self.s2, ProductSerial.State.AVAILABLE)

    def test_exchange_with_later_return_cannot_be_deleted(self):
        response = self.client.post(
            "/api/v1/exchanges/",
            {
                "sales_id": self.sale_id,
                "items": [
                    {
                        "old_product_id": self.tracked.id,
                        "new_product_id": self.bulk.id,
                        "quantity": 1,
                        "unitPrice": "9.00",
                        "returned_serials": ["S1"],
                    }
                ],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        exchange_id = response.json()["id"]
        self.assertEqual(Decimal(response.json()["items"][0]["unit_price"]), Decimal("9.00"))

        response = self.client.post(
            "/api/v1/sales-returns/",
            {"sales_id": self.sale_id, "items": [{"product_id": self.bulk.id, "quantity": 1}]},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 10)

        response = self.client.delete(f"/api/v1/exchanges/{exchange_id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "state_conflict")
        self.assertTrue(Exchange.objects.filter(id=exchange_id).exists())
        self.bulk.refresh_from_db()
        self.assertEqual(self.bulk.quantity, 10)
        self.assert_state(self.s1, ProductSerial.State.AVAILABLE)

    def test_exchange_with_returned_issued_serial_cannot_be_deleted(self):
        response = self.client.post(
            "/api/v1/exchanges/",
            {
                "sales_id": self.sale_id,
                "items": [
                    {
                        "old_product_id": self.tracked.id,
                        "new_product_id": self.tracked.id,
                        "quantity": 1,
                        "returned_serials": ["S1"],
                        "issued_serials": ["S2"],
                    }
                ],
            },
            format="json",
        )
        exchange_id = response.json()["id"]
        self.client.post(
            "/api/v1/sales-returns/",
            {"sales_id": self.sale_id, "items": [{"product_id": self.tracked.id, "quantity": 1, "serials": ["S2"]}]},
            format="json",
        )

        response = self.client.delete(f"/api/v1/exchanges/{exchange_id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "state_conflict")
        self.assert_state(self.s1, ProductSerial.State.AVAILABLE)
        self.assert_state(self.s2, ProductSerial.State.AVAILABLE)

    def test_exchange_beyond_sold_quantity_is_rejected(self):
        response = self.client.post(
            "/api/v1/exchanges/",
            {
                "sales_id": self.sale_id,
                "items": [{"old_product_id": self.bulk.id, "new_product_id": self.bulk.id, "quantity": 1}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Exchange.objects.exists())


class CustomerAndServiceApiTests(SalesApiTestCase):
    def test_customer_code_is_generated(self):
        response = self.client.post("/api/v1/customers/", {"name": "New", "phone": "0333"}, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["customer_code"], "CUS-00003")

    def test_customer_with_sales_cannot_be_deleted(self):
        self.sell([{"product_id": self.bulk.id, "quantity": 1, "unitPrice": "9.00"}])

        response = self.client.delete(f"/api/v1/customers/{self.customer.id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "state_conflict")

    def test_service_ticket_lifecycle(self):
        response = self.client.post(
            "/api/v1/services/",
            {
                "customer": self.customer.id,
                "technician": self.admin.id,
                "product_name": "Handset",
                "description": "Cracked screen",
                "cost": "40.00",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["service_no"], "SRV-00001")
        self.assertEqual(payload["status"], "pending")

        response = self.client.patch(f"/api/v1/services/{payload['id']}/", {"status": "completed"}, format="json")
        self.assertEqual(response.status_code, 200)

        response = self.client.get("/api/v1/services/", {"status": "completed"})
        self.assertEqual(response.json()["count"], 1)
