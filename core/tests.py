from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from core.models import AuditLog, Permission, Role, RolePermission
from sales.models import Customer


class PagePermissionTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.page_sales = Permission.objects.create(name="page_sales")
        self.page_customers = Permission.objects.create(name="page_customers")
        self.cashier_role = Role.objects.create(name="cashier")
        RolePermission.objects.create(role=self.cashier_role, permission=self.page_sales, can_view=True)

        self.cashier = self.user_model.objects.create_user(
            username="cashier",
            password="pass1234",
            role=self.cashier_role,
        )

    def test_anonymous_request_is_rejected_with_envelope(self):
        response = self.client.get("/api/v1/sales/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["status"], 401)

    def test_view_flag_allows_listing(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/sales/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(sorted(response.json().keys()), ["count", "next", "previous", "results"])

    def test_missing_create_flag_is_denied_and_logged(self):
        self.client.force_authenticate(user=self.cashier)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/sales/", {}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_page_without_role_entry_is_denied(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/customers/")

        self.assertEqual(response.status_code, 403)

    def test_page_access_override_grants_view_only(self):
        self.cashier.permission_overrides = {"pageAccess": ["customers"]}
        self.cashier.save()
        self.client.force_authenticate(user=self.cashier)

        self.assertEqual(self.client.get("/api/v1/customers/").status_code, 200)
        response = self.client.post("/api/v1/customers/", {"name": "Blocked"}, format="json")
        self.assertEqual(response.status_code, 403)

    def test_user_permissions_endpoint_flattens_matrix(self):
        admin = self.user_model.objects.create_superuser(username="root", email="root@example.com", password="pass1234")
        self.cashier.permission_overrides = {"pageAccess": ["customers"]}
        self.cashier.save()
        self.client.force_authenticate(user=admin)

        response = self.client.get(f"/api/v1/users/{self.cashier.id}/permissions/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["role"], "cashier")
        self.assertTrue(payload["permissions"]["sales"]["can_view"])
        self.assertFalse(payload["permissions"]["sales"]["can_create"])
        self.assertTrue(payload["permissions"]["customers"]["can_view"])


class RoleApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = get_user_model().objects.create_superuser(
            username="role-admin",
            email="role-admin@example.com",
            password="pass1234",
        )
        self.client.force_authenticate(user=self.admin)
        self.role = Role.objects.create(name="storekeeper")
        self.page_products = Permission.objects.create(name="page_products")
        self.page_purchases = Permission.objects.create(name="page_purchases")

    def test_replace_role_permission_matrix(self):
        RolePermission.objects.create(role=self.role, permission=self.page_purchases, can_view=True)

        response = self.client.put(
            f"/api/v1/roles/{self.role.id}/permissions/",
            {"permissions": [{"permission_id": self.page_products.id, "can_view": True, "can_create": True}]},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        rows = RolePermission.objects.filter(role=self.role)
        self.assertEqual([row.permission_id for row in rows], [self.page_products.id])
        self.assertTrue(rows[0].can_create)
        self.assertFalse(rows[0].can_delete)
        self.assertTrue(AuditLog.objects.filter(action="role.permissions", entity_id=str(self.role.id)).exists())

    def test_duplicate_permission_entries_are_rejected(self):
        entry = {"permission_id": self.page_products.id, "can_view": True}

        response = self.client.put(
            f"/api/v1/roles/{self.role.id}/permissions/",
            {"permissions": [entry, entry]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_role_in_use_cannot_be_deleted(self):
        get_user_model().objects.create_user(username="keeper", password="pass1234", role=self.role)

        response = self.client.delete(f"/api/v1/roles/{self.role.id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "state_conflict")
        self.assertTrue(Role.objects.filter(id=self.role.id).exists())

    def test_permission_catalogue_is_listed(self):
        response = self.client.get("/api/v1/permissions/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["name"] for row in response.json()], ["page_products", "page_purchases"])


class UserApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_superuser(
            username="user-admin",
            email="user-admin@example.com",
            password="pass1234",
        )
        self.client.force_authenticate(user=self.admin)

    def test_create_user_hashes_password(self):
        response = self.client.post(
            "/api/v1/users/",
            {"username": "clerk", "email": "Clerk@Example.com", "password": "clerk-pass-123"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertNotIn("password", response.json())
        user = self.user_model.objects.get(username="clerk")
        self.assertEqual(user.email, "clerk@example.com")
        self.assertTrue(user.check_password("clerk-pass-123"))

    def test_duplicate_email_is_rejected_case_insensitively(self):
        response = self.client.post(
            "/api/v1/users/",
            {"username": "other", "email": "USER-ADMIN@example.com", "password": "pass12345"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("email", response.json()["errors"])

    def test_deactivate_and_activate_user(self):
        clerk = self.user_model.objects.create_user(username="clerk", password="pass1234")

        response = self.client.post(f"/api/v1/users/{clerk.id}/deactivate/")
        self.assertEqual(response.status_code, 200)
        clerk.refresh_from_db()
        self.assertFalse(clerk.is_active)

        response = self.client.post(f"/api/v1/users/{clerk.id}/activate/")
        self.assertEqual(response.status_code, 200)
        clerk.refresh_from_db()
        self.assertTrue(clerk.is_active)
        self.assertTrue(AuditLog.objects.filter(action="user.activate", entity_id=str(clerk.id)).exists())

    def test_cannot_deactivate_self(self):
        response = self.client.post(f"/api/v1/users/{self.admin.id}/deactivate/")

        self.assertEqual(response.status_code, 400)
        self.admin.refresh_from_db()
        self.assertTrue(self.admin.is_active)


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="token@example.com",
            password="pass1234",
        )

    def test_token_can_be_obtained_with_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "TOKEN@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_wrong_password_is_rejected(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token-user", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = get_user_model().objects.create_superuser(
            username="audit-admin",
            email="audit-admin@example.com",
            password="pass1234",
        )
        self.client.force_authenticate(user=self.admin)

    def test_customer_create_writes_audit_log(self):
        response = self.client.post(
            "/api/v1/customers/",
            {"name": "Audited"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(response.status_code, 201)
        log = AuditLog.objects.get(action="customer.create")
        self.assertEqual(log.entity, "customer")
        self.assertEqual(log.request_id, "req-123")
        self.assertEqual(log.actor_id, self.admin.id)
        self.assertEqual(log.after_snapshot["name"], "Audited")

    def test_audit_logs_are_read_only(self):
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_log_export_is_csv(self):
        customer = Customer.objects.create(customer_code="CUS-00001", name="Exported")
        self.client.delete(f"/api/v1/customers/{customer.id}/")

        response = self.client.get("/api/v1/admin/audit-logs/export/", {"entity": "customer"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        body = response.content.decode()
        self.assertIn("customer.delete", body)


class HealthTests(TestCase):
    def test_health_endpoints_are_public(self):
        client = APIClient()

        self.assertEqual(client.get("/api/v1/healthz/").json()["status"], "ok")
        self.assertEqual(client.get("/api/v1/readyz/").json()["status"], "ready")
