from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from common.numbering import next_document_number
from common.permissions import PAGES, page_permission_name
from core.models import Permission, Role, RolePermission
from inventory.models import Category, Product, ProductSerial, Supplier
from sales.models import Customer

CASHIER_PAGES = {"customers": (True, True, True, False), "sales": (True, True, False, False), "products": (True, False, False, False)}


class Command(BaseCommand):
    help = "Seed demo roles, users and inventory for local development."

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        permissions = {}
        for page in PAGES:
            permissions[page], _ = Permission.objects.get_or_create(
                name=page_permission_name(page),
                defaults={"description": f"Access to the {page.replace('_', ' ')} page"},
            )

        manager_role, _ = Role.objects.get_or_create(name="manager", defaults={"description": "Full access"})
        cashier_role, _ = Role.objects.get_or_create(name="cashier", defaults={"description": "Point of sale"})
        for page, permission in permissions.items():
            RolePermission.objects.update_or_create(
                role=manager_role,
                permission=permission,
                defaults={"can_view": True, "can_create": True, "can_edit": True, "can_delete": True},
            )
        for page, (can_view, can_create, can_edit, can_delete) in CASHIER_PAGES.items():
            RolePermission.objects.update_or_create(
                role=cashier_role,
                permission=permissions[page],
                defaults={"can_view": can_view, "can_create": can_create, "can_edit": can_edit, "can_delete": can_delete},
            )

        for username, role, superuser in [("admin", None, True), ("manager", manager_role, False), ("cashier", cashier_role, False)]:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "role": role,
                    "is_staff": superuser,
                    "is_superuser": superuser,
                    "is_active": True,
                },
            )
            if created:
                user.set_password(f"{username}1234")
                user.save(update_fields=["password"])

        phones, _ = Category.objects.get_or_create(name="Phones")
        accessories, _ = Category.objects.get_or_create(name="Accessories")

        if not Supplier.objects.filter(name="Local Supplier").exists():
            Supplier.objects.create(
                supplier_code=next_document_number(Supplier, "supplier_code", "SUP"),
                name="Local Supplier",
                phone="+100000000",
            )
        if not Customer.objects.filter(name="Walk-in Customer").exists():
            Customer.objects.create(
                customer_code=next_document_number(Customer, "customer_code", "CUS"),
                name="Walk-in Customer",
            )

        if not Product.objects.filter(name="USB-C Charger").exists():
            Product.objects.create(
                product_code=next_document_number(Product, "product_code", "PRD"),
                name="USB-C Charger",
                category=accessories,
                quantity=50,
                purchase_price=Decimal("6.00"),
                wholesale_price=Decimal("8.00"),
                retail_price=Decimal("12.00"),
            )
        if not Product.objects.filter(name="Demo Handset").exists():
            handset = Product.objects.create(
                product_code=next_document_number(Product, "product_code", "PRD"),
                name="Demo Handset",
                category=phones,
                quantity=3,
                purchase_price=Decimal("180.00"),
                wholesale_price=Decimal("210.00"),
                retail_price=Decimal("250.00"),
                use_individual_serials=True,
            )
            ProductSerial.objects.bulk_create(
                [ProductSerial(product=handset, serial=f"DEMO-IMEI-{index:04d}", warranty=True) for index in range(1, 4)]
            )

        self.stdout.write(self.style.SUCCESS("Demo data seeded."))
        self.stdout.write("Users: admin/admin1234, manager/manager1234, cashier/cashier1234")
