from django.conf import settings
from django.db import models

from inventory.models import Product, ProductSerial


class Customer(models.Model):
    customer_code = models.CharField(max_length=32, unique=True)
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True, default="")
    phone = models.CharField(max_length=64, blank=True, default="")
    address = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["phone"], name="customer_phone_idx"),
            models.Index(fields=["name"], name="customer_name_idx"),
        ]

    def __str__(self):
        return self.name


class Sale(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"

    sale_no = models.CharField(max_length=32, unique=True)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="sales")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="sales")
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    total_paid = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    due_date = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=16, choices=Status, default=Status.PENDING)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["customer", "created_at"], name="sale_customer_created_idx"),
            models.Index(fields=["status", "created_at"], name="sale_status_created_idx"),
        ]


class SaleItem(models.Model):
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="sale_items")
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)


class SaleItemSerial(models.Model):
    sale_item = models.ForeignKey(SaleItem, on_delete=models.CASCADE, related_name="serial_links")
    serial = models.ForeignKey(ProductSerial, on_delete=models.PROTECT, related_name="sale_links")

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["sale_item", "serial"], name="uniq_sale_item_serial"),
        ]


class SalesReturn(models.Model):
    return_no = models.CharField(max_length=32, unique=True)
    sale = models.ForeignKey(Sale, on_delete=models.PROTECT, related_name="returns")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="sales_returns")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="sales_returns")
    total_payback = models.DecimalField(max_digits=12, decimal_places=2)
    note = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)


class SalesReturnItem(models.Model):
    sales_return = models.ForeignKey(SalesReturn, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="sales_return_items")
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)


class SalesReturnItemSerial(models.Model):
    return_item = models.ForeignKey(SalesReturnItem, on_delete=models.CASCADE, related_name="serial_links")
    serial = models.ForeignKey(ProductSerial, on_delete=models.PROTECT, related_name="sales_return_links")


class Exchange(models.Model):
    exchange_no = models.CharField(max_length=32, unique=True)
    sale = models.ForeignKey(Sale, on_delete=models.PROTECT, related_name="exchanges")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="exchanges")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="exchanges")
    total_paid = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_payback = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    note = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)


class ExchangeItem(models.Model):
    exchange = models.ForeignKey(Exchange, on_delete=models.CASCADE, related_name="items")
    old_product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="exchanged_out_items")
    new_product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="exchanged_in_items")
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    note = models.CharField(max_length=255, blank=True, default="")


class ExchangeItemSerial(models.Model):
    class Direction(models.TextChoices):
        RETURNED = "returned", "Returned"
        ISSUED = "issued", "Issued"

    exchange_item = models.ForeignKey(ExchangeItem, on_delete=models.CASCADE, related_name="serial_links")
    serial = models.ForeignKey(ProductSerial, on_delete=models.PROTECT, related_name="exchange_links")
    direction = models.CharField(max_length=16, choices=Direction)


class Service(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        IN_PROGRESS = "in_progress", "In Progress"
        COMPLETED = "completed", "Completed"
        DELIVERED = "delivered", "Delivered"
        CANCELLED = "cancelled", "Cancelled"

    service_no = models.CharField(max_length=32, unique=True)
    customer = models.ForeignKey(Customer, on_delete=models.SET_NULL, null=True, blank=True, related_name="services")
    technician = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="assigned_services",
    )
    product_name = models.CharField(max_length=255)
    description = models.TextField()
    cost = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=Status, default=Status.PENDING)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["status", "created_at"], name="service_status_created_idx")]
