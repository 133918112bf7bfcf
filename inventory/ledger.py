import logging

from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound

from common.exceptions import InsufficientStock, StateConflict
from inventory.models import Product, ProductSerial

logger = logging.getLogger("inventory.ledger")


def lock_products(ids):
    """Lock the product rows for ``ids`` and return them keyed by id.

    Rows are locked in id order so concurrent units acquire them in the same
    sequence. Must be called inside ``transaction.atomic``.
    """
    wanted = sorted({int(product_id) for product_id in ids})
    products = {product.id: product for product in Product.objects.select_for_update().filter(id__in=wanted).order_by("id")}
    missing = [product_id for product_id in wanted if product_id not in products]
    if missing:
        raise NotFound(f"Product {missing[0]} not found.")
    return products


def available_stock(product):
    if product.use_individual_serials:
        return ProductSerial.objects.filter(product=product, state=ProductSerial.State.AVAILABLE).count()
    return product.quantity


def ensure_stock_available(product, quantity):
    if product.quantity < quantity:
        raise InsufficientStock(
            f"Insufficient stock for product {product.name}. Available: {product.quantity}, requested: {quantity}."
        )


def adjust_stock(product, delta):
    """Apply a signed ``delta`` to a non-serialized product's quantity.

    The in-memory instance is kept in step with the row so repeated lines for
    the same product inside one unit see the running balance.
    """
    if product.use_individual_serials:
        raise StateConflict(f"Product {product.name} is tracked by serial number.")
    if delta == 0:
        return product
    if delta < 0:
        ensure_stock_available(product, -delta)

    now = timezone.now()
    Product.objects.filter(pk=product.pk).update(quantity=F("quantity") + delta, updated_at=now)
    product.quantity += delta
    product.updated_at = now
    logger.debug("stock_adjusted", extra={"product_id": product.pk, "delta": delta})
    return product
