import logging
from collections.abc import Mapping

from django.db.models import Q
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.exceptions import InsufficientSerials, SerialUnavailable, StateConflict
from inventory.models import ProductSerial

logger = logging.getLogger("inventory.ledger")

SerialState = ProductSerial.State

# Every permitted lifecycle move; anything absent is rejected.
TRANSITIONS = {
    SerialState.AVAILABLE: frozenset({SerialState.SOLD}),
    SerialState.SOLD: frozenset({SerialState.AVAILABLE}),
}


def can_transition(current, target):
    return target in TRANSITIONS.get(current, frozenset())


def _apply_transition(serials, target):
    for serial in serials:
        if can_transition(serial.state, target):
            continue
        if target == SerialState.SOLD:
            raise SerialUnavailable(f"Serial {serial.serial} is not available.")
        raise StateConflict(f"Serial {serial.serial} cannot move from {serial.state} to {target}.")

    if not serials:
        return serials

    now = timezone.now()
    ProductSerial.objects.filter(pk__in=[serial.pk for serial in serials]).update(state=target, updated_at=now)
    for serial in serials:
        serial.state = target
        serial.updated_at = now
    logger.debug("serials_transitioned", extra={"serial_count": len(serials)})
    return serials


def mark_sold(serials):
    return _apply_transition(list(serials), SerialState.SOLD)


def mark_available(serials):
    return _apply_transition(list(serials), SerialState.AVAILABLE)


def lock_serials(**filters):
    return list(ProductSerial.objects.select_for_update().filter(**filters).order_by("id"))


def reserve_serials(product, quantity, exclude=()):
    """Lock and return the first ``quantity`` AVAILABLE serials of ``product`` by id.

    ``exclude`` holds serial ids already claimed by earlier lines of the same unit.
    """
    serials = list(
        ProductSerial.objects.select_for_update()
        .filter(product=product, state=SerialState.AVAILABLE)
        .exclude(pk__in=list(exclude))
        .order_by("id")[:quantity]
    )
    if len(serials) < quantity:
        raise InsufficientSerials(
            f"Not enough available serials for product {product.name}. Available: {len(serials)}, requested: {quantity}."
        )
    return serials


def _clean(values, field):
    cleaned = []
    for value in values:
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ValidationError({field: ["Serial numbers cannot be blank."]})
        cleaned.append(text)
    return cleaned


def _first_duplicate(values):
    seen = set()
    for value in values:
        if value in seen:
            return value
        seen.add(value)
    return None


def _lock_requested(product, serials, quantity):
    """Count, duplicate, existence and ownership checks shared by outgoing and incoming lines."""
    serials = _clean(serials, "serials")
    if len(serials) != quantity:
        raise ValidationError(
            {"serials": [f"Product {product.name} requires {quantity} serial numbers, got {len(serials)}."]}
        )
    duplicate = _first_duplicate(serials)
    if duplicate is not None:
        raise ValidationError({"serials": [f"Duplicate serial number in request: {duplicate}."]})

    rows = {row.serial: row for row in lock_serials(serial__in=serials)}
    for value in serials:
        row = rows.get(value)
        if row is None:
            raise ValidationError({"serials": [f"Serial number {value} not found."]})
        if row.product_id != product.id:
            raise ValidationError({"serials": [f"Serial number {value} does not belong to product {product.name}."]})
    return [rows[value] for value in serials]


def resolve_serials_for_sale(product, serials, quantity):
    """Validate an explicit serial list for an outgoing line and return the locked rows.

    Checks run in order: count, duplicates, existence, ownership, state. The
    rows come back in the order they were requested.
    """
    rows = _lock_requested(product, serials, quantity)
    for row in rows:
        if row.state != SerialState.AVAILABLE:
            raise SerialUnavailable(f"Serial number {row.serial} is not available.")
    return rows


def resolve_serials_for_return(product, serials, quantity, eligible_ids):
    """Validate serials coming back from a customer and return the locked rows.

    ``eligible_ids`` holds the serial ids still outstanding on the originating
    sale; anything else was never issued by it or has already come back.
    """
    rows = _lock_requested(product, serials, quantity)
    for row in rows:
        if row.pk not in eligible_ids:
            raise ValidationError({"serials": [f"Serial number {row.serial} is not outstanding on this sale."]})
        if row.state != SerialState.SOLD:
            raise StateConflict(f"Serial number {row.serial} is not sold.")
    return rows


def normalize_serial_entries(entries, default_warranty=False, field="individualSerials"):
    """Accept plain strings or ``{"serial", "warranty"}`` objects and return the object form."""
    normalized = []
    for entry in entries or []:
        if isinstance(entry, Mapping):
            value = entry.get("serial")
            warranty = entry.get("warranty", default_warranty)
        else:
            value = entry
            warranty = default_warranty
        if isinstance(warranty, str):
            warranty = warranty.strip().lower() in {"yes", "true", "1"}
        normalized.append({"serial": _clean([value], field)[0], "warranty": bool(warranty)})
    return normalized


def validate_new_serials(serials, quantity, exclude_product=None, field="individualSerials"):
    """Enforce the count and global uniqueness invariants for serials about to be registered."""
    serials = _clean(serials, field)
    if quantity is not None and len(serials) != quantity:
        raise ValidationError(
            {field: [f"Number of serial numbers ({len(serials)}) must match quantity ({quantity})."]}
        )
    duplicate = _first_duplicate(serials)
    if duplicate is not None:
        raise ValidationError({field: [f"Duplicate serial number in request: {duplicate}."]})

    existing = ProductSerial.objects.filter(serial__in=serials)
    if exclude_product is not None:
        existing = existing.exclude(product=exclude_product)
    clash = existing.values_list("serial", flat=True).first()
    if clash is not None:
        raise ValidationError({field: [f"Serial number {clash} already exists."]})
    return serials


def register_serials(product, serials, warranty=False, purchase_item=None):
    entries = normalize_serial_entries(serials, default_warranty=warranty)
    rows = ProductSerial.objects.bulk_create(
        [
            ProductSerial(
                product=product,
                serial=entry["serial"],
                warranty=entry["warranty"],
                state=SerialState.AVAILABLE,
                purchase_item=purchase_item,
            )
            for entry in entries
        ]
    )
    logger.debug("serials_registered", extra={"product_id": product.pk, "serial_count": len(rows)})
    return rows


def with_history(queryset):
    """Narrow ``queryset`` to serials referenced by any sale, return or exchange line."""
    return queryset.filter(
        Q(sale_links__isnull=False) | Q(sales_return_links__isnull=False) | Q(exchange_links__isnull=False)
    )


def retire_serials(serials):
    """Remove AVAILABLE serials without record history from the registry.

    Returns ``{"serial", "warranty", "purchase_item_id"}`` entries so the units can be
    registered again when the removal is reversed.
    """
    serials = list(serials)
    for serial in serials:
        if serial.state != SerialState.AVAILABLE:
            raise SerialUnavailable(f"Serial number {serial.serial} is not available.")
    ids = [serial.pk for serial in serials]
    linked = with_history(ProductSerial.objects.filter(pk__in=ids)).values_list("serial", flat=True).first()
    if linked is not None:
        raise StateConflict(f"Serial number {linked} is referenced by sales history and cannot leave the registry.")

    entries = [
        {"serial": serial.serial, "warranty": serial.warranty, "purchase_item_id": serial.purchase_item_id}
        for serial in serials
    ]
    ProductSerial.objects.filter(pk__in=ids).delete()
    return entries
