import logging
from collections import defaultdict
from decimal import Decimal, ROUND_HALF_UP

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import ProtectedError, Sum
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import StateConflict
from common.numbering import next_document_number
from inventory.ledger import adjust_stock, ensure_stock_available, lock_products
from inventory.models import (
    Category,
    Product,
    ProductSerial,
    Purchase,
    PurchaseItem,
    PurchaseReturn,
    PurchaseReturnItem,
    Supplier,
)
from inventory.serials import (
    lock_serials,
    normalize_serial_entries,
    register_serials,
    resolve_serials_for_sale,
    retire_serials,
    validate_new_serials,
    with_history,
)

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.01")

PRODUCT_FIELDS = (
    "name",
    "specification",
    "description",
    "purchase_price",
    "wholesale_price",
    "retail_price",
    "status",
)


def _to_money(value):
    return Decimal(value or 0).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def _get_or_404(model, pk, label):
    instance = model.objects.filter(pk=pk).first()
    if instance is None:
        raise NotFound(f"{label} {pk} not found.")
    return instance


def _resolve_user(data, default):
    if data.get("user_id"):
        return _get_or_404(get_user_model(), data["user_id"], "User")
    return default


def _lines_total(items):
    return sum((Decimal(item["quantity"]) * _to_money(item["unit_price"]) for item in items), Decimal("0"))


def _summed_quantities(items):
    totals = defaultdict(int)
    for item in items:
        totals[int(item["product_id"])] += item["quantity"]
    return totals


# Products


@transaction.atomic
def create_product(data):
    serialized = bool(data.get("use_individual_serials"))
    raw_serials = data.get("individual_serials") or []
    category = _get_or_404(Category, data["category_id"], "Category") if data.get("category_id") else None

    entries = []
    quantity = data.get("quantity", 0)
    if serialized:
        if not raw_serials:
            raise ValidationError({"individualSerials": ["Serial numbers are required for individually serialized products."]})
        entries = normalize_serial_entries(raw_serials, default_warranty=data.get("warranty", False))
        if "quantity" not in data:
            quantity = len(entries)
        validate_new_serials([entry["serial"] for entry in entries], quantity)

    product = Product.objects.create(
        product_code=next_document_number(Product, "product_code", "PRD"),
        category=category,
        quantity=len(entries) if serialized else quantity,
        use_individual_serials=serialized,
        **{field: data[field] for field in PRODUCT_FIELDS if field in data},
    )
    if entries:
        register_serials(product, entries)

    logger.info(
        "product_created",
        extra={"entity": "product", "entity_id": product.id, "document_no": product.product_code, "serial_count": len(entries)},
    )
    return product


def _ensure_serials_replaceable(product):
    if product.serials.filter(state=ProductSerial.State.SOLD).exists():
        raise StateConflict(f"Product {product.name} has sold serial numbers; its serial list cannot be replaced.")
    if with_history(product.serials.all()).exists():
        raise StateConflict(f"Product {product.name} has serial numbers linked to records; its serial list cannot be replaced.")


@transaction.atomic
def update_product(product, data):
    product = lock_products([product.pk])[product.pk]
    was_serialized = product.use_individual_serials
    serialized = data.get("use_individual_serials", was_serialized)
    if serialized != was_serialized and product_is_referenced(product):
        raise StateConflict(f"Product {product.name} is referenced by existing records; serial tracking cannot be switched.")

    if "category_id" in data:
        product.category = _get_or_404(Category, data["category_id"], "Category") if data["category_id"] else None
    for field in PRODUCT_FIELDS:
        if field in data:
            setattr(product, field, data[field])

    serial_count = None
    if serialized:
        raw_serials = data.get("individual_serials")
        if raw_serials is None and not was_serialized:
            raise ValidationError({"individualSerials": ["Serial numbers are required for individually serialized products."]})
        if raw_serials is not None:
            entries = normalize_serial_entries(raw_serials, default_warranty=data.get("warranty", False))
            quantity = data.get("quantity", len(entries))
            validate_new_serials([entry["serial"] for entry in entries], quantity, exclude_product=product)
            _ensure_serials_replaceable(product)
            product.serials.all().delete()
            register_serials(product, entries)
            product.quantity = len(entries)
            serial_count = len(entries)
    else:
        if was_serialized:
            _ensure_serials_replaceable(product)
            product.serials.all().delete()
            product.quantity = 0
        if "quantity" in data:
            product.quantity = data["quantity"]

    product.use_individual_serials = serialized
    product.save()
    logger.info(
        "product_updated",
        extra={"entity": "product", "entity_id": product.id, "document_no": product.product_code, "serial_count": serial_count},
    )
    return product


def product_is_referenced(product):
    relations = (
        product.purchase_items,
        product.purchase_return_items,
        product.sale_items,
        product.sales_return_items,
        product.exchanged_out_items,
        product.exchanged_in_items,
    )
    return any(relation.exists() for relation in relations)


@transaction.atomic
def delete_product(product):
    product = lock_products([product.pk])[product.pk]
    if product_is_referenced(product):
        raise StateConflict(f"Product {product.name} is referenced by existing records and cannot be deleted.")
    product_id = product.id
    try:
        product.delete()
    except ProtectedError as exc:
        raise StateConflict(f"Product {product.name} is referenced by existing records and cannot be deleted.") from exc
    logger.info("product_deleted", extra={"entity": "product", "entity_id": product_id})


# Purchases


def _prepare_incoming_lines(items, products):
    """Validate incoming purchase lines before any write; returns ``(item, product, serial entries)`` per line."""
    if not items:
        raise ValidationError({"items": ["At least one item is required."]})

    batch = []
    prepared = []
    for item in items:
        product = products[int(item["product_id"])]
        entries = []
        if product.use_individual_serials:
            entries = normalize_serial_entries(item.get("serials") or [], default_warranty=item.get("warranty", False), field="serials")
            validate_new_serials([entry["serial"] for entry in entries], item["quantity"], field="serials")
            batch.extend(entry["serial"] for entry in entries)
        elif item.get("serials"):
            raise ValidationError({"serials": [f"Product {product.name} is not tracked by serial number."]})
        prepared.append((item, product, entries))

    # Serials are unique across the whole request, not only within a line.
    validate_new_serials(batch, None, field="serials")
    return prepared


def _write_purchase_items(purchase, prepared):
    serial_count = 0
    for item, product, entries in prepared:
        purchase_item = PurchaseItem.objects.create(
            purchase=purchase,
            product=product,
            quantity=item["quantity"],
            unit_price=_to_money(item["unit_price"]),
        )
        if entries:
            register_serials(product, entries, purchase_item=purchase_item)
            serial_count += len(entries)
    return serial_count


def _retire_purchase_serials(purchase_items, products):
    for item in purchase_items:
        if products[item.product_id].use_individual_serials:
            retire_serials(lock_serials(purchase_item=item))


def _apply_stock_deltas(products, deltas):
    for product_id, delta in deltas.items():
        product = products[product_id]
        if not product.use_individual_serials:
            adjust_stock(product, delta)


def _ensure_purchase_unreturned(purchase):
    if purchase.returns.exists():
        raise StateConflict(f"Purchase {purchase.purchase_no} has returns; remove them first.")


@transaction.atomic
def create_purchase(*, user, data):
    supplier = _get_or_404(Supplier, data["supplier_id"], "Supplier")
    user = _resolve_user(data, user)
    items = data.get("items") or []
    products = lock_products(item["product_id"] for item in items)
    prepared = _prepare_incoming_lines(items, products)

    total_amount = data.get("total_amount")
    purchase = Purchase.objects.create(
        purchase_no=next_document_number(Purchase, "purchase_no", "PUR"),
        supplier=supplier,
        user=user,
        total_amount=_to_money(total_amount if total_amount is not None else _lines_total(items)),
        total_paid=_to_money(data.get("total_paid")),
        due_date=data.get("due_date"),
        note=data.get("note", ""),
    )
    serial_count = _write_purchase_items(purchase, prepared)
    _apply_stock_deltas(products, _summed_quantities(items))
    logger.info(
        "purchase_created",
        extra={
            "entity": "purchase",
            "entity_id": purchase.id,
            "document_no": purchase.purchase_no,
            "item_count": len(items),
            "serial_count": serial_count,
        },
    )
    return purchase


@transaction.atomic
def update_purchase(purchase, data):
    """Update header fields and, when ``items`` is given, replace the purchase lines.

    Line replacement reverses the old lines and applies the new ones; for
    bulk products only the net difference touches stock, so the result is
    ``original - old + new``.
    """
    purchase = Purchase.objects.select_for_update().get(pk=purchase.pk)
    if "supplier_id" in data:
        purchase.supplier = _get_or_404(Supplier, data["supplier_id"], "Supplier")
    for field in ("total_paid", "total_amount"):
        if data.get(field) is not None:
            setattr(purchase, field, _to_money(data[field]))
    for field in ("due_date", "note"):
        if field in data:
            setattr(purchase, field, data[field])

    items = data.get("items")
    if items is not None:
        _ensure_purchase_unreturned(purchase)
        old_items = list(purchase.items.all())
        products = lock_products([item.product_id for item in old_items] + [item["product_id"] for item in items])
        _retire_purchase_serials(old_items, products)
        prepared = _prepare_incoming_lines(items, products)

        deltas = _summed_quantities(items)
        for item in old_items:
            deltas[item.product_id] -= item.quantity
        purchase.items.all().delete()
        _write_purchase_items(purchase, prepared)
        _apply_stock_deltas(products, deltas)
        if data.get("total_amount") is None:
            purchase.total_amount = _to_money(_lines_total(items))

    purchase.save()
    logger.info(
        "purchase_updated",
        extra={"entity": "purchase", "entity_id": purchase.id, "document_no": purchase.purchase_no, "item_count": len(items or [])},
    )
    return purchase


@transaction.atomic
def delete_purchase(purchase):
    purchase = Purchase.objects.select_for_update().get(pk=purchase.pk)
    _ensure_purchase_unreturned(purchase)
    old_items = list(purchase.items.all())
    products = lock_products(item.product_id for item in old_items)
    _retire_purchase_serials(old_items, products)

    deltas = defaultdict(int)
    for item in old_items:
        deltas[item.product_id] -= item.quantity
    _apply_stock_deltas(products, deltas)

    purchase.items.all().delete()
    purchase_no = purchase.purchase_no
    purchase_id = purchase.id
    purchase.delete()
    logger.info("purchase_deleted", extra={"entity": "purchase", "entity_id": purchase_id, "document_no": purchase_no})


# Purchase returns


def purchase_returnable_quantities(purchase):
    """Units per product that can still go back to the supplier for ``purchase``."""
    purchased = dict(
        purchase.items.values("product_id").annotate(total=Sum("quantity")).values_list("product_id", "total")
    )
    returned_items = PurchaseReturnItem.objects.filter(purchase_return__purchase=purchase)
    returned = dict(returned_items.values("product_id").annotate(total=Sum("quantity")).values_list("product_id", "total"))
    return {product_id: total - returned.get(product_id, 0) for product_id, total in purchased.items()}


@transaction.atomic
def create_purchase_return(*, user, data):
    purchase = Purchase.objects.select_for_update().filter(pk=data["purchase_id"]).first()
    if purchase is None:
        raise NotFound(f"Purchase {data['purchase_id']} not found.")
    user = _resolve_user(data, user)
    items = data.get("items") or []
    if not items:
        raise ValidationError({"items": ["At least one item is required."]})

    products = lock_products(item["product_id"] for item in items)
    returnable = purchase_returnable_quantities(purchase)
    purchased_prices = dict(purchase.items.values_list("product_id", "unit_price"))
    for product_id, quantity in _summed_quantities(items).items():
        if product_id not in returnable:
            raise ValidationError({"items": [f"Product {product_id} is not part of purchase {purchase.purchase_no}."]})
        if quantity > returnable[product_id]:
            raise ValidationError(
                {"items": [f"Cannot return {quantity} units of product {product_id}; only {returnable[product_id]} remain returnable."]}
            )
        product = products[product_id]
        if not product.use_individual_serials:
            ensure_stock_available(product, quantity)

    purchase_return = PurchaseReturn.objects.create(
        return_no=next_document_number(PurchaseReturn, "return_no", "PRN"),
        purchase=purchase,
        supplier=purchase.supplier,
        user=user,
        total_paid=_to_money(data.get("total_paid")),
        note=data.get("note", ""),
    )
    serial_count = 0
    for item in items:
        product = products[int(item["product_id"])]
        kept = []
        if product.use_individual_serials:
            serials = resolve_serials_for_sale(product, item.get("serials") or [], item["quantity"])
            kept = retire_serials(serials)
            serial_count += len(kept)
        else:
            adjust_stock(product, -item["quantity"])
        PurchaseReturnItem.objects.create(
            purchase_return=purchase_return,
            product=product,
            quantity=item["quantity"],
            unit_price=_to_money(item.get("unit_price", purchased_prices.get(product.id))),
            serials=kept,
        )

    logger.info(
        "purchase_return_created",
        extra={
            "entity": "purchase_return",
            "entity_id": purchase_return.id,
            "document_no": purchase_return.return_no,
            "item_count": len(items),
            "serial_count": serial_count,
        },
    )
    return purchase_return


@transaction.atomic
def update_purchase_return(purchase_return, data):
    purchase_return = PurchaseReturn.objects.select_for_update().get(pk=purchase_return.pk)
    if data.get("total_paid") is not None:
        purchase_return.total_paid = _to_money(data["total_paid"])
    if "note" in data:
        purchase_return.note = data["note"]
    purchase_return.save()
    logger.info(
        "purchase_return_updated",
        extra={"entity": "purchase_return", "entity_id": purchase_return.id, "document_no": purchase_return.return_no},
    )
    return purchase_return


@transaction.atomic
def delete_purchase_return(purchase_return):
    purchase_return = PurchaseReturn.objects.select_for_update().get(pk=purchase_return.pk)
    items = list(purchase_return.items.all())
    products = lock_products(item.product_id for item in items)

    for item in items:
        product = products[item.product_id]
        if item.serials:
            validate_new_serials([entry["serial"] for entry in item.serials], len(item.serials), field="serials")
            origins = defaultdict(list)
            for entry in item.serials:
                origins[entry.get("purchase_item_id")].append(entry)
            for purchase_item_id, entries in origins.items():
                purchase_item = PurchaseItem.objects.filter(pk=purchase_item_id).first() if purchase_item_id else None
                register_serials(product, entries, purchase_item=purchase_item)
        else:
            adjust_stock(product, item.quantity)

    purchase_return.items.all().delete()
    return_no = purchase_return.return_no
    return_id = purchase_return.id
    purchase_return.delete()
    logger.info("purchase_return_deleted", extra={"entity": "purchase_return", "entity_id": return_id, "document_no": return_no})
