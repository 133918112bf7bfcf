import logging
from collections import Counter, defaultdict
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Sum
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import InsufficientSerials, StateConflict
from common.numbering import next_document_number
from inventory.ledger import adjust_stock, ensure_stock_available, lock_products
from inventory.models import Product
from inventory.serials import (
    lock_serials,
    mark_available,
    mark_sold,
    reserve_serials,
    resolve_serials_for_return,
    resolve_serials_for_sale,
)
from sales.models import (
    Customer,
    Exchange,
    ExchangeItem,
    ExchangeItemSerial,
    Sale,
    SaleItem,
    SaleItemSerial,
    SalesReturn,
    SalesReturnItem,
    SalesReturnItemSerial,
)

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.01")


def _to_money(value):
    return Decimal(value or 0).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def _get_or_404(model, pk, label):
    instance = model.objects.filter(pk=pk).first()
    if instance is None:
        raise NotFound(f"{label} {pk} not found.")
    return instance


def _lock_sale(sale_id):
    sale = Sale.objects.select_for_update().filter(pk=sale_id).first()
    if sale is None:
        raise NotFound(f"Sale {sale_id} not found.")
    return sale


def _resolve_user(data, default):
    if data.get("user_id"):
        return _get_or_404(get_user_model(), data["user_id"], "User")
    return default


def _ensure_customer_matches(sale, data):
    customer_id = data.get("customer_id")
    if customer_id and int(customer_id) != sale.customer_id:
        raise ValidationError({"customer_id": [f"Sale {sale.sale_no} belongs to a different customer."]})


def sale_status(total_paid, total_amount):
    return Sale.Status.COMPLETED if _to_money(total_paid) >= _to_money(total_amount) else Sale.Status.PENDING


def _quantities(queryset, field):
    rows = queryset.values(field).annotate(total=Sum("quantity")).values_list(field, "total")
    return Counter({product_id: total for product_id, total in rows})


def sale_returnable_quantities(sale):
    """Units per product still with the customer: sold plus exchange-issued, minus returned and exchanged out."""
    exchange_items = ExchangeItem.objects.filter(exchange__sale=sale)
    outgoing = _quantities(SaleItem.objects.filter(sale=sale), "product_id")
    outgoing.update(_quantities(exchange_items, "new_product_id"))
    incoming = _quantities(SalesReturnItem.objects.filter(sales_return__sale=sale), "product_id")
    incoming.update(_quantities(exchange_items, "old_product_id"))
    return outgoing - incoming


def outstanding_serial_ids(sale):
    """Serial ids issued under ``sale`` (directly or by exchange) that have not come back."""
    issued = Counter(SaleItemSerial.objects.filter(sale_item__sale=sale).values_list("serial_id", flat=True))
    issued.update(
        ExchangeItemSerial.objects.filter(
            exchange_item__exchange__sale=sale, direction=ExchangeItemSerial.Direction.ISSUED
        ).values_list("serial_id", flat=True)
    )
    returned = Counter(
        SalesReturnItemSerial.objects.filter(return_item__sales_return__sale=sale).values_list("serial_id", flat=True)
    )
    returned.update(
        ExchangeItemSerial.objects.filter(
            exchange_item__exchange__sale=sale, direction=ExchangeItemSerial.Direction.RETURNED
        ).values_list("serial_id", flat=True)
    )
    return set(issued - returned)


def _plan_outgoing(lines, credit=None):
    """Validate units leaving stock before any write.

    ``lines`` holds ``(product, quantity, serials)`` tuples. Returns the
    locked serial rows per line (empty for bulk products). ``credit`` maps
    product ids to units coming back inside the same unit of work.
    """
    credit = credit or {}
    claimed = set()
    needed = defaultdict(int)
    by_id = {}
    plans = []
    for product, quantity, serials in lines:
        if product.status != Product.Status.ACTIVE:
            raise StateConflict(f"Product {product.name} is not active.")
        if product.use_individual_serials:
            if serials:
                rows = resolve_serials_for_sale(product, serials, quantity)
                clash = next((row.serial for row in rows if row.pk in claimed), None)
                if clash is not None:
                    raise ValidationError({"serials": [f"Serial number {clash} is used by more than one line."]})
            else:
                rows = reserve_serials(product, quantity, exclude=claimed)
            claimed.update(row.pk for row in rows)
            plans.append(rows)
        else:
            if serials:
                raise ValidationError({"serials": [f"Product {product.name} is not tracked by serial number."]})
            needed[product.id] += quantity
            by_id[product.id] = product
            plans.append([])

    for product_id, quantity in needed.items():
        shortfall = quantity - credit.get(product_id, 0)
        if shortfall > 0:
            ensure_stock_available(by_id[product_id], shortfall)
    return plans


def _plan_incoming(sale, lines):
    """Validate units coming back from the customer of ``sale`` before any write."""
    returnable = sale_returnable_quantities(sale)
    requested = defaultdict(int)
    for product, quantity, _ in lines:
        requested[product.id] += quantity
    for product_id, quantity in requested.items():
        if quantity > returnable.get(product_id, 0):
            raise ValidationError(
                {"items": [f"Cannot return {quantity} units of product {product_id}; only {returnable.get(product_id, 0)} remain returnable."]}
            )

    eligible = outstanding_serial_ids(sale)
    claimed = set()
    plans = []
    for product, quantity, serials in lines:
        rows = []
        if product.use_individual_serials:
            if serials:
                rows = resolve_serials_for_return(product, serials, quantity, eligible)
            else:
                rows = lock_serials(pk__in=eligible - claimed, product=product)[:quantity]
                if len(rows) < quantity:
                    raise InsufficientSerials(f"Sale {sale.sale_no} has fewer than {quantity} outstanding serials of {product.name}.")
            clash = next((row.serial for row in rows if row.pk in claimed), None)
            if clash is not None:
                raise ValidationError({"serials": [f"Serial number {clash} is used by more than one line."]})
            claimed.update(row.pk for row in rows)
        elif serials:
            raise ValidationError({"serials": [f"Product {product.name} is not tracked by serial number."]})
        plans.append(rows)
    return plans


def _issue(product, quantity, rows):
    if product.use_individual_serials:
        mark_sold(rows)
    else:
        adjust_stock(product, -quantity)


def _receive(product, quantity, rows):
    if product.use_individual_serials:
        mark_available(rows)
    else:
        adjust_stock(product, quantity)


def _linked_serials(links):
    return lock_serials(pk__in=[link.serial_id for link in links])


# Sales


@transaction.atomic
def create_sale(*, user, data):
    customer = _get_or_404(Customer, data["customer_id"], "Customer")
    user = _resolve_user(data, user)
    items = data.get("items") or []
    if not items:
        raise ValidationError({"items": ["At least one item is required."]})

    products = lock_products(item["product_id"] for item in items)
    lines = [(products[int(item["product_id"])], item["quantity"], item.get("serials")) for item in items]
    if getattr(settings, "SALES_ENFORCE_RETAIL_PRICE", True):
        for item, (product, _, _) in zip(items, lines):
            if _to_money(item["unit_price"]) != _to_money(product.retail_price):
                raise ValidationError(
                    {"unitPrice": [f"Unit price for {product.name} must equal its retail price {product.retail_price}."]}
                )
    plans = _plan_outgoing(lines)

    total_discount = _to_money(data.get("total_discount"))
    total_amount = data.get("total_amount")
    if total_amount is None:
        total_amount = sum(
            (item["quantity"] * _to_money(item["unit_price"]) - _to_money(item.get("discount")) for item in items),
            Decimal("0"),
        ) - total_discount
    total_paid = _to_money(data.get("total_paid"))

    sale = Sale.objects.create(
        sale_no=next_document_number(Sale, "sale_no", "SALE"),
        customer=customer,
        user=user,
        total_amount=_to_money(total_amount),
        total_paid=total_paid,
        total_discount=total_discount,
        due_date=data.get("due_date"),
        status=sale_status(total_paid, total_amount),
    )
    serial_count = 0
    for item, (product, quantity, _), rows in zip(items, lines, plans):
        sale_item = SaleItem.objects.create(
            sale=sale,
            product=product,
            quantity=quantity,
            unit_price=_to_money(item["unit_price"]),
            discount=_to_money(item.get("discount")),
        )
        SaleItemSerial.objects.bulk_create([SaleItemSerial(sale_item=sale_item, serial=row) for row in rows])
        _issue(product, quantity, rows)
        serial_count += len(rows)

    logger.info(
        "sale_created",
        extra={
            "entity": "sale",
            "entity_id": sale.id,
            "document_no": sale.sale_no,
            "item_count": len(items),
            "serial_count": serial_count,
        },
    )
    return sale


@transaction.atomic
def update_sale(sale, data):
    sale = _lock_sale(sale.pk)
    if data.get("customer_id"):
        sale.customer = _get_or_404(Customer, data["customer_id"], "Customer")
    if data.get("user_id"):
        sale.user = _resolve_user(data, sale.user)
    for field in ("total_paid", "total_discount", "total_amount"):
        if data.get(field) is not None:
            setattr(sale, field, _to_money(data[field]))
    if "due_date" in data:
        sale.due_date = data["due_date"]
    sale.status = sale_status(sale.total_paid, sale.total_amount)
    sale.save()
    logger.info("sale_updated", extra={"entity": "sale", "entity_id": sale.id, "document_no": sale.sale_no})
    return sale


@transaction.atomic
def delete_sale(sale):
    sale = _lock_sale(sale.pk)
    if sale.returns.exists() or sale.exchanges.exists():
        raise StateConflict(f"Sale {sale.sale_no} has returns or exchanges; remove them first.")

    items = list(sale.items.prefetch_related("serial_links"))
    products = lock_products(item.product_id for item in items)
    for item in items:
        links = list(item.serial_links.all())
        _receive(products[item.product_id], item.quantity, _linked_serials(links))
        SaleItemSerial.objects.filter(sale_item=item).delete()

    sale.items.all().delete()
    sale_no = sale.sale_no
    sale_id = sale.id
    sale.delete()
    logger.info("sale_deleted", extra={"entity": "sale", "entity_id": sale_id, "document_no": sale_no})


# Sales returns


@transaction.atomic
def create_sales_return(*, user, data):
    sale = _lock_sale(data["sale_id"])
    _ensure_customer_matches(sale, data)
    user = _resolve_user(data, user)
    items = data.get("items") or []
    if not items:
        raise ValidationError({"items": ["At least one item is required."]})

    products = lock_products(item["product_id"] for item in items)
    lines = [(products[int(item["product_id"])], item["quantity"], item.get("serials")) for item in items]
    plans = _plan_incoming(sale, lines)
    sold_prices = dict(sale.items.values_list("product_id", "unit_price"))

    sales_return = SalesReturn.objects.create(
        return_no=next_document_number(SalesReturn, "return_no", "SRN"),
        sale=sale,
        customer=sale.customer,
        user=user,
        total_payback=_to_money(data.get("total_payback")),
        note=data.get("note", ""),
    )
    serial_count = 0
    for item, (product, quantity, _), rows in zip(items, lines, plans):
        unit_price = item.get("unit_price")
        if unit_price is None:
            unit_price = sold_prices.get(product.id, product.retail_price)
        return_item = SalesReturnItem.objects.create(
            sales_return=sales_return,
            product=product,
            quantity=quantity,
            unit_price=_to_money(unit_price),
        )
        SalesReturnItemSerial.objects.bulk_create([SalesReturnItemSerial(return_item=return_item, serial=row) for row in rows])
        _receive(product, quantity, rows)
        serial_count += len(rows)

    logger.info(
        "sales_return_created",
        extra={
            "entity": "sales_return",
            "entity_id": sales_return.id,
            "document_no": sales_return.return_no,
            "item_count": len(items),
            "serial_count": serial_count,
        },
    )
    return sales_return


@transaction.atomic
def update_sales_return(sales_return, data):
    sales_return = SalesReturn.objects.select_for_update().get(pk=sales_return.pk)
    if data.get("total_payback") is not None:
        sales_return.total_payback = _to_money(data["total_payback"])
    if "note" in data:
        sales_return.note = data["note"]
    sales_return.save()
    logger.info(
        "sales_return_updated",
        extra={"entity": "sales_return", "entity_id": sales_return.id, "document_no": sales_return.return_no},
    )
    return sales_return


@transaction.atomic
def delete_sales_return(sales_return):
    sales_return = SalesReturn.objects.select_for_update().get(pk=sales_return.pk)
    items = list(sales_return.items.prefetch_related("serial_links"))
    products = lock_products(item.product_id for item in items)
    for item in items:
        links = list(item.serial_links.all())
        _issue(products[item.product_id], item.quantity, _linked_serials(links))
        SalesReturnItemSerial.objects.filter(return_item=item).delete()

    sales_return.items.all().delete()
    return_no = sales_return.return_no
    return_id = sales_return.id
    sales_return.delete()
    logger.info("sales_return_deleted", extra={"entity": "sales_return", "entity_id": return_id, "document_no": return_no})


# Exchanges


@transaction.atomic
def create_exchange(*, user, data):
    """Take back ``old_product`` units from the customer of a sale and hand out ``new_product`` units."""
    sale = _lock_sale(data["sale_id"])
    _ensure_customer_matches(sale, data)
    user = _resolve_user(data, user)
    items = data.get("items") or []
    if not items:
        raise ValidationError({"items": ["At least one item is required."]})

    products = lock_products(
        [item["old_product_id"] for item in items] + [item["new_product_id"] for item in items]
    )
    incoming = [(products[int(item["old_product_id"])], item["quantity"], item.get("returned_serials")) for item in items]
    outgoing = [(products[int(item["new_product_id"])], item["quantity"], item.get("issued_serials")) for item in items]
    incoming_plans = _plan_incoming(sale, incoming)
    credit = defaultdict(int)
    for product, quantity, _ in incoming:
        if not product.use_individual_serials:
            credit[product.id] += quantity
    outgoing_plans = _plan_outgoing(outgoing, credit=credit)

    exchange = Exchange.objects.create(
        exchange_no=next_document_number(Exchange, "exchange_no", "EXC"),
        sale=sale,
        customer=sale.customer,
        user=user,
        total_paid=_to_money(data.get("total_paid")),
        total_payback=_to_money(data.get("total_payback")),
        note=data.get("note", ""),
    )
    exchange_items = []
    for item, (old_product, quantity, _), (new_product, _, _) in zip(items, incoming, outgoing):
        exchange_items.append(
            ExchangeItem.objects.create(
                exchange=exchange,
                old_product=old_product,
                new_product=new_product,
                quantity=quantity,
                unit_price=_to_money(item.get("unit_price")),
                note=item.get("note", ""),
            )
        )

    links = []
    for exchange_item, returned_rows, issued_rows in zip(exchange_items, incoming_plans, outgoing_plans):
        links.extend(
            ExchangeItemSerial(exchange_item=exchange_item, serial=row, direction=ExchangeItemSerial.Direction.RETURNED)
            for row in returned_rows
        )
        links.extend(
            ExchangeItemSerial(exchange_item=exchange_item, serial=row, direction=ExchangeItemSerial.Direction.ISSUED)
            for row in issued_rows
        )
    ExchangeItemSerial.objects.bulk_create(links)

    # Units come back first so a same-product swap can reuse them.
    for (product, quantity, _), rows in zip(incoming, incoming_plans):
        _receive(product, quantity, rows)
    for (product, quantity, _), rows in zip(outgoing, outgoing_plans):
        _issue(product, quantity, rows)

    logger.info(
        "exchange_created",
        extra={
            "entity": "exchange",
            "entity_id": exchange.id,
            "document_no": exchange.exchange_no,
            "item_count": len(items),
            "serial_count": len(links),
        },
    )
    return exchange


@transaction.atomic
def update_exchange(exchange, data):
    exchange = Exchange.objects.select_for_update().get(pk=exchange.pk)
    for field in ("total_paid", "total_payback"):
        if data.get(field) is not None:
            setattr(exchange, field, _to_money(data[field]))
    if "note" in data:
        exchange.note = data["note"]
    exchange.save()
    logger.info("exchange_updated", extra={"entity": "exchange", "entity_id": exchange.id, "document_no": exchange.exchange_no})
    return exchange


def _ensure_exchange_reversible(exchange, items):
    """Refuse to reverse ``exchange`` once later records took back what it issued.

    Per product, the units still with the customer minus what the exchange
    handed out plus what it took back must not go negative, and every serial
    it issued must still be outstanding on the sale.
    """
    sale = exchange.sale
    balance = Counter(sale_returnable_quantities(sale))
    for item in items:
        balance[item.new_product_id] -= item.quantity
        balance[item.old_product_id] += item.quantity
    issued_ids = {
        link.serial_id
        for item in items
        for link in item.serial_links.all()
        if link.direction == ExchangeItemSerial.Direction.ISSUED
    }
    if any(quantity < 0 for quantity in balance.values()) or not issued_ids <= outstanding_serial_ids(sale):
        raise StateConflict(
            f"Exchange {exchange.exchange_no} has later returns or exchanges on sale {sale.sale_no}; remove them first."
        )


@transaction.atomic
def delete_exchange(exchange):
    exchange = Exchange.objects.select_for_update().get(pk=exchange.pk)
    _lock_sale(exchange.sale_id)
    items = list(exchange.items.prefetch_related("serial_links"))
    _ensure_exchange_reversible(exchange, items)
    products = lock_products([item.old_product_id for item in items] + [item.new_product_id for item in items])

    restores = []
    consumes = []
    for item in items:
        links = list(item.serial_links.all())
        issued = [link for link in links if link.direction == ExchangeItemSerial.Direction.ISSUED]
        returned = [link for link in links if link.direction == ExchangeItemSerial.Direction.RETURNED]
        restores.append((products[item.new_product_id], item.quantity, _linked_serials(issued)))
        consumes.append((products[item.old_product_id], item.quantity, _linked_serials(returned)))

    for product, quantity, rows in restores:
        _receive(product, quantity, rows)
    for product, quantity, rows in consumes:
        _issue(product, quantity, rows)

    ExchangeItemSerial.objects.filter(exchange_item__exchange=exchange).delete()
    exchange.items.all().delete()
    exchange_no = exchange.exchange_no
    exchange_id = exchange.id
    exchange.delete()
    logger.info("exchange_deleted", extra={"entity": "exchange", "entity_id": exchange_id, "document_no": exchange_no})
