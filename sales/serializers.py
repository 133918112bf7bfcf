from rest_framework import serializers

from inventory.serializers import MONEY, PriceAliasMixin, ReturnLineInputSerializer
from sales.models import Customer, Exchange, ExchangeItem, ExchangeItemSerial, Sale, SaleItem, SalesReturn, SalesReturnItem, Service


def _linked_serials(obj, direction=None):
    return [
        link.serial.serial
        for link in obj.serial_links.all()
        if direction is None or link.direction == direction
    ]


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "customer_code", "name", "email", "phone", "address", "created_at", "updated_at"]
        read_only_fields = ["id", "customer_code", "created_at", "updated_at"]


class SaleItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    serials = serializers.SerializerMethodField()

    class Meta:
        model = SaleItem
        fields = ["id", "product", "product_name", "quantity", "unit_price", "discount", "serials"]
        read_only_fields = fields

    def get_serials(self, obj):
        return _linked_serials(obj)


class SaleSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    user_name = serializers.CharField(source="user.username", read_only=True)
    items = SaleItemSerializer(many=True, read_only=True)

    class Meta:
        model = Sale
        fields = [
            "id",
            "sale_no",
            "customer",
            "customer_name",
            "user",
            "user_name",
            "total_amount",
            "total_paid",
            "total_discount",
            "due_date",
            "status",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class SaleLineInputSerializer(serializers.Serializer):
    product_id = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1)
    unitPrice = serializers.DecimalField(source="unit_price", min_value=0, **MONEY)
    discount = serializers.DecimalField(min_value=0, required=False, **MONEY)
    serials = serializers.ListField(child=serializers.CharField(), required=False)


class SaleInputSerializer(serializers.Serializer):
    customer_id = serializers.IntegerField()
    user_id = serializers.IntegerField(required=False)
    totalAmount = serializers.DecimalField(source="total_amount", min_value=0, required=False, **MONEY)
    totalPaid = serializers.DecimalField(source="total_paid", min_value=0, required=False, **MONEY)
    totaldiscount = serializers.DecimalField(source="total_discount", min_value=0, required=False, **MONEY)
    dueDate = serializers.DateTimeField(source="due_date", required=False, allow_null=True)
    items = SaleLineInputSerializer(many=True, allow_empty=False)


class SaleUpdateSerializer(serializers.Serializer):
    customer_id = serializers.IntegerField(required=False)
    user_id = serializers.IntegerField(required=False)
    totalPaid = serializers.DecimalField(source="total_paid", min_value=0, required=False, **MONEY)
    totaldiscount = serializers.DecimalField(source="total_discount", min_value=0, required=False, **MONEY)
    dueDate = serializers.DateTimeField(source="due_date", required=False, allow_null=True)


class SalesReturnItemSerializer(serializers.ModelSerializer):
    product_id = serializers.IntegerField(read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    price = serializers.DecimalField(source="unit_price", read_only=True, **MONEY)
    serials = serializers.SerializerMethodField()

    class Meta:
        model = SalesReturnItem
        fields = ["id", "product_id", "product_name", "quantity", "price", "serials"]
        read_only_fields = fields

    def get_serials(self, obj):
        return _linked_serials(obj)


class SalesReturnSerializer(serializers.ModelSerializer):
    return_number = serializers.CharField(source="return_no", read_only=True)
    original_invoice = serializers.CharField(source="sale.sale_no", read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    customer_phone = serializers.CharField(source="customer.phone", read_only=True)
    customer_address = serializers.CharField(source="customer.address", read_only=True)
    total_amount = serializers.DecimalField(source="total_payback", read_only=True, **MONEY)
    reason = serializers.CharField(source="note", read_only=True)
    items = SalesReturnItemSerializer(many=True, read_only=True)

    class Meta:
        model = SalesReturn
        fields = [
            "id",
            "return_number",
            "sale",
            "original_invoice",
            "customer",
            "customer_name",
            "customer_phone",
            "customer_address",
            "user",
            "total_amount",
            "reason",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class SalesReturnInputSerializer(serializers.Serializer):
    sales_id = serializers.IntegerField(source="sale_id")
    customer_id = serializers.IntegerField(required=False)
    user_id = serializers.IntegerField(required=False)
    total_payback = serializers.DecimalField(min_value=0, required=False, **MONEY)
    note = serializers.CharField(required=False, allow_blank=True)
    items = ReturnLineInputSerializer(many=True, allow_empty=False)


class SalesReturnUpdateSerializer(serializers.Serializer):
    total_payback = serializers.DecimalField(min_value=0, required=False, **MONEY)
    note = serializers.CharField(required=False, allow_blank=True)


class ExchangeItemSerializer(serializers.ModelSerializer):
    old_product_id = serializers.IntegerField(read_only=True)
    old_product_name = serializers.CharField(source="old_product.name", read_only=True)
    new_product_id = serializers.IntegerField(read_only=True)
    new_product_name = serializers.CharField(source="new_product.name", read_only=True)
    returned_serials = serializers.SerializerMethodField()
    issued_serials = serializers.SerializerMethodField()

    class Meta:
        model = ExchangeItem
        fields = [
            "id",
            "old_product_id",
            "old_product_name",
            "new_product_id",
            "new_product_name",
            "quantity",
            "unit_price",
            "note",
            "returned_serials",
            "issued_serials",
        ]
        read_only_fields = fields

    def get_returned_serials(self, obj):
        return _linked_serials(obj, ExchangeItemSerial.Direction.RETURNED)

    def get_issued_serials(self, obj):
        return _linked_serials(obj, ExchangeItemSerial.Direction.ISSUED)


class ExchangeSerializer(serializers.ModelSerializer):
    exchange_number = serializers.CharField(source="exchange_no", read_only=True)
    original_invoice = serializers.CharField(source="sale.sale_no", read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    customer_phone = serializers.CharField(source="customer.phone", read_only=True)
    customer_address = serializers.CharField(source="customer.address", read_only=True)
    net_amount = serializers.SerializerMethodField()
    reason = serializers.CharField(source="note", read_only=True)
    items = ExchangeItemSerializer(many=True, read_only=True)

    class Meta:
        model = Exchange
        fields = [
            "id",
            "exchange_number",
            "sale",
            "original_invoice",
            "customer",
            "customer_name",
            "customer_phone",
            "customer_address",
            "user",
            "total_paid",
            "total_payback",
            "net_amount",
            "reason",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_net_amount(self, obj):
        return str(obj.total_paid - obj.total_payback)


class ExchangeLineInputSerializer(PriceAliasMixin, serializers.Serializer):
    price_aliases = ("unit_price",)

    old_product_id = serializers.IntegerField()
    new_product_id = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1)
    unitPrice = serializers.DecimalField(source="unit_price", min_value=0, required=False, **MONEY)
    note = serializers.CharField(required=False, allow_blank=True)
    returned_serials = serializers.ListField(child=serializers.CharField(), required=False)
    issued_serials = serializers.ListField(child=serializers.CharField(), required=False)


class ExchangeInputSerializer(serializers.Serializer):
    sales_id = serializers.IntegerField(source="sale_id")
    customer_id = serializers.IntegerField(required=False)
    user_id = serializers.IntegerField(required=False)
    totalPaid = serializers.DecimalField(source="total_paid", min_value=0, required=False, **MONEY)
    totalPayback = serializers.DecimalField(source="total_payback", min_value=0, required=False, **MONEY)
    note = serializers.CharField(required=False, allow_blank=True)
    items = ExchangeLineInputSerializer(many=True, allow_empty=False)


class ExchangeUpdateSerializer(serializers.Serializer):
    totalPaid = serializers.DecimalField(source="total_paid", min_value=0, required=False, **MONEY)
    totalPayback = serializers.DecimalField(source="total_payback", min_value=0, required=False, **MONEY)
    note = serializers.CharField(required=False, allow_blank=True)


class ServiceSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)
    technician_name = serializers.CharField(source="technician.username", read_only=True, default=None)

    class Meta:
        model = Service
        fields = [
            "id",
            "service_no",
            "customer",
            "customer_name",
            "technician",
            "technician_name",
            "product_name",
            "description",
            "cost",
            "status",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "service_no", "created_at", "updated_at"]
