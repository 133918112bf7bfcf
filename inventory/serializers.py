from rest_framework import serializers

from inventory.ledger import available_stock
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

MONEY = {"max_digits": 12, "decimal_places": 2}


class CategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ["id", "name", "description", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class SupplierSerializer(serializers.ModelSerializer):
    class Meta:
        model = Supplier
        fields = ["id", "supplier_code", "name", "email", "phone", "address", "created_at", "updated_at"]
        read_only_fields = ["id", "supplier_code", "created_at", "updated_at"]


class ProductSerialSerializer(serializers.ModelSerializer):
    class Meta:
        model = ProductSerial
        fields = ["id", "serial", "product", "state", "warranty", "purchase_item", "created_at", "updated_at"]
        read_only_fields = fields


class ProductSerializer(serializers.ModelSerializer):
    category_name = serializers.CharField(source="category.name", read_only=True, default=None)
    available_stock = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = [
            "id",
            "product_code",
            "name",
            "specification",
            "description",
            "category",
            "category_name",
            "quantity",
            "available_stock",
            "purchase_price",
            "wholesale_price",
            "retail_price",
            "use_individual_serials",
            "status",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_available_stock(self, obj):
        annotated = getattr(obj, "available_serials", None)
        if obj.use_individual_serials and annotated is not None:
            return annotated
        return available_stock(obj)


class ProductInputSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    specification = serializers.CharField(max_length=255, required=False, allow_blank=True)
    description = serializers.CharField(required=False, allow_blank=True)
    category_id = serializers.IntegerField(required=False, allow_null=True)
    quantity = serializers.IntegerField(min_value=0, required=False)
    purchasePrice = serializers.DecimalField(source="purchase_price", min_value=0, required=False, **MONEY)
    wholesalePrice = serializers.DecimalField(source="wholesale_price", min_value=0, required=False, **MONEY)
    retailPrice = serializers.DecimalField(source="retail_price", min_value=0, required=False, **MONEY)
    warranty = serializers.BooleanField(required=False)
    useIndividualSerials = serializers.BooleanField(source="use_individual_serials", required=False)
    individualSerials = serializers.ListField(child=serializers.JSONField(), source="individual_serials", required=False)
    status = serializers.ChoiceField(choices=Product.Status.choices, required=False)


class PurchaseItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    serials = serializers.SlugRelatedField(slug_field="serial", many=True, read_only=True)

    class Meta:
        model = PurchaseItem
        fields = ["id", "product", "product_name", "quantity", "unit_price", "serials"]
        read_only_fields = fields


class PurchaseSerializer(serializers.ModelSerializer):
    supplier_name = serializers.CharField(source="supplier.name", read_only=True)
    user_name = serializers.CharField(source="user.username", read_only=True)
    items = PurchaseItemSerializer(many=True, read_only=True)

    class Meta:
        model = Purchase
        fields = [
            "id",
            "purchase_no",
            "supplier",
            "supplier_name",
            "user",
            "user_name",
            "total_amount",
            "total_paid",
            "due_date",
            "note",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PurchaseLineInputSerializer(serializers.Serializer):
    product_id = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1)
    unitPrice = serializers.DecimalField(source="unit_price", min_value=0, **MONEY)
    serials = serializers.ListField(child=serializers.JSONField(), required=False)
    warranty = serializers.BooleanField(required=False)


class PurchaseInputSerializer(serializers.Serializer):
    supplier_id = serializers.IntegerField()
    user_id = serializers.IntegerField(required=False)
    totalAmount = serializers.DecimalField(source="total_amount", min_value=0, required=False, **MONEY)
    totalPaid = serializers.DecimalField(source="total_paid", min_value=0, required=False, **MONEY)
    dueDate = serializers.DateTimeField(source="due_date", required=False, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True)
    items = PurchaseLineInputSerializer(many=True, allow_empty=False)


class PurchaseUpdateSerializer(serializers.Serializer):
    supplier_id = serializers.IntegerField(required=False)
    totalAmount = serializers.DecimalField(source="total_amount", min_value=0, required=False, **MONEY)
    totalPaid = serializers.DecimalField(source="total_paid", min_value=0, required=False, **MONEY)
    dueDate = serializers.DateTimeField(source="due_date", required=False, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True)
    items = PurchaseLineInputSerializer(many=True, required=False, allow_empty=False)


class PurchaseReturnItemSerializer(serializers.ModelSerializer):
    product_id = serializers.IntegerField(read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)
    price = serializers.DecimalField(source="unit_price", read_only=True, **MONEY)
    serials = serializers.SerializerMethodField()

    class Meta:
        model = PurchaseReturnItem
        fields = ["id", "product_id", "product_name", "quantity", "price", "serials"]
        read_only_fields = fields

    def get_serials(self, obj):
        return [entry["serial"] for entry in obj.serials or []]


class PurchaseReturnSerializer(serializers.ModelSerializer):
    return_number = serializers.CharField(source="return_no", read_only=True)
    original_invoice = serializers.CharField(source="purchase.purchase_no", read_only=True)
    supplier_name = serializers.CharField(source="supplier.name", read_only=True)
    supplier_phone = serializers.CharField(source="supplier.phone", read_only=True)
    supplier_address = serializers.CharField(source="supplier.address", read_only=True)
    total_amount = serializers.DecimalField(source="total_paid", read_only=True, **MONEY)
    reason = serializers.CharField(source="note", read_only=True)
    items = PurchaseReturnItemSerializer(many=True, read_only=True)

    class Meta:
        model = PurchaseReturn
        fields = [
            "id",
            "return_number",
            "purchase",
            "original_invoice",
            "supplier",
            "supplier_name",
            "supplier_phone",
            "supplier_address",
            "user",
            "total_amount",
            "reason",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PriceAliasMixin:
    """Accept a legacy key for ``unitPrice`` on line inputs."""

    price_aliases = ()

    def to_internal_value(self, data):
        if isinstance(data, dict) and "unitPrice" not in data:
            alias = next((key for key in self.price_aliases if key in data), None)
            if alias is not None:
                data = {**data, "unitPrice": data[alias]}
        return super().to_internal_value(data)


class ReturnLineInputSerializer(PriceAliasMixin, serializers.Serializer):
    price_aliases = ("price",)

    product_id = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1)
    unitPrice = serializers.DecimalField(source="unit_price", min_value=0, required=False, **MONEY)
    serials = serializers.ListField(child=serializers.CharField(), required=False)


class PurchaseReturnInputSerializer(serializers.Serializer):
    purchase_id = serializers.IntegerField()
    user_id = serializers.IntegerField(required=False)
    totalPaid = serializers.DecimalField(source="total_paid", min_value=0, required=False, **MONEY)
    note = serializers.CharField(required=False, allow_blank=True)
    items = ReturnLineInputSerializer(many=True, allow_empty=False)


class PurchaseReturnUpdateSerializer(serializers.Serializer):
    totalPaid = serializers.DecimalField(source="total_paid", min_value=0, required=False, **MONEY)
    note = serializers.CharField(required=False, allow_blank=True)
