from django.db.models import Count, Q
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response

from common.numbering import next_document_number
from common.permissions import VIEW
from common.viewsets import PageModelViewSet, RecordViewSet
from inventory.models import Category, Product, ProductSerial, Purchase, PurchaseReturn, Supplier
from inventory.serializers import (
    CategorySerializer,
    ProductInputSerializer,
    ProductSerialSerializer,
    ProductSerializer,
    PurchaseInputSerializer,
    PurchaseReturnInputSerializer,
    PurchaseReturnSerializer,
    PurchaseReturnUpdateSerializer,
    PurchaseSerializer,
    PurchaseUpdateSerializer,
    SupplierSerializer,
)
from inventory.services import (
    create_product,
    create_purchase,
    create_purchase_return,
    delete_product,
    delete_purchase,
    delete_purchase_return,
    update_product,
    update_purchase,
    update_purchase_return,
)


class CategoryViewSet(PageModelViewSet):
    queryset = Category.objects.order_by("name")
    serializer_class = CategorySerializer
    permission_page = "categories"
    audit_entity = "category"


class SupplierViewSet(PageModelViewSet):
    queryset = Supplier.objects.order_by("-id")
    serializer_class = SupplierSerializer
    permission_page = "suppliers"
    audit_entity = "supplier"

    def get_create_kwargs(self):
        return {"supplier_code": next_document_number(Supplier, "supplier_code", "SUP")}


class ProductViewSet(RecordViewSet):
    queryset = Product.objects.select_related("category").annotate(
        available_serials=Count("serials", filter=Q(serials__state=ProductSerial.State.AVAILABLE))
    )
    serializer_class = ProductSerializer
    input_serializer_class = ProductInputSerializer
    permission_page = "products"
    permission_action_map = {"serials": VIEW}
    audit_entity = "product"

    def get_queryset(self):
        qs = super().get_queryset().order_by("-id")
        category_id = self.request.query_params.get("category_id")
        status_filter = self.request.query_params.get("status")
        if category_id:
            qs = qs.filter(category_id=category_id)
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def create_record(self, data):
        return create_product(data)

    def update_record(self, instance, data):
        return update_product(instance, data)

    def delete_record(self, instance):
        delete_product(instance)

    @action(detail=True, methods=["get"], url_path="serials")
    def serials(self, request, pk=None):
        product = self.get_object()
        qs = ProductSerial.objects.filter(product=product).order_by("id")
        state = request.query_params.get("state")
        if state:
            if state not in ProductSerial.State.values:
                raise ValidationError({"state": [f"Unknown serial state: {state}."]})
            qs = qs.filter(state=state)

        page = self.paginate_queryset(qs)
        if page is not None:
            return self.get_paginated_response(ProductSerialSerializer(page, many=True).data)
        return Response(ProductSerialSerializer(qs, many=True).data)


class PurchaseViewSet(RecordViewSet):
    queryset = Purchase.objects.select_related("supplier", "user").prefetch_related("items__product", "items__serials")
    serializer_class = PurchaseSerializer
    input_serializer_class = PurchaseInputSerializer
    update_serializer_class = PurchaseUpdateSerializer
    permission_page = "purchases"
    audit_entity = "purchase"

    def get_queryset(self):
        qs = super().get_queryset().order_by("-id")
        supplier_id = self.request.query_params.get("supplier_id")
        if supplier_id:
            qs = qs.filter(supplier_id=supplier_id)
        return qs

    def create_record(self, data):
        return create_purchase(user=self.request.user, data=data)

    def update_record(self, instance, data):
        return update_purchase(instance, data)

    def delete_record(self, instance):
        delete_purchase(instance)


class PurchaseReturnViewSet(RecordViewSet):
    queryset = PurchaseReturn.objects.select_related("purchase", "supplier", "user").prefetch_related("items__product")
    serializer_class = PurchaseReturnSerializer
    input_serializer_class = PurchaseReturnInputSerializer
    update_serializer_class = PurchaseReturnUpdateSerializer
    permission_page = "purchase_returns"
    audit_entity = "purchase_return"

    def get_queryset(self):
        return super().get_queryset().order_by("-id")

    def create_record(self, data):
        return create_purchase_return(user=self.request.user, data=data)

    def update_record(self, instance, data):
        return update_purchase_return(instance, data)

    def delete_record(self, instance):
        delete_purchase_return(instance)
