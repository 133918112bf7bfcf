from common.numbering import next_document_number
from common.viewsets import PageModelViewSet, RecordViewSet
from sales.models import Customer, Exchange, Sale, SalesReturn, Service
from sales.serializers import (
    CustomerSerializer,
    ExchangeInputSerializer,
    ExchangeSerializer,
    ExchangeUpdateSerializer,
    SaleInputSerializer,
    SaleSerializer,
    SaleUpdateSerializer,
    SalesReturnInputSerializer,
    SalesReturnSerializer,
    SalesReturnUpdateSerializer,
    ServiceSerializer,
)
from sales.services import (
    create_exchange,
    create_sale,
    create_sales_return,
    delete_exchange,
    delete_sale,
    delete_sales_return,
    update_exchange,
    update_sale,
    update_sales_return,
)


class CustomerViewSet(PageModelViewSet):
    queryset = Customer.objects.order_by("-id")
    serializer_class = CustomerSerializer
    permission_page = "customers"
    audit_entity = "customer"

    def get_create_kwargs(self):
        return {"customer_code": next_document_number(Customer, "customer_code", "CUS")}


class SaleViewSet(RecordViewSet):
    queryset = Sale.objects.select_related("customer", "user").prefetch_related("items__product", "items__serial_links__serial")
    serializer_class = SaleSerializer
    input_serializer_class = SaleInputSerializer
    update_serializer_class = SaleUpdateSerializer
    permission_page = "sales"
    audit_entity = "sale"

    def get_queryset(self):
        qs = super().get_queryset().order_by("-id")
        customer_id = self.request.query_params.get("customer_id")
        status_filter = self.request.query_params.get("status")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def create_record(self, data):
        return create_sale(user=self.request.user, data=data)

    def update_record(self, instance, data):
        return update_sale(instance, data)

    def delete_record(self, instance):
        delete_sale(instance)


class SalesReturnViewSet(RecordViewSet):
    queryset = SalesReturn.objects.select_related("sale", "customer", "user").prefetch_related(
        "items__product", "items__serial_links__serial"
    )
    serializer_class = SalesReturnSerializer
    input_serializer_class = SalesReturnInputSerializer
    update_serializer_class = SalesReturnUpdateSerializer
    permission_page = "sales_returns"
    audit_entity = "sales_return"

    def get_queryset(self):
        return super().get_queryset().order_by("-id")

    def create_record(self, data):
        return create_sales_return(user=self.request.user, data=data)

    def update_record(self, instance, data):
        return update_sales_return(instance, data)

    def delete_record(self, instance):
        delete_sales_return(instance)


class ExchangeViewSet(RecordViewSet):
    queryset = Exchange.objects.select_related("sale", "customer", "user").prefetch_related(
        "items__old_product", "items__new_product", "items__serial_links__serial"
    )
    serializer_class = ExchangeSerializer
    input_serializer_class = ExchangeInputSerializer
    update_serializer_class = ExchangeUpdateSerializer
    permission_page = "exchanges"
    audit_entity = "exchange"

    def get_queryset(self):
        return super().get_queryset().order_by("-id")

    def create_record(self, data):
        return create_exchange(user=self.request.user, data=data)

    def update_record(self, instance, data):
        return update_exchange(instance, data)

    def delete_record(self, instance):
        delete_exchange(instance)


class ServiceViewSet(PageModelViewSet):
    queryset = Service.objects.select_related("customer", "technician").order_by("-id")
    serializer_class = ServiceSerializer
    permission_page = "services"
    audit_entity = "service"

    def get_queryset(self):
        qs = super().get_queryset()
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    def get_create_kwargs(self):
        return {"service_no": next_document_number(Service, "service_no", "SRV")}
