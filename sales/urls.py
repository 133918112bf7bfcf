from rest_framework.routers import DefaultRouter

from sales.views import CustomerViewSet, ExchangeViewSet, SalesReturnViewSet, SaleViewSet, ServiceViewSet

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"sales", SaleViewSet, basename="sale")
router.register(r"sales-returns", SalesReturnViewSet, basename="sales-return")
router.register(r"exchanges", ExchangeViewSet, basename="exchange")
router.register(r"services", ServiceViewSet, basename="service")

urlpatterns = router.urls
