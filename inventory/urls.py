from rest_framework.routers import DefaultRouter

from inventory.views import (
    CategoryViewSet,
    ProductViewSet,
    PurchaseReturnViewSet,
    PurchaseViewSet,
    SupplierViewSet,
)

router = DefaultRouter()
router.register(r"categories", CategoryViewSet, basename="category")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"products", ProductViewSet, basename="product")
router.register(r"purchases", PurchaseViewSet, basename="purchase")
router.register(r"purchase-returns", PurchaseReturnViewSet, basename="purchase-return")

urlpatterns = router.urls
