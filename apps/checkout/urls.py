from django.urls import path
from rest_framework.routers import DefaultRouter

from apps.checkout.views import CartTotalsView, OrderViewSet

router = DefaultRouter()
router.register("orders", OrderViewSet, basename="order")

urlpatterns = [
    path("totals/", CartTotalsView.as_view(), name="cart-totals"),
] + router.urls
