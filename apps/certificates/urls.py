from django.urls import path
from rest_framework.routers import DefaultRouter

from apps.certificates.views import GiftCertificateViewSet, RedemptionApplyView, RedemptionRemoveView, RedemptionView

router = DefaultRouter()
router.register("gift-certificates", GiftCertificateViewSet, basename="gift-certificate")

urlpatterns = [
    path("redemption/", RedemptionView.as_view(), name="redemption"),
    path("redemption/apply/", RedemptionApplyView.as_view(), name="redemption-apply"),
    path("redemption/remove/", RedemptionRemoveView.as_view(), name="redemption-remove"),
] + router.urls
