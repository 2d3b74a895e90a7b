from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.certificates.codec import CertificateCodec
from apps.certificates.redemption import RedemptionSession
from apps.checkout.cart import Cart
from apps.checkout.models import Order
from apps.checkout.serializers import CartSerializer, OrderSerializer, OrderStatusSerializer
from apps.checkout.services import change_order_status, create_order_from_cart
from apps.common.permissions import RolePermission


def cart_payload(cart, session):
    redemption = RedemptionSession(session)
    return {
        "contents_total": str(cart.contents_total),
        "shipping_total": str(cart.shipping_total),
        "tax_total": str(cart.tax_total),
        "fees": [{"label": fee.label, "amount": str(fee.amount)} for fee in cart.fees],
        "fee_total": str(cart.fee_total),
        "total": str(cart.total),
        "redeem_available": not CertificateCodec().cart_has_gift_certificate(cart),
        "gift_certificate_code": redemption.applied_code,
    }


class CartTotalsView(APIView):
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = CartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        cart = Cart.from_data(serializer.validated_data)
        cart.calculate_totals(session=request.session)
        return Response(cart_payload(cart, request.session))


class OrderViewSet(mixins.CreateModelMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = Order.objects.prefetch_related("items", "fees", "notes").order_by("-created_at")
    serializer_class = OrderSerializer
    permission_classes = [RolePermission]
    capability_map = {
        "list": ["orders.view"],
        "retrieve": ["orders.view"],
        "change_status": ["orders.manage"],
    }

    def get_permissions(self):
        if self.action == "create":
            return [AllowAny()]
        return super().get_permissions()

    def get_queryset(self):
        queryset = super().get_queryset()
        status_param = self.request.query_params.get("status")
        if status_param:
            queryset = queryset.filter(status=status_param)
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = CartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        if not request.session.session_key:
            request.session.save()
        cart = Cart.from_data(serializer.validated_data)
        order = create_order_from_cart(cart=cart, session=request.session)
        order = self.get_queryset().get(pk=order.pk)
        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="status")
    def change_status(self, request, pk=None):
        order = self.get_object()
        serializer = OrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        change_order_status(order=order, status=serializer.validated_data["status"], actor=request.user)
        order = self.get_queryset().get(pk=order.pk)
        return Response(OrderSerializer(order).data)
