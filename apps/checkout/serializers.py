from rest_framework import serializers

from apps.certificates.codec import CertificateCodec
from apps.certificates.settlement import META_REDEEM_CODE, META_REDEEM_DEDUCTED, remaining_balance_for_order
from apps.checkout.models import Order, OrderFee, OrderItem, OrderNote, OrderStatus


class CartLineSerializer(serializers.Serializer):
    product_id = serializers.IntegerField(min_value=1)
    variation_id = serializers.IntegerField(min_value=0, required=False, default=0)
    name = serializers.CharField(max_length=255)
    qty = serializers.IntegerField(min_value=1, default=1)
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)


class CartSerializer(serializers.Serializer):
    lines = CartLineSerializer(many=True, allow_empty=False)
    shipping_total = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, default=0)
    tax_total = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, default=0)


class OrderItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderItem
        fields = ["id", "position", "product_id", "variation_id", "name", "qty", "subtotal", "total"]


class OrderFeeSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderFee
        fields = ["id", "label", "amount"]


class OrderNoteSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderNote
        fields = ["id", "note", "created_at"]


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    fees = OrderFeeSerializer(many=True, read_only=True)
    notes = OrderNoteSerializer(many=True, read_only=True)
    gift_certificate_code = serializers.SerializerMethodField()
    gift_certificate_remaining = serializers.SerializerMethodField()
    gift_certificate_deducted = serializers.SerializerMethodField()
    contains_gift_certificate = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            "id",
            "status",
            "subtotal",
            "shipping_total",
            "tax_total",
            "fee_total",
            "total",
            "items",
            "fees",
            "notes",
            "gift_certificate_code",
            "gift_certificate_remaining",
            "gift_certificate_deducted",
            "contains_gift_certificate",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_gift_certificate_code(self, obj):
        return obj.get_meta(META_REDEEM_CODE)

    def get_gift_certificate_remaining(self, obj):
        remaining = remaining_balance_for_order(obj)
        return str(remaining) if remaining is not None else None

    def get_gift_certificate_deducted(self, obj):
        return bool(obj.get_meta(META_REDEEM_DEDUCTED, False))

    def get_contains_gift_certificate(self, obj):
        return CertificateCodec().order_has_gift_certificate(obj)


class OrderStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OrderStatus.choices)
