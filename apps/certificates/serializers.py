from rest_framework import serializers

from apps.certificates.models import CertificateBalance, ManualTransaction, ManualTransactionLine


class CertificateBalanceSerializer(serializers.ModelSerializer):
    class Meta:
        model = CertificateBalance
        fields = [
            "id",
            "cert_code",
            "serial_raw",
            "original_amount",
            "remaining_amount",
            "currency",
            "status",
            "external_record",
            "last_order",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class LedgerRowSerializer(serializers.Serializer):
    cert_code = serializers.CharField()
    serial_raw = serializers.IntegerField()
    original_amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    remaining_amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    updated_at = serializers.DateTimeField(allow_null=True)
    external_record_id = serializers.UUIDField(allow_null=True)
    materialized = serializers.BooleanField()


class ExternalSerialSerializer(serializers.Serializer):
    cert_code = serializers.CharField()
    serial_raw = serializers.IntegerField()
    amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    remaining_amount = serializers.DecimalField(max_digits=10, decimal_places=2, allow_null=True)
    record_id = serializers.UUIDField()
    created_at = serializers.DateTimeField()


class LedgerItemSerializer(serializers.Serializer):
    name = serializers.CharField()
    qty = serializers.IntegerField()
    total = serializers.DecimalField(max_digits=12, decimal_places=2)


class LedgerTransactionSerializer(serializers.Serializer):
    kind = serializers.CharField()
    reference = serializers.CharField()
    created_at = serializers.DateTimeField()
    items = LedgerItemSerializer(many=True)
    items_summary = serializers.CharField()
    items_total = serializers.DecimalField(max_digits=12, decimal_places=2)
    applied_amount = serializers.DecimalField(max_digits=12, decimal_places=2)


class ReconciliationSerializer(serializers.Serializer):
    cert_code = serializers.CharField()
    original = serializers.DecimalField(max_digits=10, decimal_places=2)
    spent = serializers.DecimalField(max_digits=12, decimal_places=2)
    computed_remaining = serializers.DecimalField(max_digits=12, decimal_places=2)
    remaining = serializers.DecimalField(max_digits=10, decimal_places=2)
    discrepancy = serializers.BooleanField()


class ManualTransactionLineSerializer(serializers.ModelSerializer):
    class Meta:
        model = ManualTransactionLine
        fields = ["position", "name", "price"]


class ManualTransactionSerializer(serializers.ModelSerializer):
    lines = ManualTransactionLineSerializer(many=True, read_only=True)
    created_by_username = serializers.CharField(source="created_by.username", read_only=True, default=None)
    created_by_name = serializers.CharField(source="created_by.display_name", read_only=True, default=None)

    class Meta:
        model = ManualTransaction
        fields = ["id", "cert_code", "serial_raw", "items_total", "lines", "created_by_username", "created_by_name", "created_at"]
        read_only_fields = fields


class ManualItemSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255, trim_whitespace=True)
    price = serializers.DecimalField(max_digits=10, decimal_places=2)

    def validate_price(self, value):
        if value <= 0:
            raise serializers.ValidationError("Price must be greater than 0.")
        return value


class ManualTransactionCreateSerializer(serializers.Serializer):
    items = ManualItemSerializer(many=True, allow_empty=False)


class ApplyCodeSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
