import uuid

from django.db import models


class CertificateStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    SUSPENDED = "SUSPENDED", "Suspended"
    VOID = "VOID", "Void"


class CertificateBalance(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    cert_code = models.CharField(max_length=32, unique=True)
    serial_raw = models.PositiveBigIntegerField(default=0, db_index=True)
    original_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    remaining_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    currency = models.CharField(max_length=8, default="USD")
    external_record = models.ForeignKey(
        "records.InboundRecord",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="certificate_balances",
    )
    last_order = models.ForeignKey(
        "checkout.Order",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    status = models.CharField(max_length=16, choices=CertificateStatus.choices, default=CertificateStatus.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-updated_at"]
        constraints = [
            models.CheckConstraint(condition=models.Q(original_amount__gte=0), name="certbalance_original_gte_zero"),
            models.CheckConstraint(condition=models.Q(remaining_amount__gte=0), name="certbalance_remaining_gte_zero"),
            models.CheckConstraint(
                condition=models.Q(remaining_amount__lte=models.F("original_amount")),
                name="certbalance_remaining_lte_original",
            ),
        ]

    def __str__(self):
        return self.cert_code


class ManualTransaction(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    balance = models.ForeignKey(CertificateBalance, on_delete=models.PROTECT, related_name="manual_transactions")
    cert_code = models.CharField(max_length=32, db_index=True)
    serial_raw = models.PositiveBigIntegerField(default=0)
    items_total = models.DecimalField(max_digits=10, decimal_places=2)
    created_by = models.ForeignKey("accounts.User", on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(condition=models.Q(items_total__gt=0), name="manualtxn_total_gt_zero"),
        ]


class ManualTransactionLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    transaction = models.ForeignKey(ManualTransaction, on_delete=models.CASCADE, related_name="lines")
    position = models.PositiveIntegerField(default=0)
    name = models.CharField(max_length=255)
    price = models.DecimalField(max_digits=10, decimal_places=2)

    class Meta:
        ordering = ["position"]
        constraints = [
            models.CheckConstraint(condition=models.Q(price__gt=0), name="manualtxnline_price_gt_zero"),
        ]
