import uuid

from django.db import models

from apps.checkout.signals import order_status_changed


class OrderStatus(models.TextChoices):
    PENDING = "PENDING", "Pending payment"
    ON_HOLD = "ON_HOLD", "On hold"
    PROCESSING = "PROCESSING", "Processing"
    COMPLETED = "COMPLETED", "Completed"
    CANCELLED = "CANCELLED", "Cancelled"
    FAILED = "FAILED", "Failed"


class Order(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    status = models.CharField(max_length=16, choices=OrderStatus.choices, default=OrderStatus.PENDING)
    session_key = models.CharField(max_length=40, blank=True)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    shipping_total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    fee_total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    meta = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="order_status_created_idx"),
        ]

    def get_meta(self, key, default=None):
        return (self.meta or {}).get(key, default)

    def set_meta(self, key, value):
        meta = dict(self.meta or {})
        meta[key] = value
        self.meta = meta

    def add_note(self, note):
        return OrderNote.objects.create(order=self, note=note)

    def set_status(self, new_status, actor=None):
        old_status = self.status
        if old_status == new_status:
            return False
        self.status = new_status
        self.save(update_fields=["status", "updated_at"])
        order_status_changed.send(
            sender=Order,
            order=self,
            old_status=old_status,
            new_status=new_status,
            actor=actor,
        )
        return True


class OrderItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    position = models.PositiveIntegerField(default=0)
    product_id = models.PositiveIntegerField()
    variation_id = models.PositiveIntegerField(default=0)
    name = models.CharField(max_length=255)
    qty = models.PositiveIntegerField(default=1)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    total = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ["position"]


class OrderFee(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="fees")
    label = models.CharField(max_length=255)
    amount = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        indexes = [
            models.Index(fields=["label"], name="orderfee_label_idx"),
        ]


class OrderNote(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="notes")
    note = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
