import uuid

from django.db import models
from django.utils import timezone


class InboundStatus(models.TextChoices):
    PUBLISHED = "PUBLISHED", "Published"
    SPAM = "SPAM", "Spam"
    TRASHED = "TRASHED", "Trashed"


class InboundRecord(models.Model):
    """A submission captured by the contact-form archive.

    The archive is owned by another system; this project only reads it.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    channel = models.CharField(max_length=120, blank=True)
    title = models.CharField(max_length=255, blank=True)
    content = models.TextField(blank=True)
    excerpt = models.TextField(blank=True)
    status = models.CharField(max_length=16, choices=InboundStatus.choices, default=InboundStatus.PUBLISHED)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="inbound_status_created_idx"),
        ]

    def __str__(self):
        return self.title or str(self.id)


class InboundRecordMeta(models.Model):
    id = models.BigAutoField(primary_key=True)
    record = models.ForeignKey(InboundRecord, on_delete=models.CASCADE, related_name="meta")
    key = models.CharField(max_length=255)
    value = models.TextField(blank=True)

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["key"], name="inbound_meta_key_idx"),
            models.Index(fields=["record", "key"], name="inbound_meta_record_key_idx"),
        ]

    def __str__(self):
        return f"{self.key}={self.value[:40]}"
