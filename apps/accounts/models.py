from django.contrib.auth.models import AbstractUser
from django.db import models


class UserRole(models.TextChoices):
    ADMIN = "ADMIN", "Admin"
    STAFF = "STAFF", "Staff"


class User(AbstractUser):
    """Back-office account; ``role`` decides which certificate tools are available."""

    role = models.CharField(max_length=20, choices=UserRole.choices, default=UserRole.STAFF)

    class Meta:
        ordering = ["username"]

    @property
    def display_name(self):
        return self.get_full_name() or self.username
