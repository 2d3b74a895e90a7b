from django.contrib.auth.models import Group
from django.core.management.base import BaseCommand

from apps.common.permissions import ROLE_CAPABILITIES


class Command(BaseCommand):
    help = "Create the staff role groups that grant ledger and order capabilities"

    def handle(self, *args, **options):
        for role, capabilities in ROLE_CAPABILITIES.items():
            group, created = Group.objects.get_or_create(name=role)
            state = "created" if created else "exists"
            self.stdout.write(self.style.SUCCESS(f"{group.name}: {state} ({', '.join(sorted(capabilities))})"))
