from io import StringIO

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.core.management import call_command
from django.test import TestCase

from apps.accounts.models import UserRole
from apps.common.permissions import user_has_capability

User = get_user_model()


class AccountCommandTests(TestCase):
    def test_seed_roles_is_idempotent(self):
        out = StringIO()
        call_command("seed_roles", stdout=out)
        call_command("seed_roles", stdout=out)

        self.assertEqual(set(Group.objects.values_list("name", flat=True)), {"ADMIN", "STAFF"})
        self.assertIn("ADMIN: created", out.getvalue())
        self.assertIn("STAFF: exists", out.getvalue())
        self.assertIn("certificates.diagnostics", out.getvalue())

    def test_group_membership_overrides_role_field(self):
        user = User.objects.create_user(username="clerk", password="clerk12345", role=UserRole.STAFF)
        self.assertFalse(user_has_capability(user, "certificates.diagnostics"))

        call_command("seed_roles", stdout=StringIO())
        user.groups.add(Group.objects.get(name="ADMIN"))
        self.assertTrue(user_has_capability(user, "certificates.diagnostics"))

    def test_display_name_falls_back_to_username(self):
        user = User.objects.create_user(username="clerk", password="clerk12345")
        self.assertEqual(user.display_name, "clerk")
        user.first_name, user.last_name = "Ana", "Ruiz"
        self.assertEqual(user.display_name, "Ana Ruiz")
