from io import StringIO

from django.core.management import call_command
from django.test import TestCase

from accounts.forms import CustomUserCreationForm
from accounts.models import CustomUser, ExpertProfile, UserProfile


class CustomUserTests(TestCase):
    def test_email_is_normalised(self):
        user = CustomUser.objects.create_user(email="  Mixed.Case@Example.COM ", password="pw-123456")
        self.assertEqual(user.email, "mixed.case@example.com")
        self.assertTrue(user.check_password("pw-123456"))

    def test_email_required(self):
        with self.assertRaises(ValueError):
            CustomUser.objects.create_user(email="", password="pw-123456")

    def test_superuser_flags(self):
        admin = CustomUser.objects.create_superuser(email="root@example.com", password="pw-123456")
        self.assertTrue(admin.is_staff)
        self.assertTrue(admin.is_superuser)
        with self.assertRaises(ValueError):
            CustomUser.objects.create_superuser(email="x@example.com", password="pw", is_staff=False)

    def test_creation_form_rejects_duplicate_email(self):
        CustomUser.objects.create_user(email="taken@example.com", password="pw-123456")
        form = CustomUserCreationForm(data={
            "email": "TAKEN@example.com",
            "password1": "a-long-Passphrase-42",
            "password2": "a-long-Passphrase-42",
        })
        self.assertFalse(form.is_valid())
        self.assertIn("email", form.errors)


class MigrationStateTests(TestCase):
    def test_models_match_migrations(self):
        out = StringIO()
        try:
            call_command("makemigrations", "--check", "--dry-run", stdout=out, stderr=out)
        except SystemExit:
            self.fail(f"Models have changes without a migration:\n{out.getvalue()}")


class ProfileTests(TestCase):
    def setUp(self):
        self.expert_user = CustomUser.objects.create_user(email="expert@example.com", password="pw-123456")
        self.client_user = CustomUser.objects.create_user(email="client@example.com", password="pw-123456")

    def test_profile_resolves_role(self):
        expert = ExpertProfile.objects.create(user=self.expert_user, first_name="Eve", last_name="Expert")
        payer = UserProfile.objects.create(user=self.client_user, first_name="Carl", last_name="Client")

        self.assertEqual(self.expert_user.profile, expert)
        self.assertEqual(self.client_user.profile, payer)
        orphan = CustomUser.objects.create_user(email="nobody@example.com", password="pw-123456")
        self.assertIsNone(orphan.profile)

    def test_party_ids_follow_user_ids(self):
        expert = ExpertProfile.objects.create(user=self.expert_user, first_name="Eve", last_name="Expert")
        self.assertEqual(expert.party_id, str(self.expert_user.id))
        self.assertFalse(expert.is_busy)
        self.assertEqual(expert.platform_fee_config, {})
