from django.test import TestCase

from account.models import User


class UserManagerTests(TestCase):
    def test_create_user_normalizes_email(self):
        user = User.objects.create_user(email="Owner@Cabins.COM", password="Pass123!", role="VENDOR")
        self.assertEqual(user.email, "Owner@cabins.com")
        self.assertTrue(user.check_password("Pass123!"))
        self.assertFalse(user.is_staff)

    def test_create_user_requires_email(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(email="", password="Pass123!")

    def test_create_superuser_is_admin(self):
        admin = User.objects.create_superuser(email="admin@cabins.com", password="Pass123!")
        self.assertTrue(admin.is_staff)
        self.assertTrue(admin.is_superuser)
        self.assertEqual(admin.role, "ADMIN")
