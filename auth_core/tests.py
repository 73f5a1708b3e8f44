from django.contrib.auth.models import User
from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APIClient


class JWTAuthTest(TestCase):

    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username="candidate", password="pass12345")

    def obtain(self, password="pass12345"):
        return self.client.post(
            reverse("auth_core:token_obtain_pair"),
            {"username": "candidate", "password": password},
            format="json",
        )

    def test_bearer_token_grants_access(self):
        response = self.obtain()
        self.assertEqual(response.status_code, 200)

        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")
        response = self.client.get(reverse("sub_plans"))
        self.assertEqual(response.status_code, 200)

    def test_wrong_password(self):
        self.assertEqual(self.obtain(password="nope").status_code, 401)

    def test_invalid_token_rejected(self):
        self.client.credentials(HTTP_AUTHORIZATION="Bearer not-a-token")
        response = self.client.get(reverse("sub_plans"))
        self.assertEqual(response.status_code, 401)

    def test_staff_only_views(self):
        self.client.force_authenticate(user=self.user)
        self.assertEqual(self.client.get(reverse("admin_subscriptions")).status_code, 403)
