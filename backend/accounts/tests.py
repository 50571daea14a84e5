from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from .models import User


class AuthApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username="jane", email="jane@example.com", password="password123")

    def test_register_returns_tokens(self):
        response = self.client.post(reverse("register"), {
            "username": "sam",
            "email": "sam@example.com",
            "password": "secret99",
        }, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["user"]["username"], "sam")
        access = AccessToken(response.data["tokens"]["access"])
        self.assertEqual(str(access["user_id"]), response.data["user"]["id"])

    def test_register_rejects_duplicate_email(self):
        response = self.client.post(reverse("register"), {
            "username": "other",
            "email": "JANE@example.com",
            "password": "secret99",
        }, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("email", response.data)

    def test_register_rejects_short_password(self):
        response = self.client.post(reverse("register"), {
            "username": "sam",
            "email": "sam@example.com",
            "password": "123",
        }, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_login_with_email(self):
        response = self.client.post(reverse("login"), {
            "email": "jane@example.com",
            "password": "password123",
        }, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["user"]["email"], "jane@example.com")
        self.assertIn("refresh", response.data["tokens"])

    def test_login_bad_credentials(self):
        for email, password in (("jane@example.com", "wrong"), ("nobody@example.com", "password123")):
            with self.subTest(email=email):
                response = self.client.post(reverse("login"), {"email": email, "password": password}, format="json")
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_refresh(self):
        login = self.client.post(reverse("login"), {
            "email": "jane@example.com",
            "password": "password123",
        }, format="json")

        response = self.client.post(reverse("token-refresh"), {"refresh": login.data["tokens"]["refresh"]}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn("access", response.data)

    def test_refresh_errors(self):
        response = self.client.post(reverse("token-refresh"), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(reverse("token-refresh"), {"refresh": "garbage"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
