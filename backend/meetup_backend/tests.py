from django.test import TestCase
from rest_framework.test import APIClient


class HealthCheckTests(TestCase):
    def test_healthy_with_in_memory_layer(self):
        response = APIClient().get("/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "healthy")
        self.assertEqual(response.data["services"]["database"], "healthy")
        self.assertEqual(response.data["services"]["redis"], "not configured")
        self.assertEqual(response.data["services"]["channels"], "healthy")
        self.assertIn("connected_users", response.data["realtime"])
