from django.contrib.auth import get_user_model
from django.urls import reverse
from rest_framework import status
from rest_framework.authtoken.models import Token
from rest_framework.test import APITestCase


class AccountsAPITest(APITestCase):
    def test_register_then_login_returns_token(self):
        register = self.client.post(
            reverse("accounts:register"),
            {"username": "rosa", "email": "Rosa@Example.com", "password": "s3cret-pass"},
            format="json",
        )
        self.assertEqual(register.status_code, status.HTTP_201_CREATED)
        self.assertEqual(register.data["data"]["email"], "rosa@example.com")

        login = self.client.post(
            reverse("accounts:login"),
            {"username": "rosa", "password": "s3cret-pass"},
            format="json",
        )

        self.assertEqual(login.status_code, status.HTTP_200_OK)
        user = get_user_model().objects.get(username="rosa")
        self.assertEqual(login.data["data"]["token"], Token.objects.get(user=user).key)
        self.assertEqual(login.data["data"]["email"], "rosa@example.com")

    def test_duplicate_email_is_rejected(self):
        get_user_model().objects.create_user(username="sid", email="sid@example.com", password="x")

        response = self.client.post(
            reverse("accounts:register"),
            {"username": "sid2", "email": "sid@example.com", "password": "s3cret-pass"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["status"], "error")
        self.assertEqual(
            response.data["errors"],
            [{"field": "email", "message": "A user with this email already exists"}],
        )

    def test_bad_credentials(self):
        response = self.client.post(
            reverse("accounts:login"),
            {"username": "nobody", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["status"], "error")

    def test_logged_in_user_cannot_register(self):
        user = get_user_model().objects.create_user(username="tess", email="tess@example.com", password="x")
        self.client.force_authenticate(user=user)

        response = self.client.post(
            reverse("accounts:register"),
            {"username": "tess2", "email": "tess2@example.com", "password": "s3cret-pass"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
