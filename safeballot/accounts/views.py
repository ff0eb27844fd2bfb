import logging

from django.contrib.auth.models import update_last_login
from rest_framework import generics, status
from rest_framework.authtoken.models import Token
from rest_framework.authtoken.views import ObtainAuthToken
from rest_framework.response import Response

from voting.serializers import flatten_errors

from .permissions import IsAnonymousUser
from .serializers import UserRegistrationSerializer

logger = logging.getLogger(__name__)


class LoginTokenView(ObtainAuthToken):
    """
    POST /api/accounts/login/

    Exchange username and password for an API token. The email returned
    alongside the token is the identity used to match the caller to ballot
    voters.
    """

    def post(self, request, *args, **kwargs):
        username = request.data.get("username")
        serializer = self.serializer_class(data=request.data, context={"request": request})
        if not serializer.is_valid():
            logger.warning(f"Login rejected for '{username}'")
            return Response(
                {"status": "error", "message": "Invalid username or password"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        account = serializer.validated_data["user"]
        token, issued = Token.objects.get_or_create(user=account)
        update_last_login(None, account)
        logger.info(f"Login for '{account.username}' ({'new' if issued else 'existing'} token)")

        return Response(
            {
                "status": "success",
                "data": {"token": token.key, "userId": account.pk, "email": account.email},
            }
        )


class UserRegistrationView(generics.CreateAPIView):
    """Open sign-up for callers who are not logged in."""

    serializer_class = UserRegistrationSerializer
    permission_classes = [IsAnonymousUser]

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        if not serializer.is_valid():
            return Response(
                {"status": "error", "errors": flatten_errors(serializer.errors)},
                status=status.HTTP_400_BAD_REQUEST,
            )
        account = serializer.save()
        return Response(
            {
                "status": "success",
                "message": "User registered successfully",
                "data": {"username": account.username, "email": account.email},
            },
            status=status.HTTP_201_CREATED,
        )
