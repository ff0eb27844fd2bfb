import logging

from django.contrib.auth import get_user_model
from rest_framework import serializers

from voting.services import normalize_email

logger = logging.getLogger(__name__)

User = get_user_model()


class UserRegistrationSerializer(serializers.ModelSerializer):
    """
    Sign-up payload. The email is mandatory and unique because voter
    lookup on submission keys on it.
    """

    email = serializers.EmailField()
    password = serializers.CharField(write_only=True, style={"input_type": "password"})

    class Meta:
        model = User
        fields = ("username", "email", "password")

    def validate_email(self, value):
        email = normalize_email(value)
        if User.objects.filter(email__iexact=email).exists():
            raise serializers.ValidationError("A user with this email already exists")
        return email

    def create(self, validated_data):
        account = User.objects.create_user(**validated_data)
        logger.info(f"Registered account '{account.username}' <{account.email}>")
        return account
