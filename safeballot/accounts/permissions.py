from rest_framework import permissions


class IsAnonymousUser(permissions.BasePermission):
    """Only callers without a session or token may pass (sign-up)."""

    message = "Already logged in"

    def has_permission(self, request, view):
        return not request.user.is_authenticated
