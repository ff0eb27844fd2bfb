import logging

from django.contrib import admin

from .models import Vote, Voter

logger = logging.getLogger(__name__)


class VoterAdmin(admin.ModelAdmin):
    list_display = ("email", "name", "ballot", "is_verified", "has_voted", "created_at")
    list_filter = ("is_verified", "has_voted")
    search_fields = ("email", "name")
    readonly_fields = ("has_voted", "last_activity", "created_at", "updated_at")

    def has_change_permission(self, request, obj=None):
        return request.user.is_superuser

    def save_model(self, request, obj, form, change):
        if change:
            logger.info(f"Voter updated by admin: {request.user.username} - {obj.id}")
        else:
            logger.info(f"Voter added by admin: {request.user.username} - {obj.id}")
        super().save_model(request, obj, form, change)


class VoteAdmin(admin.ModelAdmin):
    """Votes are append-only: the admin can inspect them but never edit them."""

    list_display = ("id", "ballot", "question", "choice", "rank", "cast_at")
    list_filter = ("ballot",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


admin.site.register(Voter, VoterAdmin)
admin.site.register(Vote, VoteAdmin)
