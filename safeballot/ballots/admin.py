import logging

from django.contrib import admin

from .models import Ballot, Choice, Question

logger = logging.getLogger(__name__)


class QuestionInline(admin.TabularInline):
    model = Question
    extra = 0
    fields = ("title", "question_type", "max_selections", "order")


class ChoiceInline(admin.TabularInline):
    model = Choice
    extra = 0
    fields = ("text", "order")


class BallotAdmin(admin.ModelAdmin):
    list_display = ("title", "status", "requires_verification", "total_voters", "ballots_received")
    list_filter = ("status", "requires_verification")
    search_fields = ("title",)
    # counters are maintained by the vote submission service
    readonly_fields = ("total_voters", "ballots_received", "created_at", "updated_at")
    inlines = [QuestionInline]

    def has_view_permission(self, request, obj=None):
        return request.user.is_staff or request.user.is_superuser

    def save_model(self, request, obj, form, change):
        if change:
            logger.info(f"Ballot updated by admin: {request.user.username} - {obj.id}")
        else:
            logger.info(f"Ballot created by admin: {request.user.username} - {obj.id}")
        super().save_model(request, obj, form, change)


class QuestionAdmin(admin.ModelAdmin):
    list_display = ("title", "ballot", "question_type", "order")
    list_filter = ("question_type",)
    inlines = [ChoiceInline]


admin.site.register(Ballot, BallotAdmin)
admin.site.register(Question, QuestionAdmin)
