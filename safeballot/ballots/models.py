from uuid import uuid4

from django.db import models


class Ballot(models.Model):
    """
    Ballot model - a single election instance holding one or more questions.
    """

    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SCHEDULED = "scheduled", "Scheduled"
        ACTIVE = "active", "Active"
        CLOSED = "closed", "Closed"

    # statuses in which a ballot accepts votes when the status gate is enabled
    OPEN_STATUSES = (Status.ACTIVE, Status.SCHEDULED)

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    status = models.CharField(
        max_length=16, choices=Status.choices, default=Status.DRAFT
    )
    requires_verification = models.BooleanField(
        default=False,
        help_text="Whether voters must be verified before casting a vote",
    )
    total_voters = models.PositiveIntegerField(
        default=0, help_text="Number of voters registered against this ballot"
    )
    ballots_received = models.PositiveIntegerField(
        default=0, help_text="Number of completed vote submissions"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return self.title

    @property
    def is_open(self) -> bool:
        return self.status in self.OPEN_STATUSES


class Question(models.Model):
    """
    Question model - a decision point on a ballot with a fixed set of choices.
    """

    class QuestionType(models.TextChoices):
        SINGLE_CHOICE = "single_choice", "Single choice"
        MULTIPLE_CHOICE = "multiple_choice", "Multiple choice"
        RANK_CHOICE = "rank_choice", "Ranked choice"

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    ballot = models.ForeignKey(
        Ballot, on_delete=models.CASCADE, related_name="questions"
    )
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    question_type = models.CharField(
        max_length=32,
        choices=QuestionType.choices,
        default=QuestionType.SINGLE_CHOICE,
    )
    max_selections = models.PositiveIntegerField(default=1)
    order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["order", "title"]

    def __str__(self):
        return self.title


class Choice(models.Model):
    """
    Choice model - one selectable option for a question.
    """

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    question = models.ForeignKey(
        Question, on_delete=models.CASCADE, related_name="choices"
    )
    text = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["order", "text"]

    def __str__(self):
        return self.text
