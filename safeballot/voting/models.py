from uuid import uuid4

from django.db import models


class Voter(models.Model):
    """
    A participant registered against exactly one ballot.
    """

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    ballot = models.ForeignKey(
        "ballots.Ballot", on_delete=models.CASCADE, related_name="voters"
    )
    email = models.EmailField(max_length=255)
    name = models.CharField(max_length=255, default="Registered Voter")
    is_verified = models.BooleanField(default=False)
    has_voted = models.BooleanField(default=False)
    verification_code = models.CharField(max_length=16, null=True, blank=True)
    last_activity = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            # one voter record per email on a ballot
            models.UniqueConstraint(
                fields=["ballot", "email"], name="unique_ballot_voter"
            ),
        ]

    def __str__(self):
        return f"{self.name} <{self.email}>"


class Vote(models.Model):
    """
    An immutable record of one voter's selection for one question.
    """

    id = models.UUIDField(primary_key=True, default=uuid4, editable=False)
    voter = models.ForeignKey(Voter, on_delete=models.CASCADE, related_name="votes")
    ballot = models.ForeignKey(
        "ballots.Ballot", on_delete=models.CASCADE, related_name="votes"
    )
    question = models.ForeignKey(
        "ballots.Question", on_delete=models.CASCADE, related_name="votes"
    )
    choice = models.ForeignKey(
        "ballots.Choice", on_delete=models.CASCADE, related_name="votes"
    )
    rank = models.PositiveIntegerField(null=True, blank=True)
    cast_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["cast_at"]

    def __str__(self):
        return f"Vote by {self.voter_id} for {self.choice_id}"
