from rest_framework import serializers

from .models import Vote
from .services import Selection


class SelectionSerializer(serializers.Serializer):
    """
    One (question, choice, rank) entry of a vote submission.
    """

    questionId = serializers.UUIDField(
        source="question_id",
        error_messages={"required": "Question ID is required for each vote"},
    )
    choiceId = serializers.UUIDField(
        source="choice_id",
        error_messages={"required": "Choice ID is required for each vote"},
    )
    rank = serializers.IntegerField(
        required=False,
        allow_null=True,
        min_value=1,
        error_messages={"invalid": "Rank must be a number"},
    )


class VoteSubmissionSerializer(serializers.Serializer):
    """
    Serializer for the vote submission payload.

    Accepts either a `votes` array of selections or a position based
    `rankings` object. Voter identity fields are optional; the service layer
    resolves or creates the voter.
    """

    voterId = serializers.UUIDField(source="voter_id", required=False, allow_null=True)
    email = serializers.EmailField(required=False, allow_null=True, allow_blank=True)
    votes = SelectionSerializer(many=True, required=False)
    rankings = serializers.DictField(required=False)

    def validate(self, data):
        """
        Require at least one vote in either supported format.
        """
        if not data.get("votes") and not data.get("rankings"):
            raise serializers.ValidationError(
                {"votes": "Votes must be a non-empty array"}
            )
        return data

    def get_selections(self):
        """
        Selections from the `votes` array, or None when `rankings` was sent instead.
        """
        votes = self.validated_data.get("votes")
        if not votes:
            return None
        return [
            Selection(
                question_id=item["question_id"],
                choice_id=item["choice_id"],
                rank=item.get("rank"),
            )
            for item in votes
        ]


class VoteRecordSerializer(serializers.ModelSerializer):
    """
    Read-only view of a stored vote row.
    """

    voterId = serializers.UUIDField(source="voter_id", read_only=True)
    ballotId = serializers.UUIDField(source="ballot_id", read_only=True)
    questionId = serializers.UUIDField(source="question_id", read_only=True)
    choiceId = serializers.UUIDField(source="choice_id", read_only=True)
    castAt = serializers.DateTimeField(source="cast_at", read_only=True)

    class Meta:
        model = Vote
        fields = ["id", "voterId", "ballotId", "questionId", "choiceId", "rank", "castAt"]
        read_only_fields = fields


def flatten_errors(detail, prefix=""):
    """
    Flatten DRF's nested serializer errors into [{"field", "message"}] entries.

    Nested keys are joined with dots and list positions are rendered as
    `votes[0].choiceId`.
    """
    errors = []
    if isinstance(detail, dict):
        for key, value in detail.items():
            if isinstance(key, int):
                field = f"{prefix}[{key}]"
            elif key == "non_field_errors":
                field = prefix or key
            else:
                field = f"{prefix}.{key}" if prefix else str(key)
            errors.extend(flatten_errors(value, field))
    elif isinstance(detail, list):
        for index, value in enumerate(detail):
            if isinstance(value, (dict, list)):
                # ListSerializer reports one entry per item, empty for valid ones
                errors.extend(flatten_errors(value, f"{prefix}[{index}]"))
            else:
                errors.append({"field": prefix, "message": str(value)})
    else:
        errors.append({"field": prefix, "message": str(detail)})
    return errors
