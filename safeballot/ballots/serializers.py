from rest_framework import serializers

from .models import Ballot, Choice, Question


class ChoiceSerializer(serializers.ModelSerializer):
    """
    Nested serializer for the choices of a question
    """

    class Meta:
        model = Choice
        fields = ["id", "text", "description", "order"]


class QuestionSerializer(serializers.ModelSerializer):
    """
    Nested serializer for a ballot question with its choices
    """

    questionType = serializers.CharField(source="question_type", read_only=True)
    maxSelections = serializers.IntegerField(source="max_selections", read_only=True)
    choices = ChoiceSerializer(many=True, read_only=True)

    class Meta:
        model = Question
        fields = ["id", "title", "description", "questionType", "maxSelections", "order", "choices"]


class BallotSerializer(serializers.ModelSerializer):
    """
    Read-only serializer for a ballot, its counters and its question catalog.
    """

    requiresVerification = serializers.BooleanField(source="requires_verification", read_only=True)
    totalVoters = serializers.IntegerField(source="total_voters", read_only=True)
    ballotsReceived = serializers.IntegerField(source="ballots_received", read_only=True)
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)
    questions = QuestionSerializer(many=True, read_only=True)

    class Meta:
        model = Ballot
        fields = [
            "id",
            "title",
            "description",
            "status",
            "requiresVerification",
            "totalVoters",
            "ballotsReceived",
            "createdAt",
            "questions",
        ]
        read_only_fields = fields
