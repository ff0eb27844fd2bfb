import logging

from ballots.models import Ballot
from django.shortcuts import get_object_or_404
from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from .serializers import VoteRecordSerializer, VoteSubmissionSerializer, flatten_errors
from .services import (
    AlreadyVotedError,
    BallotNotFoundError,
    BallotNotOpenError,
    SelectionError,
    VerificationRequiredError,
    VoteTransactionError,
    VotingServiceError,
    get_voting_service,
)

logger = logging.getLogger(__name__)


def _error(message, status_code):
    return Response({"status": "error", "message": message}, status=status_code)


class VoteSubmissionView(generics.CreateAPIView):
    """
    API endpoint for casting a vote on a ballot.

    POST: validates the selections and records them for the resolved voter
    in a single transaction. Authentication is optional; an authenticated
    caller's email is used to find or create their voter record.
    """

    serializer_class = VoteSubmissionSerializer
    permission_classes = [permissions.AllowAny]

    def create(self, request, *args, **kwargs):
        """
        Validate the payload, then hand the submission to the service layer.
        """
        serializer = self.get_serializer(data=request.data)
        if not serializer.is_valid():
            logger.debug(f"Invalid vote payload: {serializer.errors}")
            return Response(
                {"status": "error", "errors": flatten_errors(serializer.errors)},
                status=status.HTTP_400_BAD_REQUEST,
            )

        ballot_id = self.kwargs.get("ballot_id")
        data = serializer.validated_data
        auth_email = request.user.email if request.user.is_authenticated else None

        voting_service = get_voting_service()

        try:
            selections = serializer.get_selections()
            if selections is None:
                selections = voting_service.selections_from_rankings(
                    ballot_id, data["rankings"]
                )

            receipt = voting_service.submit_vote(
                ballot_id,
                selections,
                voter_id=data.get("voter_id"),
                auth_email=auth_email or None,
                email=data.get("email"),
            )

        except BallotNotFoundError:
            return _error("Ballot not found", status.HTTP_404_NOT_FOUND)

        except SelectionError as e:
            return Response(
                {
                    "status": "error",
                    "message": e.message,
                    "errors": [{"field": e.location, "message": e.message}],
                },
                status=status.HTTP_400_BAD_REQUEST,
            )

        except VerificationRequiredError as e:
            return _error(str(e), status.HTTP_403_FORBIDDEN)

        except (AlreadyVotedError, BallotNotOpenError) as e:
            return _error(str(e), status.HTTP_409_CONFLICT)

        except VoteTransactionError as e:
            logger.error(f"Vote transaction error on ballot {ballot_id}: {e.__cause__}")
            return _error("Failed to cast vote", status.HTTP_500_INTERNAL_SERVER_ERROR)

        except VotingServiceError as e:
            logger.error(f"Voting service error: {e}")
            return _error(
                "An error occurred while processing your vote",
                status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return Response(
            {
                "status": "success",
                "message": "Vote cast successfully",
                "data": receipt.as_dict(),
            },
            status=status.HTTP_201_CREATED,
        )


class MyVoteView(APIView):
    """
    API endpoint for authenticated users to view the votes they cast on a ballot.
    """

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, ballot_id):
        ballot = get_object_or_404(Ballot, id=ballot_id)
        voter = get_voting_service().get_voted_voter(ballot.pk, request.user.email)

        if voter is None:
            return _error("You have not voted on this ballot", status.HTTP_404_NOT_FOUND)

        return Response(
            {
                "status": "success",
                "data": {
                    "ballot": {"id": str(ballot.id), "title": ballot.title},
                    "voterId": str(voter.pk),
                    "votes": VoteRecordSerializer(voter.votes.all(), many=True).data,
                },
            }
        )
