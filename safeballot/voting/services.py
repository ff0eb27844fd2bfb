import logging
import secrets
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ballots.models import Ballot, Choice, Question
from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from .models import Vote, Voter

logger = logging.getLogger(__name__)

ANONYMOUS_VOTER_NAME = "Anonymous Voter"
ANONYMOUS_EMAIL_DOMAIN = "example.com"

DEFAULT_VOTING_CONFIG = {
    "AUTO_VERIFY_VOTERS": False,
    "ALLOW_REVOTE": False,
    "REQUIRE_ACTIVE_BALLOT": False,
}


class VotingServiceError(Exception):
    """Base Exception for voting service"""

    pass


class BallotNotFoundError(VotingServiceError):
    """Raised when the ballot does not exist"""

    pass


class SelectionError(VotingServiceError):
    """Raised when a selection does not fit the ballot schema"""

    def __init__(self, message: str, index: Optional[int] = None, field: str = "votes"):
        self.message = message
        self.index = index
        self.field = field
        super().__init__(message)

    @property
    def location(self) -> str:
        if self.index is None:
            return self.field
        return f"{self.field}[{self.index}]"


class VerificationRequiredError(VotingServiceError):
    """Raised when an unverified voter votes on a ballot requiring verification"""

    pass


class AlreadyVotedError(VotingServiceError):
    """Raised when voter tries to vote twice"""

    pass


class BallotNotOpenError(VotingServiceError):
    """Raised when the ballot is not accepting votes"""

    pass


class VoteTransactionError(VotingServiceError):
    """Raised when the store fails while recording a submission"""

    pass


@dataclass(frozen=True)
class Selection:
    question_id: Any
    choice_id: Any
    rank: Optional[int] = None
    # request field to blame on rejection, e.g. "rankings.0"; defaults to votes[i]
    source: Optional[str] = field(default=None, compare=False)


class ResolutionOutcome(Enum):
    EXISTING = "existing"
    CREATED = "created"


@dataclass
class VoterResolution:
    voter: Voter
    outcome: ResolutionOutcome

    @property
    def created(self) -> bool:
        return self.outcome is ResolutionOutcome.CREATED


@dataclass(frozen=True)
class VoteReceipt:
    voter_id: uuid.UUID
    ballot_id: uuid.UUID
    votes_count: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "voterId": str(self.voter_id),
            "ballotId": str(self.ballot_id),
            "votesCount": self.votes_count,
        }


def get_voting_config() -> Dict[str, bool]:
    """Voting flags from settings.VOTING merged over the strict defaults"""
    config = dict(DEFAULT_VOTING_CONFIG)
    config.update(getattr(settings, "VOTING", {}) or {})
    return config


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    email = str(email).strip().lower()
    return email or None


def display_name_from_email(email: str) -> str:
    """
    Derive a readable voter name from an email address.

    'jane.doe@example.org' becomes 'Jane Doe'; generated anonymous
    addresses keep the anonymous name.
    """
    if email.startswith("anonymous-"):
        return ANONYMOUS_VOTER_NAME
    local_part = email.split("@", 1)[0]
    parts = [p for p in local_part.replace("-", ".").replace("_", ".").split(".") if p]
    if not parts:
        return ANONYMOUS_VOTER_NAME
    return " ".join(part[:1].upper() + part[1:] for part in parts)


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


def _parse_rank(value: Any) -> Optional[int]:
    """
    Coerce a submitted rank to a positive int.

    Accepts ints, integral floats (2.0) and digit strings. Raises ValueError
    for booleans, fractions and anything below 1.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("Rank must be a whole number")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("Rank must be a whole number")
        value = int(value)
    elif isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise ValueError("Rank must be a whole number")
    elif not isinstance(value, int):
        raise ValueError("Rank must be a whole number")
    if value < 1:
        raise ValueError("Rank must be 1 or greater")
    return value


def _selection_error(selection: "Selection", index: int, message: str) -> "SelectionError":
    if selection.source:
        return SelectionError(message, field=selection.source)
    return SelectionError(message, index)


class VotingService:
    """
    Centralized service for vote submission.
    Handles voter resolution, selection validation and the database transaction.
    """

    def __init__(self, config: Optional[Mapping[str, bool]] = None):
        self._config = dict(config) if config is not None else None

    @property
    def config(self) -> Dict[str, bool]:
        # read lazily so settings overrides are honoured by the singleton
        if self._config is not None:
            merged = dict(DEFAULT_VOTING_CONFIG)
            merged.update(self._config)
            return merged
        return get_voting_config()

    def submit_vote(
        self,
        ballot_id,
        selections: Sequence[Selection],
        *,
        voter_id=None,
        auth_email: Optional[str] = None,
        email: Optional[str] = None,
    ) -> VoteReceipt:
        """
        Record a complete ballot submission for one voter.

        Args:
            ballot_id: The ballot being voted on
            selections: Ordered (question, choice, rank) selections
            voter_id: Explicit voter id from the request payload
            auth_email: Email of the authenticated caller, if any
            email: Email supplied in the request payload

        Returns:
            VoteReceipt with the voter id, ballot id and number of votes recorded

        Raises:
            BallotNotFoundError: If the ballot does not exist
            SelectionError: If a selection does not belong to the ballot
            VerificationRequiredError: If the voter must be verified first
            AlreadyVotedError: If the voter already submitted this ballot
            BallotNotOpenError: If the ballot is closed and the status gate is on
            VoteTransactionError: If the store fails during the transaction
        """
        request_id = uuid.uuid4().hex[:8]
        selections = list(selections)

        ballot = self._get_ballot(ballot_id)

        # fast-fail check outside the transaction; repeated authoritatively below
        self._validate_selections(ballot, selections)

        try:
            with transaction.atomic():
                receipt = self._record_submission(
                    ballot.pk,
                    selections,
                    request_id=request_id,
                    voter_id=voter_id,
                    auth_email=auth_email,
                    email=email,
                )
        except VotingServiceError as e:
            logger.info(f"[{request_id}] Vote rejected for ballot {ballot.pk}: {e}")
            raise
        except DatabaseError as e:
            logger.error(f"[{request_id}] Vote transaction failed for ballot {ballot.pk}: {e}")
            raise VoteTransactionError("Failed to record vote, no changes were saved") from e

        logger.info(
            f"[{request_id}] Vote successfully cast.",
            extra={"voter_id": str(receipt.voter_id), "ballot_id": str(receipt.ballot_id)},
        )
        return receipt

    def _record_submission(
        self, ballot_pk, selections, *, request_id, voter_id, auth_email, email
    ) -> VoteReceipt:
        """Resolve, gate, validate and write. Must run inside transaction.atomic()."""
        config = self.config

        try:
            ballot = Ballot.objects.select_for_update().get(pk=ballot_pk)
        except Ballot.DoesNotExist:
            raise BallotNotFoundError("Ballot not found")

        if not ballot.is_open:
            if config["REQUIRE_ACTIVE_BALLOT"]:
                raise BallotNotOpenError("This ballot is not currently accepting votes")
            logger.debug(f"[{request_id}] Accepting vote for ballot in status '{ballot.status}'")

        resolution = self.resolve_or_create_voter(
            ballot, voter_id=voter_id, auth_email=auth_email, email=email
        )
        voter = resolution.voter
        logger.debug(f"[{request_id}] Voter {voter.pk} resolved ({resolution.outcome.value})")

        if ballot.requires_verification and not voter.is_verified:
            if not config["AUTO_VERIFY_VOTERS"]:
                raise VerificationRequiredError(
                    "Voter must complete verification before voting on this ballot"
                )
            logger.warning(f"[{request_id}] Auto-verifying voter {voter.pk} (AUTO_VERIFY_VOTERS enabled)")
            voter.is_verified = True
            voter.save(update_fields=["is_verified", "updated_at"])

        if voter.has_voted:
            if not config["ALLOW_REVOTE"]:
                raise AlreadyVotedError("This voter has already submitted a vote for this ballot")
            logger.warning(f"[{request_id}] Voter {voter.pk} is re-voting (ALLOW_REVOTE enabled)")

        resolved = self._validate_selections(ballot, selections)

        votes = Vote.objects.bulk_create(
            [
                Vote(
                    voter=voter,
                    ballot=ballot,
                    question=question,
                    choice=choice,
                    rank=rank,
                )
                for question, choice, rank in resolved
            ]
        )

        now = timezone.now()
        Voter.objects.filter(pk=voter.pk).update(
            has_voted=True, last_activity=now, updated_at=now
        )
        Ballot.objects.filter(pk=ballot.pk).update(
            ballots_received=F("ballots_received") + 1
        )

        return VoteReceipt(voter_id=voter.pk, ballot_id=ballot.pk, votes_count=len(votes))

    @transaction.atomic
    def resolve_or_create_voter(
        self,
        ballot: Ballot,
        *,
        voter_id=None,
        auth_email: Optional[str] = None,
        email: Optional[str] = None,
    ) -> VoterResolution:
        """
        Find the voter for this submission, creating one when nothing matches.

        Lookup order is explicit voter id, then authenticated email, then the
        request email. The matched row is locked for the rest of the transaction.
        A created voter bumps Ballot.total_voters in the same transaction.
        """
        voters = Voter.objects.select_for_update().filter(ballot=ballot)
        auth_email = normalize_email(auth_email)
        email = normalize_email(email)

        if voter_id:
            voter_uuid = _as_uuid(voter_id)
            voter = voters.filter(pk=voter_uuid).first() if voter_uuid else None
            if voter is not None:
                return VoterResolution(voter, ResolutionOutcome.EXISTING)
            logger.debug(f"No voter {voter_id} on ballot {ballot.pk}, falling back to email")

        for candidate in (auth_email, email):
            if not candidate:
                continue
            voter = voters.filter(email=candidate).first()
            if voter is not None:
                return VoterResolution(voter, ResolutionOutcome.EXISTING)

        new_email = auth_email or email or self._anonymous_email()
        voter = Voter.objects.create(
            ballot=ballot,
            email=new_email,
            name=display_name_from_email(new_email),
            verification_code=self._verification_code(),
            is_verified=True,
            has_voted=False,
            last_activity=timezone.now(),
        )
        Ballot.objects.filter(pk=ballot.pk).update(total_voters=F("total_voters") + 1)
        logger.info(f"Created voter {voter.pk} for ballot {ballot.pk}")
        return VoterResolution(voter, ResolutionOutcome.CREATED)

    def precheck_selections(self, ballot_id, selections: Sequence[Selection]) -> None:
        """Validate selections against the ballot without writing anything."""
        ballot = self._get_ballot(ballot_id)
        self._validate_selections(ballot, list(selections))

    def _validate_selections(self, ballot: Ballot, selections: List[Selection]):
        """
        Check every selection against the ballot's question/choice catalog.

        Returns a list of (question, choice, rank) tuples in submission order.
        """
        if not selections:
            raise SelectionError("At least one vote is required")

        parsed = []
        seen = set()
        for index, selection in enumerate(selections):
            question_id = _as_uuid(selection.question_id)
            if question_id is None:
                raise _selection_error(
                    selection, index, f"Question with ID {selection.question_id} not found in this ballot"
                )
            choice_id = _as_uuid(selection.choice_id)
            if choice_id is None:
                raise _selection_error(
                    selection,
                    index,
                    f"Choice with ID {selection.choice_id} not found for question {question_id}",
                )
            try:
                rank = _parse_rank(selection.rank)
            except ValueError as e:
                raise _selection_error(selection, index, str(e))
            if (question_id, choice_id) in seen:
                raise _selection_error(selection, index, f"Choice {choice_id} was selected more than once")
            seen.add((question_id, choice_id))
            parsed.append((selection, question_id, choice_id, rank))

        questions = Question.objects.filter(ballot=ballot).in_bulk(
            {question_id for _, question_id, _, _ in parsed}
        )
        choices = Choice.objects.filter(question__ballot=ballot).in_bulk(
            {choice_id for _, _, choice_id, _ in parsed}
        )

        resolved = []
        for index, (selection, question_id, choice_id, rank) in enumerate(parsed):
            question = questions.get(question_id)
            if question is None:
                raise _selection_error(
                    selection, index, f"Question with ID {question_id} not found in this ballot"
                )
            choice = choices.get(choice_id)
            if choice is None or choice.question_id != question.pk:
                raise _selection_error(
                    selection, index, f"Choice with ID {choice_id} not found for question {question_id}"
                )
            resolved.append((question, choice, rank))
        return resolved

    def selections_from_rankings(self, ballot_id, rankings: Mapping[str, Any]) -> List[Selection]:
        """
        Translate a position-based rankings payload into selections.

        Keys are question positions on the ballot. Values are a choice
        position, {"index": n, "rank": r}, or a list of choice positions in
        preference order (ranked 1, 2, ...).
        """
        ballot = self._get_ballot(ballot_id)
        questions = list(ballot.questions.prefetch_related("choices"))

        selections = []
        for key, value in rankings.items():
            location = f"rankings.{key}"
            try:
                position = int(key)
            except (TypeError, ValueError):
                raise SelectionError(f"Invalid question position: {key}", field=location)
            if not 0 <= position < len(questions):
                raise SelectionError(f"No question at position {position}", field=location)
            question = questions[position]
            choices = list(question.choices.all())

            if isinstance(value, list):
                entries = [(item, rank) for rank, item in enumerate(value, start=1)]
            elif isinstance(value, dict):
                entries = [(value.get("index"), value.get("rank"))]
            else:
                entries = [(value, None)]

            for choice_position, rank in entries:
                try:
                    choice_position = int(choice_position)
                except (TypeError, ValueError):
                    raise SelectionError(f"Invalid choice position: {choice_position}", field=location)
                if not 0 <= choice_position < len(choices):
                    raise SelectionError(
                        f"No choice at position {choice_position} for question {question.pk}",
                        field=location,
                    )
                selections.append(
                    Selection(question.pk, choices[choice_position].pk, rank, source=location)
                )
        return selections

    def get_voted_voter(self, ballot_id, email: Optional[str]) -> Optional[Voter]:
        """
        Return the voter with this email who has voted on the ballot, or None.
        """
        email = normalize_email(email)
        if not email:
            return None
        return (
            Voter.objects.filter(ballot_id=ballot_id, email=email, has_voted=True)
            .prefetch_related("votes")
            .first()
        )

    def _get_ballot(self, ballot_id) -> Ballot:
        ballot_uuid = _as_uuid(ballot_id)
        if ballot_uuid is None:
            raise BallotNotFoundError("Ballot not found")
        try:
            return Ballot.objects.get(pk=ballot_uuid)
        except Ballot.DoesNotExist:
            raise BallotNotFoundError("Ballot not found")

    @staticmethod
    def _anonymous_email() -> str:
        return f"anonymous-{secrets.token_hex(4)}@{ANONYMOUS_EMAIL_DOMAIN}"

    @staticmethod
    def _verification_code() -> str:
        return secrets.token_hex(3).upper()


# Singleton instance
_voting_service: Optional[VotingService] = None


def get_voting_service() -> VotingService:
    """Get or create the voting service singleton"""
    global _voting_service
    if _voting_service is None:
        _voting_service = VotingService()
    return _voting_service
