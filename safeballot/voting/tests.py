import json
import threading
import uuid
from datetime import timedelta
from io import StringIO
from unittest import mock

from ballots.models import Ballot, Choice, Question
from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from .integrity import audit_ballot
from .models import Vote, Voter
from .serializers import flatten_errors
from .services import (
    AlreadyVotedError,
    BallotNotFoundError,
    BallotNotOpenError,
    ResolutionOutcome,
    Selection,
    SelectionError,
    VerificationRequiredError,
    VoteTransactionError,
    VotingService,
    VotingServiceError,
)


class BallotFixtureMixin:
    """
    Ballot B1 with a single choice question Q1 (C1, C2) and a ranked
    question Q2 (C3, C4), plus an unrelated ballot B2 with Q3 (C5).
    """

    def setUp(self):
        self.ballot = Ballot.objects.create(title="Board Election", status=Ballot.Status.ACTIVE)
        self.q1 = Question.objects.create(ballot=self.ballot, title="Chair", order=0)
        self.c1 = Choice.objects.create(question=self.q1, text="Alice", order=0)
        self.c2 = Choice.objects.create(question=self.q1, text="Bob", order=1)
        self.q2 = Question.objects.create(
            ballot=self.ballot,
            title="Priorities",
            question_type=Question.QuestionType.RANK_CHOICE,
            max_selections=2,
            order=1,
        )
        self.c3 = Choice.objects.create(question=self.q2, text="Parks", order=0)
        self.c4 = Choice.objects.create(question=self.q2, text="Roads", order=1)

        self.other_ballot = Ballot.objects.create(title="Other Election", status=Ballot.Status.ACTIVE)
        self.q3 = Question.objects.create(ballot=self.other_ballot, title="Treasurer")
        self.c5 = Choice.objects.create(question=self.q3, text="Carol")

    def assertCountersUnchanged(self, total_voters=0, ballots_received=0):
        self.ballot.refresh_from_db()
        self.assertEqual(self.ballot.total_voters, total_voters)
        self.assertEqual(self.ballot.ballots_received, ballots_received)


class VoteSubmissionServiceTest(BallotFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.service = VotingService(config={})

    # anonymous submission creates a voter and records the vote
    def test_anonymous_submission_creates_voter(self):
        receipt = self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)])

        self.assertEqual(receipt.votes_count, 1)
        self.assertEqual(receipt.ballot_id, self.ballot.id)

        voter = Voter.objects.get(pk=receipt.voter_id)
        self.assertTrue(voter.email.startswith("anonymous-"))
        self.assertEqual(voter.name, "Anonymous Voter")
        self.assertTrue(voter.is_verified)
        self.assertTrue(voter.has_voted)
        self.assertEqual(Vote.objects.filter(voter=voter).count(), 1)
        self.assertCountersUnchanged(total_voters=1, ballots_received=1)

    def test_unknown_choice_is_rejected_without_writes(self):
        with self.assertRaises(SelectionError) as ctx:
            self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, uuid.uuid4())])

        self.assertEqual(ctx.exception.index, 0)
        self.assertEqual(Vote.objects.count(), 0)
        self.assertEqual(Voter.objects.count(), 0)
        self.assertCountersUnchanged()

    def test_malformed_choice_id_is_rejected(self):
        with self.assertRaises(SelectionError):
            self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, "bad-id")])
        self.assertEqual(Vote.objects.count(), 0)

    def test_choice_from_another_question_is_rejected(self):
        with self.assertRaises(SelectionError):
            self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c3.id)])
        self.assertEqual(Vote.objects.count(), 0)

    def test_question_from_another_ballot_is_rejected(self):
        with self.assertRaises(SelectionError):
            self.service.submit_vote(self.ballot.id, [Selection(self.q3.id, self.c5.id)])
        self.assertEqual(Vote.objects.count(), 0)

    # one bad selection aborts the whole submission
    def test_invalid_second_selection_aborts_everything(self):
        selections = [Selection(self.q1.id, self.c1.id), Selection(self.q2.id, self.c1.id)]

        with self.assertRaises(SelectionError) as ctx:
            self.service.submit_vote(self.ballot.id, selections, email="dana@example.com")

        self.assertEqual(ctx.exception.index, 1)
        self.assertEqual(ctx.exception.location, "votes[1]")
        self.assertEqual(Vote.objects.count(), 0)
        self.assertFalse(Voter.objects.filter(email="dana@example.com").exists())
        self.assertCountersUnchanged()

    def test_duplicate_selection_is_rejected(self):
        selections = [Selection(self.q1.id, self.c1.id), Selection(self.q1.id, self.c1.id)]
        with self.assertRaises(SelectionError) as ctx:
            self.service.submit_vote(self.ballot.id, selections)
        self.assertEqual(ctx.exception.index, 1)

    def test_empty_selections_are_rejected(self):
        with self.assertRaises(SelectionError):
            self.service.submit_vote(self.ballot.id, [])
        self.assertEqual(Voter.objects.count(), 0)

    def test_missing_ballot(self):
        with self.assertRaises(BallotNotFoundError):
            self.service.submit_vote(uuid.uuid4(), [Selection(self.q1.id, self.c1.id)])
        with self.assertRaises(BallotNotFoundError):
            self.service.submit_vote("not-a-ballot", [Selection(self.q1.id, self.c1.id)])

    def test_voter_who_already_voted_is_rejected(self):
        voter = Voter.objects.create(
            ballot=self.ballot, email="v1@example.com", is_verified=True, has_voted=True
        )

        with self.assertRaises(AlreadyVotedError):
            self.service.submit_vote(
                self.ballot.id, [Selection(self.q1.id, self.c1.id)], voter_id=voter.id
            )

        self.assertEqual(Vote.objects.count(), 0)
        self.assertCountersUnchanged()

    def test_second_submission_never_adds_votes(self):
        selections = [Selection(self.q1.id, self.c2.id)]
        self.service.submit_vote(self.ballot.id, selections, email="erin@example.com")

        with self.assertRaises(AlreadyVotedError):
            self.service.submit_vote(self.ballot.id, selections, email="erin@example.com")

        self.assertEqual(Vote.objects.count(), 1)
        self.assertCountersUnchanged(total_voters=1, ballots_received=1)

    def test_ranked_selections_keep_their_rank(self):
        self.service.submit_vote(
            self.ballot.id,
            [Selection(self.q2.id, self.c3.id, rank=1), Selection(self.q2.id, self.c4.id, rank=2)],
        )

        ranks = dict(Vote.objects.filter(question=self.q2).values_list("choice_id", "rank"))
        self.assertEqual(ranks, {self.c3.id: 1, self.c4.id: 2})

    def test_rank_below_one_is_rejected(self):
        with self.assertRaises(SelectionError) as ctx:
            self.service.submit_vote(self.ballot.id, [Selection(self.q2.id, self.c3.id, rank=-1)])

        self.assertEqual(ctx.exception.location, "votes[0]")
        self.assertEqual(ctx.exception.message, "Rank must be 1 or greater")
        self.assertEqual(Vote.objects.count(), 0)
        self.assertCountersUnchanged()

    def test_fractional_and_boolean_ranks_are_rejected(self):
        for rank in (1.7, True, "2.5"):
            with self.subTest(rank=rank):
                with self.assertRaises(SelectionError) as ctx:
                    self.service.submit_vote(self.ballot.id, [Selection(self.q2.id, self.c3.id, rank=rank)])
                self.assertEqual(ctx.exception.message, "Rank must be a whole number")

        self.assertEqual(Vote.objects.count(), 0)

    def test_integral_float_rank_is_stored_as_int(self):
        self.service.submit_vote(self.ballot.id, [Selection(self.q2.id, self.c3.id, rank=2.0)])

        self.assertEqual(Vote.objects.get().rank, 2)

    def test_cast_vote_touches_voter_updated_at(self):
        voter = Voter.objects.create(ballot=self.ballot, email="una@example.com", is_verified=True)
        before = timezone.now() - timedelta(days=1)
        Voter.objects.filter(pk=voter.pk).update(updated_at=before)

        self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)], voter_id=voter.id)

        voter.refresh_from_db()
        self.assertTrue(voter.has_voted)
        self.assertGreater(voter.updated_at, before)
        self.assertEqual(voter.updated_at, voter.last_activity)

    def test_each_new_voter_is_counted_once(self):
        first = self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)])
        second = self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c2.id)])

        self.assertNotEqual(first.voter_id, second.voter_id)
        self.assertCountersUnchanged(total_voters=2, ballots_received=2)

    # explicit voter id wins over a conflicting email
    def test_voter_id_takes_priority_over_email(self):
        by_id = Voter.objects.create(ballot=self.ballot, email="first@example.com", is_verified=True)
        Voter.objects.create(ballot=self.ballot, email="second@example.com", is_verified=True)

        receipt = self.service.submit_vote(
            self.ballot.id,
            [Selection(self.q1.id, self.c1.id)],
            voter_id=by_id.id,
            email="second@example.com",
        )

        self.assertEqual(receipt.voter_id, by_id.id)
        self.assertFalse(Voter.objects.get(email="second@example.com").has_voted)

    def test_authenticated_email_takes_priority_over_request_email(self):
        authed = Voter.objects.create(ballot=self.ballot, email="auth@example.com", is_verified=True)
        Voter.objects.create(ballot=self.ballot, email="body@example.com", is_verified=True)

        receipt = self.service.submit_vote(
            self.ballot.id,
            [Selection(self.q1.id, self.c1.id)],
            auth_email="Auth@Example.com",
            email="body@example.com",
        )

        self.assertEqual(receipt.voter_id, authed.id)

    def test_unknown_voter_id_falls_back_to_email(self):
        existing = Voter.objects.create(ballot=self.ballot, email="frank@example.com", is_verified=True)

        receipt = self.service.submit_vote(
            self.ballot.id,
            [Selection(self.q1.id, self.c1.id)],
            voter_id=uuid.uuid4(),
            email="frank@example.com",
        )

        self.assertEqual(receipt.voter_id, existing.id)
        self.assertCountersUnchanged(total_voters=0, ballots_received=1)

    def test_voter_on_another_ballot_is_not_reused(self):
        elsewhere = Voter.objects.create(ballot=self.other_ballot, email="gina@example.com")

        receipt = self.service.submit_vote(
            self.ballot.id, [Selection(self.q1.id, self.c1.id)], voter_id=elsewhere.id
        )

        self.assertNotEqual(receipt.voter_id, elsewhere.id)
        self.assertEqual(Voter.objects.get(pk=receipt.voter_id).ballot, self.ballot)

    def test_new_voter_uses_authenticated_email(self):
        receipt = self.service.submit_vote(
            self.ballot.id,
            [Selection(self.q1.id, self.c1.id)],
            auth_email="jane.doe@example.com",
            email="other@example.com",
        )

        voter = Voter.objects.get(pk=receipt.voter_id)
        self.assertEqual(voter.email, "jane.doe@example.com")
        self.assertEqual(voter.name, "Jane Doe")

    def test_unverified_voter_is_rejected_when_verification_required(self):
        Ballot.objects.filter(pk=self.ballot.pk).update(requires_verification=True)
        voter = Voter.objects.create(ballot=self.ballot, email="hal@example.com", is_verified=False)

        with self.assertRaises(VerificationRequiredError):
            self.service.submit_vote(
                self.ballot.id, [Selection(self.q1.id, self.c1.id)], voter_id=voter.id
            )

        voter.refresh_from_db()
        self.assertFalse(voter.has_voted)
        self.assertEqual(Vote.objects.count(), 0)

    def test_auto_verify_mode_verifies_voter(self):
        Ballot.objects.filter(pk=self.ballot.pk).update(requires_verification=True)
        voter = Voter.objects.create(ballot=self.ballot, email="ivy@example.com", is_verified=False)
        service = VotingService(config={"AUTO_VERIFY_VOTERS": True})

        service.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)], voter_id=voter.id)

        voter.refresh_from_db()
        self.assertTrue(voter.is_verified)
        self.assertTrue(voter.has_voted)

    def test_revote_mode_accepts_second_submission(self):
        service = VotingService(config={"ALLOW_REVOTE": True})
        selections = [Selection(self.q1.id, self.c1.id)]

        service.submit_vote(self.ballot.id, selections, email="jack@example.com")
        service.submit_vote(self.ballot.id, selections, email="jack@example.com")

        self.assertEqual(Vote.objects.count(), 2)

    @override_settings(VOTING={"ALLOW_REVOTE": True})
    def test_settings_flags_are_read_when_no_config_given(self):
        service = VotingService()
        self.assertTrue(service.config["ALLOW_REVOTE"])
        self.assertFalse(service.config["AUTO_VERIFY_VOTERS"])

    def test_closed_ballot_accepted_unless_status_gate_enabled(self):
        Ballot.objects.filter(pk=self.ballot.pk).update(status=Ballot.Status.CLOSED)
        gated = VotingService(config={"REQUIRE_ACTIVE_BALLOT": True})

        with self.assertRaises(BallotNotOpenError):
            gated.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)])
        self.assertEqual(Voter.objects.count(), 0)

        receipt = self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)])
        self.assertEqual(receipt.votes_count, 1)

    # a failure while writing rolls back the voter created in the same transaction
    def test_write_failure_rolls_back_voter_creation(self):
        with mock.patch.object(Vote.objects, "bulk_create", side_effect=DatabaseError("disk full")):
            with self.assertRaises(VoteTransactionError):
                self.service.submit_vote(
                    self.ballot.id, [Selection(self.q1.id, self.c1.id)], email="kim@example.com"
                )

        self.assertFalse(Voter.objects.filter(email="kim@example.com").exists())
        self.assertEqual(Vote.objects.count(), 0)
        self.assertCountersUnchanged()

    # the check inside the transaction catches changes made after the pre-check
    def test_selection_revalidated_inside_transaction(self):
        original = VotingService._validate_selections
        calls = []

        def delete_choice_before_second_check(service, ballot, selections):
            calls.append(ballot.pk)
            if len(calls) == 2:
                Choice.objects.filter(pk=self.c1.pk).delete()
            return original(service, ballot, selections)

        with mock.patch.object(
            VotingService,
            "_validate_selections",
            autospec=True,
            side_effect=delete_choice_before_second_check,
        ):
            with self.assertRaises(SelectionError):
                self.service.submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)])

        self.assertEqual(len(calls), 2)
        self.assertEqual(Voter.objects.count(), 0)
        self.assertEqual(Vote.objects.count(), 0)
        self.assertCountersUnchanged()

    def test_committed_votes_match_ballot_schema(self):
        self.service.submit_vote(
            self.ballot.id,
            [
                Selection(self.q1.id, self.c2.id),
                Selection(self.q2.id, self.c4.id, rank=1),
                Selection(self.q2.id, self.c3.id, rank=2),
            ],
        )

        for vote in Vote.objects.select_related("question", "choice"):
            self.assertEqual(vote.question.ballot_id, vote.ballot_id)
            self.assertEqual(vote.choice.question_id, vote.question_id)


class VoterResolutionTest(BallotFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.service = VotingService(config={})

    def test_resolution_is_tagged(self):
        created = self.service.resolve_or_create_voter(self.ballot, email="lee@example.com")
        existing = self.service.resolve_or_create_voter(self.ballot, email="lee@example.com")

        self.assertEqual(created.outcome, ResolutionOutcome.CREATED)
        self.assertTrue(created.created)
        self.assertEqual(existing.outcome, ResolutionOutcome.EXISTING)
        self.assertEqual(existing.voter.pk, created.voter.pk)
        self.assertCountersUnchanged(total_voters=1, ballots_received=0)

    def test_created_voter_has_verification_code(self):
        resolution = self.service.resolve_or_create_voter(self.ballot)
        self.assertEqual(len(resolution.voter.verification_code), 6)
        self.assertFalse(resolution.voter.has_voted)


class RankingsTranslationTest(BallotFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.service = VotingService(config={})

    def test_positions_resolve_to_choices(self):
        selections = self.service.selections_from_rankings(
            self.ballot.id, {"0": "1", "1": [1, 0]}
        )

        self.assertEqual(
            selections,
            [
                Selection(self.q1.id, self.c2.id, None),
                Selection(self.q2.id, self.c4.id, 1),
                Selection(self.q2.id, self.c3.id, 2),
            ],
        )

    def test_index_object_with_rank(self):
        selections = self.service.selections_from_rankings(
            self.ballot.id, {"1": {"index": 0, "rank": 3}}
        )
        self.assertEqual(selections, [Selection(self.q2.id, self.c3.id, 3)])

    def test_out_of_range_positions_are_rejected(self):
        with self.assertRaises(SelectionError) as ctx:
            self.service.selections_from_rankings(self.ballot.id, {"5": 0})
        self.assertEqual(ctx.exception.field, "rankings.5")

        with self.assertRaises(SelectionError):
            self.service.selections_from_rankings(self.ballot.id, {"0": 9})


class PrecheckSelectionsTest(BallotFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.service = VotingService(config={})

    def test_valid_selections_write_nothing(self):
        self.service.precheck_selections(
            self.ballot.id, [Selection(self.q1.id, self.c1.id), Selection(self.q2.id, self.c3.id, 1)]
        )

        self.assertEqual(Voter.objects.count(), 0)
        self.assertEqual(Vote.objects.count(), 0)
        self.assertCountersUnchanged()

    def test_choice_from_another_question_reports_its_index(self):
        with self.assertRaises(SelectionError) as ctx:
            self.service.precheck_selections(
                self.ballot.id,
                [Selection(self.q1.id, self.c1.id), Selection(self.q1.id, self.c3.id)],
            )
        self.assertEqual(ctx.exception.location, "votes[1]")

    def test_unknown_ballot(self):
        with self.assertRaises(BallotNotFoundError):
            self.service.precheck_selections(uuid.uuid4(), [Selection(self.q1.id, self.c1.id)])


class FlattenErrorsTest(TestCase):
    def test_nested_list_errors_get_indexed_paths(self):
        errors = {
            "votes": [{}, {"choiceId": ["Choice ID is required for each vote"]}],
            "email": ["Enter a valid email address."],
        }

        self.assertEqual(
            flatten_errors(errors),
            [
                {"field": "votes[1].choiceId", "message": "Choice ID is required for each vote"},
                {"field": "email", "message": "Enter a valid email address."},
            ],
        )


class VoteSubmissionAPITest(BallotFixtureMixin, APITestCase):
    def vote_url(self, ballot_id=None):
        return reverse("voting:cast_vote", kwargs={"ballot_id": ballot_id or self.ballot.id})

    def test_successful_vote_returns_receipt(self):
        payload = {"votes": [{"questionId": str(self.q1.id), "choiceId": str(self.c1.id)}]}

        response = self.client.post(self.vote_url(), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["status"], "success")
        self.assertEqual(response.data["data"]["ballotId"], str(self.ballot.id))
        self.assertEqual(response.data["data"]["votesCount"], 1)
        self.assertTrue(Voter.objects.filter(pk=response.data["data"]["voterId"]).exists())

    def test_missing_fields_report_each_error(self):
        payload = {"votes": [{"questionId": str(self.q1.id), "rank": "first"}]}

        response = self.client.post(self.vote_url(), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["status"], "error")
        fields = {error["field"] for error in response.data["errors"]}
        self.assertEqual(fields, {"votes[0].choiceId", "votes[0].rank"})

    def test_empty_votes_are_rejected(self):
        response = self.client.post(self.vote_url(), {"votes": []}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["errors"][0]["field"], "votes")

    def test_unknown_ballot_returns_404(self):
        payload = {"votes": [{"questionId": str(self.q1.id), "choiceId": str(self.c1.id)}]}

        response = self.client.post(self.vote_url(uuid.uuid4()), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data, {"status": "error", "message": "Ballot not found"})

    def test_choice_mismatch_returns_400(self):
        payload = {"votes": [{"questionId": str(self.q1.id), "choiceId": str(self.c4.id)}]}

        response = self.client.post(self.vote_url(), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["errors"][0]["field"], "votes[0]")
        self.assertEqual(Vote.objects.count(), 0)

    def test_already_voted_returns_409(self):
        voter = Voter.objects.create(
            ballot=self.ballot, email="mo@example.com", is_verified=True, has_voted=True
        )
        payload = {
            "voterId": str(voter.id),
            "votes": [{"questionId": str(self.q1.id), "choiceId": str(self.c1.id)}],
        }

        response = self.client.post(self.vote_url(), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["status"], "error")

    def test_verification_required_returns_403(self):
        Ballot.objects.filter(pk=self.ballot.pk).update(requires_verification=True)
        Voter.objects.create(ballot=self.ballot, email="ned@example.com", is_verified=False)
        payload = {
            "email": "ned@example.com",
            "votes": [{"questionId": str(self.q1.id), "choiceId": str(self.c1.id)}],
        }

        response = self.client.post(self.vote_url(), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_authenticated_caller_becomes_voter(self):
        user = get_user_model().objects.create_user(
            username="olive", email="olive@example.com", password="s3cret-pass"
        )
        self.client.force_authenticate(user=user)
        payload = {"votes": [{"questionId": str(self.q1.id), "choiceId": str(self.c2.id)}]}

        response = self.client.post(self.vote_url(), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        voter = Voter.objects.get(pk=response.data["data"]["voterId"])
        self.assertEqual(voter.email, "olive@example.com")

    def test_rankings_payload(self):
        payload = {"rankings": {"0": 0, "1": [1, 0]}}

        response = self.client.post(self.vote_url(), payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["data"]["votesCount"], 3)

    def test_rankings_with_invalid_rank_is_a_field_error(self):
        for rank, message in ((-1, "Rank must be 1 or greater"), (1.7, "Rank must be a whole number")):
            with self.subTest(rank=rank):
                payload = {"rankings": {"0": {"index": 0, "rank": rank}}}

                response = self.client.post(self.vote_url(), payload, format="json")

                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
                self.assertEqual(response.data["message"], message)
                self.assertEqual(response.data["errors"][0]["field"], "rankings.0")

        self.assertEqual(Vote.objects.count(), 0)
        self.assertCountersUnchanged()

    def test_my_vote_lists_recorded_votes(self):
        user = get_user_model().objects.create_user(
            username="pat", email="pat@example.com", password="s3cret-pass"
        )
        self.client.force_authenticate(user=user)
        payload = {"votes": [{"questionId": str(self.q1.id), "choiceId": str(self.c1.id)}]}
        self.client.post(self.vote_url(), payload, format="json")

        response = self.client.get(reverse("voting:my_vote", kwargs={"ballot_id": self.ballot.id}))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        votes = response.data["data"]["votes"]
        self.assertEqual(len(votes), 1)
        self.assertEqual(votes[0]["choiceId"], str(self.c1.id))

    def test_my_vote_without_voting_returns_404(self):
        user = get_user_model().objects.create_user(
            username="quinn", email="quinn@example.com", password="s3cret-pass"
        )
        self.client.force_authenticate(user=user)

        response = self.client.get(reverse("voting:my_vote", kwargs={"ballot_id": self.ballot.id}))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_my_vote_requires_authentication(self):
        response = self.client.get(reverse("voting:my_vote", kwargs={"ballot_id": self.ballot.id}))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))


class VoteIntegrityTest(BallotFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        VotingService(config={}).submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)])

    def test_consistent_ballot_passes(self):
        self.ballot.refresh_from_db()
        report = audit_ballot(self.ballot)

        self.assertTrue(report.passed, report.as_dict())

    def test_counter_drift_and_flag_mismatch_are_reported(self):
        Ballot.objects.filter(pk=self.ballot.pk).update(ballots_received=5)
        Voter.objects.create(ballot=self.ballot, email="ray@example.com", has_voted=True)
        self.ballot.refresh_from_db()

        report = audit_ballot(self.ballot)

        self.assertFalse(report.passed)
        self.assertFalse(report.counts_match)
        self.assertEqual(len(report.voted_without_votes), 1)

    def test_command_fails_on_issues(self):
        Ballot.objects.filter(pk=self.ballot.pk).update(ballots_received=0)
        out = StringIO()

        with self.assertRaises(CommandError):
            call_command("check_vote_integrity", "--fail-on-issues", stdout=out)
        self.assertIn("issues found", out.getvalue())

    def test_command_json_output_for_one_ballot(self):
        out = StringIO()

        call_command("check_vote_integrity", "--ballot", str(self.ballot.id), "--json", stdout=out)

        reports = json.loads(out.getvalue())
        self.assertEqual(len(reports), 1)
        self.assertTrue(reports[0]["passed"])


class CounterUpdateTest(BallotFixtureMixin, TestCase):
    # a stale in-memory ballot must not overwrite counters bumped elsewhere
    def test_counters_increment_from_stored_value(self):
        Ballot.objects.filter(pk=self.ballot.pk).update(total_voters=7, ballots_received=10)

        VotingService(config={}).submit_vote(self.ballot.id, [Selection(self.q1.id, self.c1.id)])

        self.assertCountersUnchanged(total_voters=8, ballots_received=11)


class ConcurrentSubmissionTest(TransactionTestCase):
    """
    Threads racing on one ballot. Postgres and MySQL serialize on the row
    locks, sqlite on its database write lock (BEGIN IMMEDIATE).
    """

    def setUp(self):
        self.ballot = Ballot.objects.create(title="Concurrent Election", status=Ballot.Status.ACTIVE)
        self.question = Question.objects.create(ballot=self.ballot, title="Chair")
        self.choice = Choice.objects.create(question=self.question, text="Alice")

    def _run_in_threads(self, count, **identity):
        barrier = threading.Barrier(count)
        outcomes = []

        def worker():
            try:
                barrier.wait()
                VotingService(config={}).submit_vote(
                    self.ballot.id, [Selection(self.question.id, self.choice.id)], **identity
                )
                outcomes.append("ok")
            except AlreadyVotedError:
                outcomes.append("already_voted")
            except VotingServiceError as e:
                outcomes.append(type(e).__name__)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_concurrent_new_voters_are_all_counted(self):
        outcomes = self._run_in_threads(4)

        self.assertEqual(outcomes, ["ok"] * 4)
        self.ballot.refresh_from_db()
        self.assertEqual(self.ballot.total_voters, 4)
        self.assertEqual(self.ballot.ballots_received, 4)

    def test_concurrent_submissions_for_one_voter(self):
        voter = Voter.objects.create(ballot=self.ballot, email="sam@example.com", is_verified=True)

        outcomes = self._run_in_threads(2, voter_id=voter.id)

        self.assertEqual(sorted(outcomes), ["already_voted", "ok"])
        self.assertEqual(Vote.objects.filter(voter=voter).count(), 1)
        self.ballot.refresh_from_db()
        self.assertEqual(self.ballot.ballots_received, 1)
