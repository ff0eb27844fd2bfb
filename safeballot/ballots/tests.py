from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from .models import Ballot, Choice, Question


class BallotModelTest(TestCase):
    def test_new_ballot_defaults(self):
        ballot = Ballot.objects.create(title="Annual General Meeting")

        self.assertEqual(ballot.status, Ballot.Status.DRAFT)
        self.assertFalse(ballot.requires_verification)
        self.assertEqual(ballot.total_voters, 0)
        self.assertEqual(ballot.ballots_received, 0)
        self.assertFalse(ballot.is_open)

    def test_active_and_scheduled_ballots_are_open(self):
        self.assertTrue(Ballot(status=Ballot.Status.ACTIVE).is_open)
        self.assertTrue(Ballot(status=Ballot.Status.SCHEDULED).is_open)
        self.assertFalse(Ballot(status=Ballot.Status.CLOSED).is_open)

    # deleting a ballot removes its question catalog
    def test_delete_cascades_to_questions_and_choices(self):
        ballot = Ballot.objects.create(title="Temporary")
        question = Question.objects.create(ballot=ballot, title="Yes or no?")
        Choice.objects.create(question=question, text="Yes")

        ballot.delete()

        self.assertEqual(Question.objects.count(), 0)
        self.assertEqual(Choice.objects.count(), 0)


class BallotAPITest(APITestCase):
    def setUp(self):
        self.active = Ballot.objects.create(title="Council Election", status=Ballot.Status.ACTIVE)
        self.draft = Ballot.objects.create(title="Budget Vote", status=Ballot.Status.DRAFT)
        second = Question.objects.create(ballot=self.active, title="Deputy", order=1)
        first = Question.objects.create(ballot=self.active, title="Chair", order=0)
        Choice.objects.create(question=first, text="Bob", order=1)
        Choice.objects.create(question=first, text="Alice", order=0)
        Choice.objects.create(question=second, text="Carol")

    def test_list_filters_by_status(self):
        response = self.client.get(reverse("ballots:ballot-list"), {"status": "active"})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([b["id"] for b in response.data], [str(self.active.id)])

    def test_detail_includes_ordered_questions_and_choices(self):
        response = self.client.get(reverse("ballots:ballot-detail", kwargs={"pk": self.active.id}))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        questions = response.data["questions"]
        self.assertEqual([q["title"] for q in questions], ["Chair", "Deputy"])
        self.assertEqual([c["text"] for c in questions[0]["choices"]], ["Alice", "Bob"])
        self.assertEqual(response.data["ballotsReceived"], 0)

    def test_ballots_are_read_only(self):
        response = self.client.post(reverse("ballots:ballot-list"), {"title": "New"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)
