import json
import logging

from ballots.models import Ballot
from django.core.management.base import BaseCommand, CommandError

from voting.integrity import audit_ballot

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Check that votes, voter flags and ballot counters agree for each ballot."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--ballot",
            dest="ballot_id",
            help="Only check the ballot with this id.",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Print the full report as JSON.",
        )
        parser.add_argument(
            "--fail-on-issues",
            action="store_true",
            help="Exit with an error when any ballot fails a check.",
        )

    def handle(self, *args, **options) -> None:
        ballot_id = options.get("ballot_id")
        as_json: bool = bool(options.get("json"))
        fail_on_issues: bool = bool(options.get("fail_on_issues"))

        ballots = Ballot.objects.order_by("created_at")
        if ballot_id:
            ballots = ballots.filter(pk=ballot_id)
            if not ballots.exists():
                raise CommandError(f"Ballot {ballot_id} not found")

        reports = [audit_ballot(ballot) for ballot in ballots]
        failed = [report for report in reports if not report.passed]

        if as_json:
            self.stdout.write(json.dumps([report.as_dict() for report in reports], indent=2))
        else:
            for report in reports:
                if report.passed:
                    self.stdout.write(self.style.SUCCESS(f"{report.ballot_id}: ok"))
                    continue
                self.stdout.write(self.style.WARNING(f"{report.ballot_id}: issues found"))
                if report.orphaned_votes:
                    self.stdout.write(f"  orphaned votes: {len(report.orphaned_votes)}")
                if report.mismatched_votes:
                    self.stdout.write(f"  votes outside ballot schema: {len(report.mismatched_votes)}")
                if not report.counts_match:
                    self.stdout.write(
                        f"  ballots received {report.ballots_received} != "
                        f"voters who voted {report.voted_voter_count}"
                    )
                if report.voted_without_votes:
                    self.stdout.write(f"  voters flagged as voted with no votes: {len(report.voted_without_votes)}")
                if report.votes_without_flag:
                    self.stdout.write(f"  voters with votes not flagged as voted: {len(report.votes_without_flag)}")

        logger.info(f"Checked {len(reports)} ballot(s), {len(failed)} with issues")
        if failed and fail_on_issues:
            raise CommandError(f"{len(failed)} ballot(s) failed integrity checks")
