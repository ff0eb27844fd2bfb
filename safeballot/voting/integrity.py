"""
Vote integrity checks.

Cross-checks the vote ledger of a ballot against its voter registry,
question/choice catalog and aggregate counters.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ballots.models import Ballot
from django.db.models import Count, F, Q

from .models import Vote, Voter

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    ballot_id: str
    orphaned_votes: List[str] = field(default_factory=list)
    mismatched_votes: List[str] = field(default_factory=list)
    voted_without_votes: List[str] = field(default_factory=list)
    votes_without_flag: List[str] = field(default_factory=list)
    ballots_received: int = 0
    voted_voter_count: int = 0
    total_voters: int = 0
    registered_voter_count: int = 0

    @property
    def counts_match(self) -> bool:
        return self.ballots_received == self.voted_voter_count

    @property
    def passed(self) -> bool:
        return self.counts_match and not (
            self.orphaned_votes
            or self.mismatched_votes
            or self.voted_without_votes
            or self.votes_without_flag
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ballotId": self.ballot_id,
            "passed": self.passed,
            "orphanedVotes": self.orphaned_votes,
            "mismatchedVotes": self.mismatched_votes,
            "votedWithoutVotes": self.voted_without_votes,
            "votesWithoutFlag": self.votes_without_flag,
            "countAccuracy": {
                "passed": self.counts_match,
                "ballotsReceived": self.ballots_received,
                "votedVoterCount": self.voted_voter_count,
                "totalVoters": self.total_voters,
                "registeredVoterCount": self.registered_voter_count,
            },
        }


def audit_ballot(ballot: Ballot) -> IntegrityReport:
    """Run every integrity check for one ballot."""
    report = IntegrityReport(
        ballot_id=str(ballot.pk),
        ballots_received=ballot.ballots_received,
        total_voters=ballot.total_voters,
    )
    votes = Vote.objects.filter(ballot=ballot)

    # votes whose voter belongs to another ballot
    report.orphaned_votes = [
        str(pk) for pk in votes.exclude(voter__ballot=ballot).values_list("pk", flat=True)
    ]
    report.mismatched_votes = [
        str(pk)
        for pk in votes.filter(
            ~Q(question__ballot=F("ballot")) | ~Q(choice__question=F("question"))
        ).values_list("pk", flat=True)
    ]

    voters = Voter.objects.filter(ballot=ballot).annotate(
        vote_count=Count("votes", filter=Q(votes__ballot=ballot))
    )
    report.registered_voter_count = voters.count()
    report.voted_voter_count = voters.filter(has_voted=True).count()
    report.voted_without_votes = [
        str(pk) for pk in voters.filter(has_voted=True, vote_count=0).values_list("pk", flat=True)
    ]
    report.votes_without_flag = [
        str(pk) for pk in voters.filter(has_voted=False, vote_count__gt=0).values_list("pk", flat=True)
    ]

    if report.passed:
        logger.debug(f"Ballot {ballot.pk} passed integrity checks")
    else:
        logger.warning(f"Ballot {ballot.pk} failed integrity checks: {report.as_dict()}")
    return report
