"""Vote tally and resolution: pure functions, no I/O.

Quorum is participation: everyone who voted (YES, NO or ABSTAIN) over the
band's eligible voters. The decision ratio ignores abstentions. Dissolution
and founder-addition proposals skip quorum and voting method entirely and
need unanimity among those who voted (founders only, for founder-addition).
"""

from __future__ import annotations

import math
from collections.abc import Collection, Sequence
from typing import Protocol

from bandgov.models.governance import QuorumInfo, TallyOutcome

# Minimum YES share (of YES+NO) per voting method. Simple majority is strict.
SIMPLE_MAJORITY_THRESHOLD = 50.0
SUPERMAJORITY_THRESHOLDS: dict[str, float] = {
    "SUPERMAJORITY_66": 66.0,
    "SUPERMAJORITY_75": 75.0,
}


class Ballot(Protocol):
    user_id: str
    vote: str


def count_votes(votes: Sequence[Ballot]) -> tuple[int, int, int]:
    """Return (yes, no, abstain)."""
    yes = sum(1 for v in votes if v.vote == "YES")
    no = sum(1 for v in votes if v.vote == "NO")
    abstain = sum(1 for v in votes if v.vote == "ABSTAIN")
    return yes, no, abstain


def participation_percentage(total_voters: int, eligible_voters: int) -> float:
    if eligible_voters <= 0:
        return 0.0
    return total_voters / eligible_voters * 100


def yes_share(yes: int, no: int) -> float:
    decided = yes + no
    if decided == 0:
        return 0.0
    return yes / decided * 100


def meets_voting_method(voting_method: str, yes: int, no: int) -> bool:
    """Apply the band's voting method to the YES/NO split."""
    if voting_method == "UNANIMOUS":
        return no == 0 and yes > 0
    share = yes_share(yes, no)
    if voting_method in SUPERMAJORITY_THRESHOLDS:
        return share >= SUPERMAJORITY_THRESHOLDS[voting_method]
    if voting_method == "SIMPLE_MAJORITY":
        return share > SIMPLE_MAJORITY_THRESHOLD
    msg = f"Unknown voting method {voting_method}"
    raise ValueError(msg)


def _method_label(voting_method: str) -> str:
    return {
        "SIMPLE_MAJORITY": "simple majority (>50%)",
        "SUPERMAJORITY_66": "66% supermajority",
        "SUPERMAJORITY_75": "75% supermajority",
        "UNANIMOUS": "unanimous",
    }.get(voting_method, voting_method)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def resolve(
    *,
    proposal_type: str,
    voting_method: str,
    quorum_percentage: float,
    eligible_voters: int,
    votes: Sequence[Ballot],
    founder_ids: Collection[str] = (),
) -> TallyOutcome:
    """Decide a closing proposal.

    ``founder_ids`` are the band's current active founders; only their
    ballots count on an ADD_FOUNDER proposal, whatever else was recorded.
    """
    yes, no, abstain = count_votes(votes)
    total_voters = yes + no + abstain
    participation = participation_percentage(total_voters, eligible_voters)
    quorum_met = participation >= quorum_percentage
    quorum = QuorumInfo(
        required=quorum_percentage,
        actual=_round_half_up(participation),
        met=quorum_met,
        eligible_voters=eligible_voters,
        total_voters=total_voters,
    )

    def outcome(approved: bool, code: str | None = None, reason: str | None = None) -> TallyOutcome:
        return TallyOutcome(
            approved=approved,
            yes_count=yes,
            no_count=no,
            abstain_count=abstain,
            yes_percentage=yes_share(yes, no),
            reason_code=code,
            rejection_reason=reason,
            quorum=quorum,
        )

    if proposal_type == "DISSOLUTION":
        if total_voters == 0:
            return outcome(False, "no_votes_cast", "No votes were cast")
        if no > 0:
            return outcome(
                False,
                "dissent",
                f"Dissolution requires unanimous YES votes. {no} member(s) voted NO.",
            )
        return outcome(True)

    if proposal_type == "ADD_FOUNDER":
        founders = set(founder_ids)
        founder_votes = [v for v in votes if v.user_id in founders]
        founder_no = sum(1 for v in founder_votes if v.vote == "NO")
        if not founder_votes:
            return outcome(False, "no_founder_votes", "No founders voted")
        if founder_no > 0:
            return outcome(
                False,
                "founder_dissent",
                "Founder nomination requires unanimous YES votes. "
                f"{founder_no} founder(s) voted NO.",
            )
        return outcome(True)

    if not quorum_met:
        return outcome(
            False,
            "quorum_not_met",
            f"Quorum not met: {total_voters} of {eligible_voters} eligible voters "
            f"participated ({participation:.0f}%), needed {quorum_percentage:g}%",
        )

    if yes + no == 0:
        return outcome(False, "no_decisive_votes", "No YES or NO votes were cast")

    if meets_voting_method(voting_method, yes, no):
        return outcome(True)
    return outcome(
        False,
        "threshold_not_met",
        f"{yes_share(yes, no):.0f}% YES did not reach the {_method_label(voting_method)} "
        "threshold",
    )
