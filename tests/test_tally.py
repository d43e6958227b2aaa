"""Tests for vote tally and resolution."""

from dataclasses import dataclass

import pytest

from bandgov.core.tally import count_votes, meets_voting_method, resolve


@dataclass
class Ballot:
    user_id: str
    vote: str


def ballots(yes: int = 0, no: int = 0, abstain: int = 0) -> list[Ballot]:
    votes = ["YES"] * yes + ["NO"] * no + ["ABSTAIN"] * abstain
    return [Ballot(user_id=f"u-{i}", vote=v) for i, v in enumerate(votes)]


def general(votes, eligible=10, quorum=50.0, method="SIMPLE_MAJORITY"):
    return resolve(
        proposal_type="GENERAL",
        voting_method=method,
        quorum_percentage=quorum,
        eligible_voters=eligible,
        votes=votes,
    )


class TestCountVotes:
    def test_counts(self):
        assert count_votes(ballots(yes=3, no=2, abstain=1)) == (3, 2, 1)

    def test_empty(self):
        assert count_votes([]) == (0, 0, 0)


class TestQuorum:
    @pytest.mark.parametrize(
        "votes",
        [ballots(yes=5), ballots(yes=3, no=1, abstain=1), ballots(abstain=1, yes=4)],
    )
    def test_five_of_ten_meets_quorum(self, votes):
        outcome = general(votes)
        assert outcome.quorum.met
        assert outcome.quorum.total_voters == 5
        assert outcome.quorum.actual == 50

    def test_four_of_ten_fails_even_when_unanimous(self):
        outcome = general(ballots(yes=4))
        assert not outcome.approved
        assert not outcome.quorum.met
        assert outcome.reason_code == "quorum_not_met"
        assert outcome.rejection_reason == (
            "Quorum not met: 4 of 10 eligible voters participated (40%), needed 50%"
        )

    def test_abstentions_count_toward_quorum_only(self):
        outcome = general(ballots(yes=2, no=1, abstain=3))
        assert outcome.quorum.met
        assert outcome.approved
        assert outcome.yes_percentage == pytest.approx(200 / 3)

    def test_all_abstain_with_quorum(self):
        outcome = general(ballots(abstain=6))
        assert not outcome.approved
        assert outcome.reason_code == "no_decisive_votes"

    def test_zero_eligible_voters(self):
        outcome = general([], eligible=0)
        assert not outcome.approved
        assert outcome.quorum.actual == 0
        assert not outcome.quorum.met

    def test_actual_rounds_half_up(self):
        outcome = general(ballots(yes=1), eligible=8, quorum=10)
        # 12.5% participation
        assert outcome.quorum.actual == 13


class TestVotingMethods:
    def test_simple_majority_tie_fails(self):
        outcome = general(ballots(yes=5, no=5))
        assert not outcome.approved
        assert outcome.reason_code == "threshold_not_met"
        assert "50% YES" in outcome.rejection_reason

    def test_simple_majority_passes(self):
        outcome = general(ballots(yes=6, no=4))
        assert outcome.approved
        assert outcome.reason_code is None
        assert outcome.rejection_reason is None

    @pytest.mark.parametrize(
        ("method", "yes", "no", "expected"),
        [
            ("SUPERMAJORITY_66", 2, 1, True),
            ("SUPERMAJORITY_66", 13, 7, False),
            ("SUPERMAJORITY_75", 3, 1, True),
            ("SUPERMAJORITY_75", 7, 3, False),
            ("UNANIMOUS", 4, 0, True),
            ("UNANIMOUS", 9, 1, False),
            ("UNANIMOUS", 0, 0, False),
        ],
    )
    def test_thresholds(self, method, yes, no, expected):
        assert meets_voting_method(method, yes, no) is expected

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown voting method"):
            meets_voting_method("COIN_FLIP", 1, 0)


class TestDissolution:
    def _resolve(self, votes):
        return resolve(
            proposal_type="DISSOLUTION",
            voting_method="SIMPLE_MAJORITY",
            quorum_percentage=100,
            eligible_voters=20,
            votes=votes,
        )

    def test_unanimous_yes_approves_without_quorum(self):
        outcome = self._resolve(ballots(yes=3))
        assert outcome.approved
        assert not outcome.quorum.met

    def test_one_dissenter_rejects(self):
        outcome = self._resolve(ballots(yes=3, no=1))
        assert not outcome.approved
        assert outcome.reason_code == "dissent"
        assert outcome.rejection_reason == (
            "Dissolution requires unanimous YES votes. 1 member(s) voted NO."
        )

    def test_no_votes_rejects(self):
        outcome = self._resolve([])
        assert not outcome.approved
        assert outcome.reason_code == "no_votes_cast"
        assert outcome.rejection_reason == "No votes were cast"


class TestFounderAddition:
    def _resolve(self, votes, founders=("F1", "F2")):
        return resolve(
            proposal_type="ADD_FOUNDER",
            voting_method="SUPERMAJORITY_75",
            quorum_percentage=90,
            eligible_voters=10,
            votes=votes,
            founder_ids=founders,
        )

    def test_silent_founder_does_not_block(self):
        outcome = self._resolve([Ballot("F1", "YES")])
        assert outcome.approved

    def test_founder_no_rejects_regardless_of_others(self):
        votes = [Ballot("F1", "NO")] + [Ballot(f"m-{i}", "YES") for i in range(8)]
        outcome = self._resolve(votes)
        assert not outcome.approved
        assert outcome.reason_code == "founder_dissent"
        assert "1 founder(s) voted NO" in outcome.rejection_reason

    def test_non_founder_votes_are_ignored(self):
        outcome = self._resolve([Ballot("m-1", "YES"), Ballot("m-2", "YES")])
        assert not outcome.approved
        assert outcome.reason_code == "no_founder_votes"
        assert outcome.rejection_reason == "No founders voted"

    def test_non_founder_no_does_not_block(self):
        outcome = self._resolve([Ballot("F1", "YES"), Ballot("F2", "YES"), Ballot("m-1", "NO")])
        assert outcome.approved
