"""Reviewer eligibility: who may approve or reject a proposal in review.

Reviewers are moderators, governors and founders. Nobody reviews their own
proposal, and a reviewer must rank at least as high as the author. Founder
proposals are the exception: any moderator or above may review them, since
founders would otherwise only ever be reviewed by each other.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from bandgov.db.repository import Repository

REVIEWER_ROLES = ("MODERATOR", "GOVERNOR", "FOUNDER")

ROLE_RANK: dict[str, int] = {
    "FOUNDER": 4,
    "GOVERNOR": 3,
    "MODERATOR": 2,
    "CONDUCTOR": 1,
    "VOTING_MEMBER": 0,
    "OBSERVER": 0,
}

MAX_RESUBMISSIONS = 3


def is_reviewer(role: str) -> bool:
    return role in REVIEWER_ROLES


def can_review_proposal(
    reviewer_role: str,
    author_role: str,
    reviewer_id: str,
    author_id: str,
) -> bool:
    if reviewer_id == author_id:
        return False
    if not is_reviewer(reviewer_role):
        return False
    reviewer_rank = ROLE_RANK.get(reviewer_role, 0)
    if author_role == "FOUNDER":
        return reviewer_rank >= ROLE_RANK["MODERATOR"]
    return reviewer_rank >= ROLE_RANK.get(author_role, 0)


class ReviewerEligibility(Protocol):
    """Collaborator consulted by the state machine for review transitions."""

    def can_review_proposal(
        self, reviewer_role: str, author_role: str, reviewer_id: str, author_id: str
    ) -> bool: ...

    async def get_eligible_reviewers(
        self, band_id: str, author_id: str, author_role: str
    ) -> list[str]: ...


class RoleRankReviewers:
    """Default reviewer eligibility backed by member roles."""

    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    def can_review_proposal(
        self, reviewer_role: str, author_role: str, reviewer_id: str, author_id: str
    ) -> bool:
        return can_review_proposal(reviewer_role, author_role, reviewer_id, author_id)

    async def get_eligible_reviewers(
        self, band_id: str, author_id: str, author_role: str
    ) -> list[str]:
        """User IDs of active members who may review a proposal by ``author_id``."""
        candidates = await self.repo.get_active_members(band_id, roles=list(REVIEWER_ROLES))
        return [
            m.user_id
            for m in candidates
            if can_review_proposal(m.role, author_role, m.user_id, author_id)
        ]
