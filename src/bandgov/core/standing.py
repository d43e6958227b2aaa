"""Good standing: the dues precondition for state-advancing actions.

Dues are frozen while a dissolution vote is open, so everyone counts as in
good standing then. Treasurers are exempt. Billing itself lives outside this
package; the member row only carries the last known ``dues_status``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from bandgov.core.errors import NotInGoodStandingError

if TYPE_CHECKING:
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)

DUES_REASONS: dict[str, str] = {
    "PAST_DUE": (
        "Your dues payment is past due. Please update your payment to continue participating."
    ),
    "CANCELED": (
        "Your dues subscription has been canceled. Please renew to continue participating."
    ),
    "UNPAID": "Please pay your dues to participate in band activities.",
}
NO_DUES_RECORD = "You have not paid your dues yet."


@dataclass
class StandingResult:
    in_good_standing: bool
    exempt: bool = False
    reason: str | None = None


class GoodStanding(Protocol):
    async def require_good_standing(self, band_id: str, user_id: str) -> None: ...


async def check_good_standing(repo: Repository, band_id: str, user_id: str) -> StandingResult:
    """Evaluate a member's dues standing without raising."""
    if await repo.has_active_dissolution(band_id, ["OPEN"]):
        return StandingResult(in_good_standing=True)

    band = await repo.get_band(band_id)
    if band is None or not band.dues_enforcement_enabled:
        return StandingResult(in_good_standing=True)

    member = await repo.get_member(band_id, user_id)
    if member is None:
        return StandingResult(in_good_standing=False, reason="You are not a member of this band.")

    if member.dues_status == "ACTIVE":
        return StandingResult(in_good_standing=True)
    if member.is_treasurer:
        return StandingResult(in_good_standing=True, exempt=True)
    if member.dues_status is None:
        return StandingResult(in_good_standing=False, reason=NO_DUES_RECORD)
    reason = DUES_REASONS.get(member.dues_status, DUES_REASONS["UNPAID"])
    return StandingResult(in_good_standing=False, reason=reason)


async def require_good_standing(repo: Repository, band_id: str, user_id: str) -> None:
    """Raise NotInGoodStandingError if the member's dues are delinquent."""
    result = await check_good_standing(repo, band_id, user_id)
    if not result.in_good_standing:
        logger.info("good_standing_denied band=%s user=%s", band_id, user_id)
        raise NotInGoodStandingError(result.reason or NO_DUES_RECORD)


class DuesStanding:
    """Default good-standing collaborator."""

    def __init__(self, repo: Repository) -> None:
        self.repo = repo

    async def require_good_standing(self, band_id: str, user_id: str) -> None:
        await require_good_standing(self.repo, band_id, user_id)
