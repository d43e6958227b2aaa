"""Band dissolution, the built-in side effect of an approved DISSOLUTION proposal.

Runs inside one repository transaction: pending invitations are revoked,
every other live proposal is closed administratively, and the band is
marked dissolved and inactive. Billing cancellation is not handled here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from bandgov.core.errors import InvalidStateError, NotFoundError
from bandgov.models.governance import AuditEvent, Notification

if TYPE_CHECKING:
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)

# Proposals that get closed when their band dissolves.
CLOSABLE_ON_DISSOLUTION = ["DRAFT", "PENDING_REVIEW", "OPEN", "WITHDRAWN"]
DISSOLUTION_CLOSURE_REASON = "Band dissolved"


@dataclass
class DissolutionResult:
    band_id: str
    closed_proposals: int = 0
    revoked_invitations: int = 0
    notifications: list[Notification] = field(default_factory=list)


async def execute_dissolution(
    repo: Repository,
    band_id: str,
    dissolved_by_id: str,
    reason: str,
    proposal_id: str | None = None,
) -> DissolutionResult:
    """Dissolve a band. Raises if it is missing or already dissolved."""
    band = await repo.get_band(band_id)
    if band is None:
        msg = f"Band {band_id} not found"
        raise NotFoundError(msg)
    if band.dissolved_at is not None:
        msg = "Band is already dissolved"
        raise InvalidStateError(msg)
    band_name = band.name

    now = datetime.now(UTC)
    result = DissolutionResult(band_id=band_id)
    async with repo.transaction():
        for member in await repo.get_members(band_id, ["INVITED"]):
            await repo.update_member(member.id, status="REMOVED")
            result.revoked_invitations += 1

        for other in await repo.get_proposals_for_band(band_id, CLOSABLE_ON_DISSOLUTION):
            if other.id == proposal_id:
                continue
            await repo.transition_status(
                other,
                other.status,
                "CLOSED",
                closed_at=now,
                closure_reason=DISSOLUTION_CLOSURE_REASON,
            )
            result.closed_proposals += 1

        await repo.mark_band_dissolved(band_id, dissolved_by_id, reason, now)
        await repo.record(
            AuditEvent(
                event_type="band.dissolved",
                band_id=band_id,
                entity_type="Band",
                entity_id=band_id,
                actor_id=dissolved_by_id,
                payload={
                    "reason": reason,
                    "proposal_id": proposal_id,
                    "closed_proposals": result.closed_proposals,
                    "revoked_invitations": result.revoked_invitations,
                },
                created_at=now,
            )
        )

    for member in await repo.get_active_members(band_id):
        if member.user_id == dissolved_by_id:
            continue
        result.notifications.append(
            Notification(
                user_id=member.user_id,
                type="BAND_DISSOLVED",
                title="Band Dissolved",
                message=f"{band_name} has been dissolved. Reason: {reason}",
                action_url="/bands",
                priority="HIGH",
                related_id=band_id,
            )
        )

    logger.info(
        "band_dissolved band=%s by=%s closed_proposals=%d",
        band_id,
        dissolved_by_id,
        result.closed_proposals,
    )
    return result
