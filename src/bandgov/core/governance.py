"""Proposal lifecycle: creation, review, voting, editing and close.

States: DRAFT, PENDING_REVIEW, OPEN, APPROVED, REJECTED, WITHDRAWN, CLOSED.
OPEN -> APPROVED/REJECTED happens only in ``close_proposal``, after the
tally. REJECTED by review can be resubmitted; REJECTED by tally (closed_at
set) is terminal like APPROVED and CLOSED.

Every status write goes through ``Repository.transition_status`` so that a
concurrent writer who got there first surfaces as ConflictError. Functions
return a ``GovernanceOutcome``/``CloseResult`` carrying the notifications
to send after the caller commits; nothing here notifies directly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from bandgov.core.dissolution import execute_dissolution
from bandgov.core.effects import EffectContext, execute_and_log_effects, validate_effects
from bandgov.core.errors import (
    EffectExecutionError,
    EffectsInvalidError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from bandgov.core.finance_effects import (
    FINANCE_BUCKET_GOVERNANCE_V1,
    can_create_finance_bucket_governance_proposal,
)
from bandgov.core.review import MAX_RESUBMISSIONS, RoleRankReviewers
from bandgov.core.standing import DuesStanding
from bandgov.core.tally import resolve
from bandgov.models.governance import (
    ACTIVE_PROPOSAL_STATUSES,
    AuditEvent,
    CloseResult,
    EffectsExecutionResult,
    Notification,
    ProposalEffect,
)

if TYPE_CHECKING:
    from bandgov.core.effects import EffectRegistry
    from bandgov.core.review import ReviewerEligibility
    from bandgov.core.standing import GoodStanding
    from bandgov.db.models import BandRow, MemberRow, ProposalRow, VoteRow
    from bandgov.db.repository import Repository

logger = logging.getLogger(__name__)

MIN_REASON_LENGTH = 10
CLOSE_ROLES = ("FOUNDER", "GOVERNOR")
FORCE_CLOSE_ROLE = "FOUNDER"
MODERATION_ROLES = ("FOUNDER", "GOVERNOR", "MODERATOR")
BUILT_IN_TYPES = ("DISSOLUTION", "ADD_FOUNDER")
NO_ABSTAIN_TYPES = ("DISSOLUTION", "ADD_FOUNDER")
EDITABLE_FIELDS = ("title", "description", "execution_type", "execution_subtype", "effects")
RESUBMITTABLE = ("REJECTED", "WITHDRAWN")

TRANSITIONS: dict[str, frozenset[str]] = {
    "DRAFT": frozenset({"PENDING_REVIEW", "OPEN", "CLOSED"}),
    "PENDING_REVIEW": frozenset({"OPEN", "REJECTED", "WITHDRAWN", "CLOSED"}),
    "OPEN": frozenset({"APPROVED", "REJECTED", "PENDING_REVIEW", "CLOSED"}),
    "REJECTED": frozenset({"PENDING_REVIEW", "OPEN", "CLOSED"}),
    "WITHDRAWN": frozenset({"PENDING_REVIEW", "OPEN", "CLOSED"}),
    "APPROVED": frozenset(),
    "CLOSED": frozenset(),
}


@dataclass
class GovernanceOutcome:
    """Result of a state-machine operation."""

    proposal: ProposalRow
    message: str
    notifications: list[Notification] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    votes_reset: int = 0
    vote: VoteRow | None = None


# --- Helpers ---


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def is_terminal(proposal: ProposalRow) -> bool:
    """APPROVED, CLOSED, and REJECTED by tally never move again."""
    if proposal.status in ("APPROVED", "CLOSED"):
        return True
    return proposal.status == "REJECTED" and proposal.closed_at is not None


def assert_transition(proposal: ProposalRow, new_status: str) -> None:
    """Raise InvalidStateError unless ``proposal`` may move to ``new_status``."""
    if is_terminal(proposal) or new_status not in TRANSITIONS.get(proposal.status, frozenset()):
        msg = f"Cannot move proposal from {proposal.status} to {new_status}"
        raise InvalidStateError(msg)


def _proposal_url(band: BandRow, proposal_id: str) -> str:
    return f"/bands/{band.slug}/proposals/{proposal_id}"


def _voting_window(band: BandRow, now: datetime) -> dict[str, datetime]:
    return {
        "voting_started_at": now,
        "voting_ends_at": now + timedelta(days=band.voting_period_days),
    }


async def _load(repo: Repository, proposal_id: str) -> tuple[ProposalRow, BandRow]:
    proposal = await repo.get_proposal(proposal_id)
    if proposal is None:
        msg = "Proposal not found"
        raise NotFoundError(msg)
    band = await repo.get_band(proposal.band_id)
    if band is None:
        msg = "Band not found"
        raise NotFoundError(msg)
    return proposal, band


async def _active_member(
    repo: Repository, band_id: str, user_id: str, message: str
) -> MemberRow:
    member = await repo.get_member(band_id, user_id)
    if member is None or member.status != "ACTIVE":
        raise ForbiddenError(message)
    return member


def _require_live_band(band: BandRow) -> None:
    if band.dissolved_at is not None or band.status != "ACTIVE":
        msg = "This band has been dissolved"
        raise InvalidStateError(msg)


def _require_reason(reason: str | None, min_length: int, message: str) -> str:
    text = (reason or "").strip()
    if len(text) < min_length:
        raise InvalidStateError(message)
    return text


def _stored_effects(effects: Any) -> Any:
    # Anything but a list goes to the validator untouched and fails there.
    if not isinstance(effects, list):
        return effects
    stored: list[dict[str, Any]] = []
    for effect in effects:
        if isinstance(effect, ProposalEffect):
            stored.append(effect.to_stored())
        else:
            stored.append(effect)
    return stored


async def _validate_or_raise(
    registry: EffectRegistry,
    repo: Repository,
    band_id: str,
    effects: object,
    execution_type: str,
    execution_subtype: str | None,
    proposal_id: str | None = None,
) -> list[str]:
    context = EffectContext(band_id=band_id, repo=repo, proposal_id=proposal_id)
    result = await validate_effects(registry, effects, execution_type, execution_subtype, context)
    for warning in result.warnings:
        logger.warning("effects_validation_warning band=%s warning=%s", band_id, warning)
    if not result.valid:
        raise EffectsInvalidError(result.errors)
    return result.warnings


async def _notify_members(
    repo: Repository,
    band_id: str,
    *,
    roles: list[str] | None = None,
    exclude: str | None = None,
    **notification: Any,
) -> list[Notification]:
    members = await repo.get_active_members(band_id, roles=roles)
    return [
        Notification(user_id=m.user_id, **notification)
        for m in members
        if m.user_id != exclude
    ]


# --- Creation ---


async def create_proposal(
    repo: Repository,
    registry: EffectRegistry,
    *,
    band_id: str,
    author_id: str,
    title: str,
    description: str = "",
    proposal_type: str = "GENERAL",
    execution_type: str = "PROJECT",
    execution_subtype: str | None = None,
    effects: Any = None,
    nominee_user_id: str | None = None,
) -> GovernanceOutcome:
    """Create a DRAFT proposal after role, band and effects checks."""
    band = await repo.get_band(band_id)
    if band is None:
        msg = "Band not found"
        raise NotFoundError(msg)
    _require_live_band(band)

    author = await _active_member(
        repo, band_id, author_id, "You are not an active member of this band"
    )
    if author.role not in band.proposal_roles:
        msg = "Your role does not have permission to create proposals"
        raise ForbiddenError(msg)
    if execution_subtype == FINANCE_BUCKET_GOVERNANCE_V1:
        if not can_create_finance_bucket_governance_proposal(author.role):
            msg = (
                "Your role does not have permission to create finance bucket governance "
                "proposals. Required: Conductor, Moderator, Governor, or Founder."
            )
            raise ForbiddenError(msg)

    if proposal_type in BUILT_IN_TYPES and effects is not None:
        msg = f"{proposal_type} proposals cannot carry effects"
        raise InvalidStateError(msg)
    if proposal_type == "DISSOLUTION":
        if await repo.has_active_dissolution(band_id, list(ACTIVE_PROPOSAL_STATUSES)):
            msg = "A dissolution proposal is already active for this band"
            raise InvalidStateError(msg)
    if proposal_type == "ADD_FOUNDER":
        if author.role != "FOUNDER":
            msg = "Only founders can nominate a new founder"
            raise ForbiddenError(msg)
        if not nominee_user_id:
            msg = "A founder nomination needs a nominee"
            raise InvalidStateError(msg)
        nominee = await repo.get_member(band_id, nominee_user_id)
        if nominee is None or nominee.status != "ACTIVE":
            msg = "The nominee must be an active member of this band"
            raise InvalidStateError(msg)
        if nominee.role == "FOUNDER":
            msg = "The nominee is already a founder"
            raise InvalidStateError(msg)
    elif nominee_user_id is not None:
        msg = "Only founder nominations have a nominee"
        raise InvalidStateError(msg)

    stored = _stored_effects(effects)
    warnings = await _validate_or_raise(
        registry, repo, band_id, stored, execution_type, execution_subtype
    )
    proposal = await repo.create_proposal(
        band_id=band_id,
        created_by_id=author_id,
        title=title,
        description=description,
        type=proposal_type,
        execution_type=execution_type,
        execution_subtype=execution_subtype,
        effects=stored,
        nominee_user_id=nominee_user_id,
        status="DRAFT",
        effects_validated_at=datetime.now(UTC) if stored is not None else None,
    )
    logger.info(
        "proposal_created id=%s band=%s type=%s execution=%s",
        proposal.id,
        band_id,
        proposal_type,
        execution_type,
    )
    return GovernanceOutcome(proposal=proposal, message="Proposal created", warnings=warnings)


# --- Submission / review ---


async def _submit(
    repo: Repository,
    proposal: ProposalRow,
    band: BandRow,
    actor_id: str,
    reviewers: ReviewerEligibility,
    author_role: str,
    max_resubmissions: int,
) -> GovernanceOutcome:
    if proposal.submission_count >= max_resubmissions:
        msg = f"Maximum resubmission limit ({max_resubmissions}) reached"
        raise InvalidStateError(msg)
    target = "PENDING_REVIEW" if band.require_proposal_review else "OPEN"
    assert_transition(proposal, target)

    now = datetime.now(UTC)
    fields: dict[str, Any] = {
        "submitted_at": now,
        "submission_count": proposal.submission_count + 1,
        "reviewed_by_id": None,
        "reviewed_at": None,
        "rejection_reason": None,
    }
    if target == "OPEN":
        fields.update(_voting_window(band, now))
    else:
        fields.update(voting_started_at=None, voting_ends_at=None)

    resubmission = proposal.submission_count > 0
    await repo.transition_status(proposal, proposal.status, target, **fields)
    logger.info(
        "proposal_submitted id=%s status=%s submission=%d",
        proposal.id,
        target,
        proposal.submission_count,
    )

    verb = "resubmitted" if resubmission else "submitted"
    url = _proposal_url(band, proposal.id)
    if target == "OPEN":
        notifications = await _notify_members(
            repo,
            band.id,
            roles=list(band.voting_roles),
            exclude=actor_id,
            type="PROPOSAL_OPEN",
            title="New Proposal Open for Voting",
            message=f'"{proposal.title}" is open for voting in {band.name}',
            action_url=url,
            related_id=proposal.id,
        )
        message = "Proposal is open for voting"
    else:
        reviewer_ids = await reviewers.get_eligible_reviewers(band.id, actor_id, author_role)
        notifications = [
            Notification(
                user_id=user_id,
                type="PROPOSAL_REVIEW_REQUESTED",
                title="Proposal Needs Review",
                message=f'"{proposal.title}" was {verb} for review in {band.name}',
                action_url=url,
                related_id=proposal.id,
            )
            for user_id in reviewer_ids
        ]
        message = "Proposal submitted for review"
    return GovernanceOutcome(proposal=proposal, message=message, notifications=notifications)


async def submit_proposal(
    repo: Repository,
    proposal_id: str,
    actor_id: str,
    *,
    standing: GoodStanding | None = None,
    reviewers: ReviewerEligibility | None = None,
    max_resubmissions: int = MAX_RESUBMISSIONS,
) -> GovernanceOutcome:
    """Submit a DRAFT, WITHDRAWN or review-REJECTED proposal.

    Goes to PENDING_REVIEW when the band requires review, otherwise straight
    to OPEN with a fresh voting window.
    """
    proposal, band = await _load(repo, proposal_id)
    if proposal.created_by_id != actor_id:
        msg = "Only the author can submit a proposal"
        raise ForbiddenError(msg)
    if proposal.status not in ("DRAFT", *RESUBMITTABLE) or is_terminal(proposal):
        msg = "Only drafts, rejected, or withdrawn proposals can be submitted"
        raise InvalidStateError(msg)
    _require_live_band(band)
    author = await _active_member(
        repo, band.id, actor_id, "You must be an active member of this band"
    )
    await (standing or DuesStanding(repo)).require_good_standing(band.id, actor_id)
    return await _submit(
        repo,
        proposal,
        band,
        actor_id,
        reviewers or RoleRankReviewers(repo),
        author.role,
        max_resubmissions,
    )


async def resubmit_proposal(
    repo: Repository,
    registry: EffectRegistry,
    proposal_id: str,
    actor_id: str,
    *,
    title: str,
    description: str,
    effects: Any = None,
    standing: GoodStanding | None = None,
    reviewers: ReviewerEligibility | None = None,
    max_resubmissions: int = MAX_RESUBMISSIONS,
) -> GovernanceOutcome:
    """Revise a rejected or withdrawn proposal and submit it again.

    ``effects`` replaces the stored effects when given; they are validated
    again either way, since band state may have moved on.
    """
    proposal, band = await _load(repo, proposal_id)
    if proposal.created_by_id != actor_id:
        msg = "Only the author can resubmit a proposal"
        raise ForbiddenError(msg)
    if proposal.status not in RESUBMITTABLE or is_terminal(proposal):
        msg = "Cannot resubmit this proposal"
        raise InvalidStateError(msg)
    _require_live_band(band)
    author = await _active_member(
        repo, band.id, actor_id, "You must be an active member of this band"
    )
    await (standing or DuesStanding(repo)).require_good_standing(band.id, actor_id)

    stored = _stored_effects(effects) if effects is not None else proposal.effects
    await _validate_or_raise(
        registry,
        repo,
        band.id,
        stored,
        proposal.execution_type,
        proposal.execution_subtype,
        proposal.id,
    )
    await repo.update_proposal(
        proposal,
        title=title,
        description=description,
        effects=stored,
        effects_validated_at=datetime.now(UTC) if stored is not None else None,
    )
    return await _submit(
        repo,
        proposal,
        band,
        actor_id,
        reviewers or RoleRankReviewers(repo),
        author.role,
        max_resubmissions,
    )


async def _review_parties(
    repo: Repository,
    proposal: ProposalRow,
    band: BandRow,
    reviewer_id: str,
    reviewers: ReviewerEligibility,
) -> None:
    reviewer = await _active_member(repo, band.id, reviewer_id, "Not an active band member")
    author = await repo.get_member(band.id, proposal.created_by_id)
    if author is None:
        msg = "Proposal author is no longer a member"
        raise InvalidStateError(msg)
    if not reviewers.can_review_proposal(
        reviewer.role, author.role, reviewer_id, proposal.created_by_id
    ):
        msg = "You do not have permission to review this proposal"
        raise ForbiddenError(msg)


async def approve_review(
    repo: Repository,
    proposal_id: str,
    reviewer_id: str,
    *,
    standing: GoodStanding | None = None,
    reviewers: ReviewerEligibility | None = None,
) -> GovernanceOutcome:
    """PENDING_REVIEW -> OPEN by an eligible reviewer."""
    proposal, band = await _load(repo, proposal_id)
    if proposal.status != "PENDING_REVIEW":
        msg = "Only proposals pending review can be approved"
        raise InvalidStateError(msg)
    await _review_parties(repo, proposal, band, reviewer_id, reviewers or RoleRankReviewers(repo))
    await (standing or DuesStanding(repo)).require_good_standing(band.id, reviewer_id)

    now = datetime.now(UTC)
    await repo.append_review_history(proposal.id, reviewer_id, "APPROVED")
    await repo.transition_status(
        proposal,
        "PENDING_REVIEW",
        "OPEN",
        reviewed_by_id=reviewer_id,
        reviewed_at=now,
        **_voting_window(band, now),
    )
    logger.info("proposal_review_approved id=%s reviewer=%s", proposal.id, reviewer_id)

    url = _proposal_url(band, proposal.id)
    notifications = [
        Notification(
            user_id=proposal.created_by_id,
            type="PROPOSAL_REVIEW_APPROVED",
            title="Proposal Approved for Voting",
            message=f'Your proposal "{proposal.title}" has been approved and is now open '
            "for voting!",
            action_url=url,
            related_id=proposal.id,
        )
    ]
    notifications += await _notify_members(
        repo,
        band.id,
        roles=list(band.voting_roles),
        exclude=proposal.created_by_id,
        type="PROPOSAL_OPEN",
        title="New Proposal Open for Voting",
        message=f'"{proposal.title}" is open for voting in {band.name}',
        action_url=url,
        related_id=proposal.id,
    )
    return GovernanceOutcome(
        proposal=proposal, message="Proposal approved for voting", notifications=notifications
    )


async def reject_review(
    repo: Repository,
    proposal_id: str,
    reviewer_id: str,
    reason: str,
    *,
    standing: GoodStanding | None = None,
    reviewers: ReviewerEligibility | None = None,
    min_reason_length: int = MIN_REASON_LENGTH,
) -> GovernanceOutcome:
    """PENDING_REVIEW -> REJECTED with a recorded reason."""
    proposal, band = await _load(repo, proposal_id)
    if proposal.status != "PENDING_REVIEW":
        msg = "Only proposals pending review can be rejected"
        raise InvalidStateError(msg)
    text = _require_reason(
        reason,
        min_reason_length,
        f"A rejection reason of at least {min_reason_length} characters is required",
    )
    await _review_parties(repo, proposal, band, reviewer_id, reviewers or RoleRankReviewers(repo))
    await (standing or DuesStanding(repo)).require_good_standing(band.id, reviewer_id)

    await repo.append_review_history(proposal.id, reviewer_id, "REJECTED", text)
    await repo.transition_status(
        proposal,
        "PENDING_REVIEW",
        "REJECTED",
        reviewed_by_id=reviewer_id,
        reviewed_at=datetime.now(UTC),
        rejection_reason=text,
    )
    logger.info("proposal_review_rejected id=%s reviewer=%s", proposal.id, reviewer_id)
    notification = Notification(
        user_id=proposal.created_by_id,
        type="PROPOSAL_REVIEW_REJECTED",
        title="Proposal Not Approved",
        message=f'Your proposal "{proposal.title}" was not approved for voting. '
        "Check the feedback and consider resubmitting.",
        action_url=_proposal_url(band, proposal.id),
        priority="HIGH",
        related_id=proposal.id,
    )
    return GovernanceOutcome(
        proposal=proposal, message="Proposal rejected", notifications=[notification]
    )


async def withdraw_proposal(
    repo: Repository, proposal_id: str, actor_id: str
) -> GovernanceOutcome:
    """PENDING_REVIEW -> WITHDRAWN by the author."""
    proposal, band = await _load(repo, proposal_id)
    if proposal.created_by_id != actor_id:
        msg = "Only the author can withdraw a proposal"
        raise ForbiddenError(msg)
    await _active_member(
        repo,
        band.id,
        actor_id,
        "You must be an active member of this band to withdraw proposals",
    )
    if proposal.status != "PENDING_REVIEW":
        msg = "Can only withdraw proposals pending review"
        raise InvalidStateError(msg)
    await repo.transition_status(proposal, "PENDING_REVIEW", "WITHDRAWN")
    logger.info("proposal_withdrawn id=%s", proposal.id)
    return GovernanceOutcome(proposal=proposal, message="Proposal withdrawn")


# --- Editing ---


async def edit_proposal(
    repo: Repository,
    registry: EffectRegistry,
    proposal_id: str,
    actor_id: str,
    changes: dict[str, Any],
    *,
    reason: str | None = None,
    standing: GoodStanding | None = None,
    min_reason_length: int = MIN_REASON_LENGTH,
    reviewers: ReviewerEligibility | None = None,
) -> GovernanceOutcome:
    """Edit a proposal's content.

    Editing an OPEN proposal deletes every vote cast so far. The proposal
    then goes back to review, and eligible reviewers are asked to look at
    it again, or stays OPEN with a new voting window when the band does not
    require review.
    """
    unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
    if unknown:
        msg = f"Fields cannot be edited: {', '.join(unknown)}"
        raise InvalidStateError(msg)

    proposal, band = await _load(repo, proposal_id)
    author = await _active_member(
        repo, band.id, actor_id, "You must be an active member of this band to edit proposals"
    )
    if proposal.created_by_id != actor_id:
        msg = "Only the proposal author can edit it"
        raise ForbiddenError(msg)
    if is_terminal(proposal):
        msg = "Cannot edit proposals that have completed voting"
        raise InvalidStateError(msg)
    if proposal.status != "DRAFT":
        await (standing or DuesStanding(repo)).require_good_standing(band.id, actor_id)
    status_at_edit = proposal.status
    if status_at_edit == "OPEN":
        reason = _require_reason(
            reason,
            min_reason_length,
            f"Edit reason is required (minimum {min_reason_length} characters) "
            "when editing during voting",
        )

    updates: dict[str, Any] = {}
    diff: dict[str, dict[str, Any]] = {}
    for name, value in changes.items():
        if name == "effects":
            value = _stored_effects(value)
        old = getattr(proposal, name)
        if old != value:
            updates[name] = value
            diff[name] = {"old": old, "new": value}
    if not updates:
        return GovernanceOutcome(proposal=proposal, message="No changes detected")

    warnings: list[str] = []
    if {"execution_type", "execution_subtype", "effects"} & set(updates):
        effects = updates.get("effects", proposal.effects)
        warnings = await _validate_or_raise(
            registry,
            repo,
            band.id,
            effects,
            updates.get("execution_type", proposal.execution_type),
            updates.get("execution_subtype", proposal.execution_subtype),
            proposal.id,
        )
        updates["effects_validated_at"] = datetime.now(UTC) if effects is not None else None

    now = datetime.now(UTC)
    if status_at_edit != "DRAFT":
        updates["edit_count"] = proposal.edit_count + 1
        updates["last_edited_at"] = now

    votes_reset = 0
    reset_voters: list[str] = []
    back_to_review = False
    if status_at_edit == "OPEN":
        reset_voters = [v.user_id for v in await repo.get_votes(proposal.id)]
        votes_reset = await repo.delete_votes(proposal.id)
        back_to_review = band.require_proposal_review
        if back_to_review:
            await repo.transition_status(
                proposal,
                "OPEN",
                "PENDING_REVIEW",
                voting_started_at=None,
                voting_ends_at=None,
            )
        else:
            updates.update(_voting_window(band, now))

    await repo.update_proposal(proposal, **updates)
    await repo.append_edit_history(
        proposal.id,
        actor_id,
        status_at_edit,
        changes=diff,
        votes_reset=votes_reset,
        reason=reason,
    )
    logger.info(
        "proposal_edited id=%s status_at_edit=%s fields=%s votes_reset=%d",
        proposal.id,
        status_at_edit,
        ",".join(sorted(diff)),
        votes_reset,
    )

    notifications = [
        Notification(
            user_id=user_id,
            type="PROPOSAL_VOTES_RESET",
            title="Proposal Edited",
            message=f'"{proposal.title}" was edited and your vote was reset. '
            "Please review the changes and vote again.",
            action_url=_proposal_url(band, proposal.id),
            related_id=proposal.id,
        )
        for user_id in reset_voters
        if user_id != actor_id
    ]
    if back_to_review:
        reviewer_ids = await (reviewers or RoleRankReviewers(repo)).get_eligible_reviewers(
            band.id, actor_id, author.role
        )
        notifications.extend(
            Notification(
                user_id=user_id,
                type="PROPOSAL_REVIEW_REQUESTED",
                title="Edited Proposal Needs Review",
                message=f'"{proposal.title}" was edited during voting and needs review again',
                action_url=_proposal_url(band, proposal.id),
                related_id=proposal.id,
            )
            for user_id in reviewer_ids
        )
    message = (
        f"Proposal updated. {votes_reset} vote(s) were reset."
        if votes_reset
        else "Proposal updated"
    )
    return GovernanceOutcome(
        proposal=proposal,
        message=message,
        notifications=notifications,
        warnings=warnings,
        votes_reset=votes_reset,
    )


# --- Administrative close ---


async def administrative_close(
    repo: Repository, proposal_id: str, actor_id: str, reason: str
) -> GovernanceOutcome:
    """Close a live proposal without a tally, e.g. for moderation removal."""
    proposal, band = await _load(repo, proposal_id)
    actor = await _active_member(
        repo, band.id, actor_id, "You must be an active member of this band"
    )
    if actor.role not in MODERATION_ROLES:
        msg = "You do not have permission to close this proposal"
        raise ForbiddenError(msg)
    assert_transition(proposal, "CLOSED")

    await repo.transition_status(
        proposal,
        proposal.status,
        "CLOSED",
        closed_at=datetime.now(UTC),
        closure_reason=reason,
    )
    await repo.record(
        AuditEvent(
            event_type="proposal.closed_administratively",
            band_id=band.id,
            entity_id=proposal.id,
            actor_id=actor_id,
            payload={"reason": reason},
        )
    )
    logger.info("proposal_closed_administratively id=%s by=%s", proposal.id, actor_id)
    notification = Notification(
        user_id=proposal.created_by_id,
        type="PROPOSAL_CLOSED",
        title="Proposal Closed",
        message=f'Your proposal "{proposal.title}" was closed. Reason: {reason}',
        action_url=_proposal_url(band, proposal.id),
        related_id=proposal.id,
    )
    return GovernanceOutcome(
        proposal=proposal, message="Proposal closed", notifications=[notification]
    )


# --- Voting ---


async def cast_vote(
    repo: Repository,
    proposal_id: str,
    user_id: str,
    vote: str,
    comment: str | None = None,
    *,
    standing: GoodStanding | None = None,
) -> GovernanceOutcome:
    """Record or update ``user_id``'s vote. One vote per member per proposal."""
    if vote not in ("YES", "NO", "ABSTAIN"):
        msg = f"Invalid vote {vote!r}"
        raise InvalidStateError(msg)

    proposal, band = await _load(repo, proposal_id)
    if proposal.status != "OPEN":
        msg = "This proposal is no longer open for voting"
        raise InvalidStateError(msg)
    ends = ensure_utc(proposal.voting_ends_at)
    if ends is None or datetime.now(UTC) > ends:
        msg = "Voting period has ended"
        raise InvalidStateError(msg)

    member = await _active_member(
        repo, band.id, user_id, "You are not an active member of this band"
    )
    if member.role not in band.voting_roles:
        msg = "Your role does not have permission to vote"
        raise ForbiddenError(msg)
    if proposal.type == "ADD_FOUNDER" and member.role != "FOUNDER":
        msg = "Only founders can vote on founder nomination proposals"
        raise ForbiddenError(msg)
    await (standing or DuesStanding(repo)).require_good_standing(band.id, user_id)

    if vote == "ABSTAIN" and proposal.type in NO_ABSTAIN_TYPES:
        label = "dissolution" if proposal.type == "DISSOLUTION" else "founder nomination"
        msg = f"Abstaining is not allowed on {label} proposals. You must vote YES or NO."
        raise InvalidStateError(msg)

    row, created = await repo.upsert_vote(proposal.id, user_id, vote, comment)
    logger.info(
        "vote_cast proposal=%s user=%s vote=%s updated=%s",
        proposal.id,
        user_id,
        vote,
        not created,
    )
    return GovernanceOutcome(
        proposal=proposal,
        message="Vote recorded" if created else "Vote updated",
        vote=row,
    )


# --- Close ---


async def _promote_nominee(
    repo: Repository, band_id: str, nominee_user_id: str | None
) -> EffectsExecutionResult:
    try:
        async with repo.transaction():
            if not nominee_user_id:
                msg = "Missing nominee on founder nomination"
                raise EffectExecutionError(msg)
            nominee = await repo.get_member(band_id, nominee_user_id)
            if nominee is None or nominee.status != "ACTIVE":
                msg = f"Nominee {nominee_user_id} is no longer an active member"
                raise EffectExecutionError(msg)
            await repo.update_member(nominee.id, role="FOUNDER")
    except EffectExecutionError as exc:
        logger.warning("founder_promotion_failed band=%s error=%s", band_id, exc)
        return EffectsExecutionResult(success=False, error=str(exc))
    logger.info("founder_promoted band=%s user=%s", band_id, nominee_user_id)
    return EffectsExecutionResult(success=True)


async def close_proposal(
    repo: Repository,
    registry: EffectRegistry,
    proposal_id: str,
    actor_id: str,
    *,
    force_close: bool = False,
    standing: GoodStanding | None = None,
) -> CloseResult:
    """Tally an OPEN proposal, record the decision, and run its consequences.

    Approved GOVERNANCE/ACTION proposals execute their effects; approved
    dissolution and founder-addition proposals run their built-in action
    instead. An execution failure leaves the proposal APPROVED with
    ``execution_result.success`` False.
    """
    proposal, band = await _load(repo, proposal_id)
    if proposal.status != "OPEN":
        msg = "This proposal is already closed"
        raise InvalidStateError(msg)

    actor = await _active_member(
        repo, band.id, actor_id, "You must be an active member of this band to close proposals"
    )
    if proposal.created_by_id != actor_id and actor.role not in CLOSE_ROLES:
        msg = "You do not have permission to close this proposal"
        raise ForbiddenError(msg)
    await (standing or DuesStanding(repo)).require_good_standing(band.id, actor_id)

    now = datetime.now(UTC)
    ends = ensure_utc(proposal.voting_ends_at)
    deadline_passed = ends is not None and now > ends
    if not deadline_passed:
        if force_close and actor.role == FORCE_CLOSE_ROLE:
            logger.info("proposal_force_close id=%s by=%s", proposal.id, actor_id)
        elif force_close:
            msg = "Only founders can force close a proposal before the deadline"
            raise ForbiddenError(msg)
        else:
            deadline = ends.date().isoformat() if ends else "unknown"
            msg = f"Voting period has not ended yet. The deadline is {deadline}"
            raise InvalidStateError(msg)

    # Later writes may expire these rows; read everything needed up front.
    band_id = band.id
    band_name = band.name
    url = _proposal_url(band, proposal.id)
    band_url = f"/bands/{band.slug}"
    title = proposal.title
    description = proposal.description
    proposal_type = proposal.type
    author_id = proposal.created_by_id
    nominee_user_id = proposal.nominee_user_id
    runs_effects = (
        proposal.execution_type in ("GOVERNANCE", "ACTION") and proposal.effects is not None
    )

    eligible = await repo.count_active_members(band_id, roles=list(band.voting_roles))
    votes = await repo.get_votes(proposal.id)
    founder_ids: list[str] = []
    if proposal_type == "ADD_FOUNDER":
        founder_ids = [m.user_id for m in await repo.get_active_members(band_id, ["FOUNDER"])]
    outcome = resolve(
        proposal_type=proposal_type,
        voting_method=band.voting_method,
        quorum_percentage=band.quorum_percentage,
        eligible_voters=eligible,
        votes=votes,
        founder_ids=founder_ids,
    )
    new_status = "APPROVED" if outcome.approved else "REJECTED"
    await repo.transition_status(
        proposal,
        "OPEN",
        new_status,
        closed_at=now,
        closure_reason=outcome.rejection_reason,
    )
    logger.info(
        "proposal_closed id=%s status=%s yes=%d no=%d abstain=%d reason=%s",
        proposal.id,
        new_status,
        outcome.yes_count,
        outcome.no_count,
        outcome.abstain_count,
        outcome.reason_code,
    )

    notifications: list[Notification] = []
    execution_result: EffectsExecutionResult | None = None
    if outcome.approved:
        if proposal_type == "DISSOLUTION":
            try:
                dissolution = await execute_dissolution(
                    repo, band_id, author_id, description or title, proposal_id
                )
            except Exception as exc:  # Decision stands; failure is reported
                logger.exception("dissolution_failed band=%s proposal=%s", band_id, proposal_id)
                execution_result = EffectsExecutionResult(success=False, error=str(exc))
            else:
                execution_result = EffectsExecutionResult(success=True)
                notifications.extend(dissolution.notifications)
        elif proposal_type == "ADD_FOUNDER":
            execution_result = await _promote_nominee(repo, band_id, nominee_user_id)
            if execution_result.success and nominee_user_id:
                notifications.append(
                    Notification(
                        user_id=nominee_user_id,
                        type="BAND_STATUS_CHANGED",
                        title="You are now a Co-Founder!",
                        message=f"The founders unanimously approved your nomination in "
                        f"{band_name}. You now have full founder privileges.",
                        action_url=band_url,
                        priority="HIGH",
                        related_id=proposal_id,
                    )
                )
        elif runs_effects:
            execution_result = await execute_and_log_effects(registry, repo, proposal, actor_id)

    await repo.record(
        AuditEvent(
            event_type="proposal.closed",
            band_id=band_id,
            entity_id=proposal_id,
            actor_id=actor_id,
            payload={
                "status": new_status,
                "reason_code": outcome.reason_code,
                "yes": outcome.yes_count,
                "no": outcome.no_count,
                "abstain": outcome.abstain_count,
                "quorum": outcome.quorum.model_dump(),
                "force_close": force_close and not deadline_passed,
                "execution_success": execution_result.success if execution_result else None,
            },
            created_at=now,
        )
    )

    if outcome.approved:
        result_message = "approved"
    elif outcome.rejection_reason:
        result_message = f"rejected ({outcome.rejection_reason})"
    else:
        result_message = "rejected"
    notifications.extend(
        await _notify_members(
            repo,
            band_id,
            type="PROPOSAL_APPROVED" if outcome.approved else "PROPOSAL_REJECTED",
            title="Proposal Approved" if outcome.approved else "Proposal Rejected",
            message=f'"{title}" was {result_message}',
            action_url=url,
            related_id=proposal_id,
        )
    )
    return CloseResult(
        proposal_id=proposal_id,
        status=new_status,
        message=f"Proposal {result_message}",
        rejection_reason=outcome.rejection_reason,
        reason_code=outcome.reason_code,
        quorum_info=outcome.quorum,
        execution_result=execution_result,
        notifications=notifications,
    )
