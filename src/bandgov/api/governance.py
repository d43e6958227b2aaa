"""Governance API endpoints: bands, proposals, review, votes, close.

Thin layer: each endpoint calls one core operation, commits, and only then
dispatches the notifications the operation returned.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from bandgov.api.deps import NotifierDep, RegistryDep, RepoDep, SettingsDep
from bandgov.core.effects import EffectContext, validate_effects
from bandgov.core.errors import EffectsInvalidError, GovernanceError
from bandgov.core.governance import (
    administrative_close,
    approve_review,
    cast_vote,
    close_proposal,
    create_proposal,
    edit_proposal,
    reject_review,
    resubmit_proposal,
    submit_proposal,
    withdraw_proposal,
)
from bandgov.core.notify import Notifier, dispatch_notifications
from bandgov.db.models import DEFAULT_PROPOSAL_ROLES, DEFAULT_VOTING_ROLES, ProposalRow
from bandgov.db.repository import Repository
from bandgov.models.governance import (
    ExecutionType,
    MemberRole,
    Notification,
    ProposalStatus,
    ProposalType,
    VoteChoice,
    VotingMethod,
)

router = APIRouter(prefix="/api", tags=["governance"])


# --- Request Models ---


class CreateBandRequest(BaseModel):
    name: str
    slug: str
    voting_method: VotingMethod = "SIMPLE_MAJORITY"
    voting_period_days: int | None = Field(default=None, gt=0)
    quorum_percentage: float = Field(default=50.0, ge=0, le=100)
    voting_roles: list[MemberRole] = Field(default_factory=lambda: list(DEFAULT_VOTING_ROLES))
    proposal_roles: list[MemberRole] = Field(default_factory=lambda: list(DEFAULT_PROPOSAL_ROLES))
    require_proposal_review: bool = False
    dues_enforcement_enabled: bool = False


class AddMemberRequest(BaseModel):
    user_id: str
    role: MemberRole = "VOTING_MEMBER"
    is_treasurer: bool = False


class CreateProposalRequest(BaseModel):
    author_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    type: ProposalType = "GENERAL"
    execution_type: ExecutionType = "PROJECT"
    execution_subtype: str | None = None
    # Raw entries; structure is checked by the effects validator.
    effects: Any = None
    nominee_user_id: str | None = None


class ActorRequest(BaseModel):
    actor_id: str


class ResubmitRequest(BaseModel):
    actor_id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    effects: Any = None


class RejectReviewRequest(BaseModel):
    reviewer_id: str
    reason: str


class EditProposalRequest(BaseModel):
    actor_id: str
    reason: str | None = None
    title: str | None = None
    description: str | None = None
    execution_type: ExecutionType | None = None
    execution_subtype: str | None = None
    effects: Any = None


class CastVoteRequest(BaseModel):
    user_id: str
    vote: VoteChoice
    comment: str | None = None


class CloseProposalRequest(BaseModel):
    actor_id: str
    force_close: bool = False


class AdminCloseRequest(BaseModel):
    actor_id: str
    reason: str = Field(min_length=1)


class ValidateEffectsRequest(BaseModel):
    band_id: str
    execution_type: ExecutionType
    execution_subtype: str | None = None
    # Left untyped so malformed shapes reach the validator and get its error.
    effects: Any = None


# --- Helpers ---


@contextmanager
def _governance_errors() -> Iterator[None]:
    """Map governance failures to HTTP errors."""
    try:
        yield
    except EffectsInvalidError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"message": exc.message, "errors": exc.errors},
        ) from exc
    except GovernanceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


async def _commit_and_notify(
    repo: Repository, notifier: Notifier, notifications: list[Notification]
) -> None:
    await repo.session.commit()
    await dispatch_notifications(notifier, notifications)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _proposal_dict(proposal: ProposalRow) -> dict[str, Any]:
    return {
        "id": proposal.id,
        "band_id": proposal.band_id,
        "created_by_id": proposal.created_by_id,
        "title": proposal.title,
        "description": proposal.description,
        "type": proposal.type,
        "execution_type": proposal.execution_type,
        "execution_subtype": proposal.execution_subtype,
        "effects": proposal.effects,
        "nominee_user_id": proposal.nominee_user_id,
        "status": proposal.status,
        "submission_count": proposal.submission_count,
        "edit_count": proposal.edit_count,
        "submitted_at": _iso(proposal.submitted_at),
        "voting_started_at": _iso(proposal.voting_started_at),
        "voting_ends_at": _iso(proposal.voting_ends_at),
        "closed_at": _iso(proposal.closed_at),
        "rejection_reason": proposal.rejection_reason,
        "closure_reason": proposal.closure_reason,
        "effects_validated_at": _iso(proposal.effects_validated_at),
        "effects_executed_at": _iso(proposal.effects_executed_at),
        "execution_error": proposal.execution_error,
    }


# --- Bands ---


@router.post("/bands")
async def api_create_band(body: CreateBandRequest, repo: RepoDep, settings: SettingsDep) -> dict:
    """Create a band with its governance configuration."""
    if await repo.get_band_by_slug(body.slug) is not None:
        raise HTTPException(status_code=409, detail="Slug already in use")
    fields = body.model_dump(exclude={"name", "slug"})
    if fields["voting_period_days"] is None:
        fields["voting_period_days"] = settings.bandgov_default_voting_period_days
    band = await repo.create_band(body.name, body.slug, **fields)
    return {"data": {"id": band.id, "name": band.name, "slug": band.slug}}


@router.post("/bands/{band_id}/members")
async def api_add_member(band_id: str, body: AddMemberRequest, repo: RepoDep) -> dict:
    if await repo.get_band(band_id) is None:
        raise HTTPException(status_code=404, detail="Band not found")
    if await repo.get_member(band_id, body.user_id) is not None:
        raise HTTPException(status_code=409, detail="Already a member")
    member = await repo.add_member(
        band_id, body.user_id, role=body.role, is_treasurer=body.is_treasurer
    )
    return {"data": {"id": member.id, "user_id": member.user_id, "role": member.role}}


# --- Proposals ---


@router.get("/bands/{band_id}/proposals")
async def api_list_proposals(
    band_id: str,
    repo: RepoDep,
    status: ProposalStatus | None = None,
) -> dict:
    """List a band's proposals, optionally filtered by status."""
    proposals = await repo.get_proposals_for_band(
        band_id, statuses=[status] if status else None
    )
    return {"data": [_proposal_dict(p) for p in proposals]}


@router.post("/bands/{band_id}/proposals")
async def api_create_proposal(
    band_id: str,
    body: CreateProposalRequest,
    repo: RepoDep,
    registry: RegistryDep,
) -> dict:
    """Create a DRAFT proposal. Effects are validated before anything is stored."""
    with _governance_errors():
        outcome = await create_proposal(
            repo,
            registry,
            band_id=band_id,
            author_id=body.author_id,
            title=body.title,
            description=body.description,
            proposal_type=body.type,
            execution_type=body.execution_type,
            execution_subtype=body.execution_subtype,
            effects=body.effects,
            nominee_user_id=body.nominee_user_id,
        )
    return {"data": _proposal_dict(outcome.proposal), "warnings": outcome.warnings}


@router.get("/proposals/{proposal_id}")
async def api_get_proposal(proposal_id: str, repo: RepoDep) -> dict:
    proposal = await repo.get_proposal(proposal_id)
    if proposal is None:
        raise HTTPException(status_code=404, detail="Proposal not found")
    votes = await repo.get_votes(proposal_id)
    data = _proposal_dict(proposal)
    data["votes"] = [{"user_id": v.user_id, "vote": v.vote, "comment": v.comment} for v in votes]
    return {"data": data}


@router.post("/proposals/{proposal_id}/submit")
async def api_submit_proposal(
    proposal_id: str,
    body: ActorRequest,
    repo: RepoDep,
    notifier: NotifierDep,
    settings: SettingsDep,
) -> dict:
    with _governance_errors():
        outcome = await submit_proposal(
            repo,
            proposal_id,
            body.actor_id,
            max_resubmissions=settings.bandgov_max_resubmissions,
        )
    await _commit_and_notify(repo, notifier, outcome.notifications)
    return {"data": _proposal_dict(outcome.proposal), "message": outcome.message}


@router.post("/proposals/{proposal_id}/resubmit")
async def api_resubmit_proposal(
    proposal_id: str,
    body: ResubmitRequest,
    repo: RepoDep,
    registry: RegistryDep,
    notifier: NotifierDep,
    settings: SettingsDep,
) -> dict:
    with _governance_errors():
        outcome = await resubmit_proposal(
            repo,
            registry,
            proposal_id,
            body.actor_id,
            title=body.title,
            description=body.description,
            effects=body.effects,
            max_resubmissions=settings.bandgov_max_resubmissions,
        )
    await _commit_and_notify(repo, notifier, outcome.notifications)
    return {"data": _proposal_dict(outcome.proposal), "message": outcome.message}


@router.post("/proposals/{proposal_id}/review/approve")
async def api_approve_review(
    proposal_id: str, body: ActorRequest, repo: RepoDep, notifier: NotifierDep
) -> dict:
    with _governance_errors():
        outcome = await approve_review(repo, proposal_id, body.actor_id)
    await _commit_and_notify(repo, notifier, outcome.notifications)
    return {"data": _proposal_dict(outcome.proposal), "message": outcome.message}


@router.post("/proposals/{proposal_id}/review/reject")
async def api_reject_review(
    proposal_id: str,
    body: RejectReviewRequest,
    repo: RepoDep,
    notifier: NotifierDep,
    settings: SettingsDep,
) -> dict:
    with _governance_errors():
        outcome = await reject_review(
            repo,
            proposal_id,
            body.reviewer_id,
            body.reason,
            min_reason_length=settings.bandgov_min_reason_length,
        )
    await _commit_and_notify(repo, notifier, outcome.notifications)
    return {"data": _proposal_dict(outcome.proposal), "message": outcome.message}


@router.post("/proposals/{proposal_id}/withdraw")
async def api_withdraw_proposal(proposal_id: str, body: ActorRequest, repo: RepoDep) -> dict:
    with _governance_errors():
        outcome = await withdraw_proposal(repo, proposal_id, body.actor_id)
    return {"data": _proposal_dict(outcome.proposal), "message": outcome.message}


@router.patch("/proposals/{proposal_id}")
async def api_edit_proposal(
    proposal_id: str,
    body: EditProposalRequest,
    repo: RepoDep,
    registry: RegistryDep,
    notifier: NotifierDep,
    settings: SettingsDep,
) -> dict:
    """Edit a proposal. Editing while OPEN resets every vote."""
    changes = body.model_dump(exclude={"actor_id", "reason"}, exclude_unset=True)
    with _governance_errors():
        outcome = await edit_proposal(
            repo,
            registry,
            proposal_id,
            body.actor_id,
            changes,
            reason=body.reason,
            min_reason_length=settings.bandgov_min_reason_length,
        )
    await _commit_and_notify(repo, notifier, outcome.notifications)
    return {
        "data": _proposal_dict(outcome.proposal),
        "message": outcome.message,
        "votes_reset": outcome.votes_reset,
        "warnings": outcome.warnings,
    }


@router.post("/proposals/{proposal_id}/votes")
async def api_cast_vote(proposal_id: str, body: CastVoteRequest, repo: RepoDep) -> dict:
    with _governance_errors():
        outcome = await cast_vote(repo, proposal_id, body.user_id, body.vote, body.comment)
    if outcome.vote is None:
        raise HTTPException(status_code=500, detail="Vote was not recorded")
    return {
        "data": {"user_id": outcome.vote.user_id, "vote": outcome.vote.vote},
        "message": outcome.message,
    }


@router.post("/proposals/{proposal_id}/close")
async def api_close_proposal(
    proposal_id: str,
    body: CloseProposalRequest,
    repo: RepoDep,
    registry: RegistryDep,
    notifier: NotifierDep,
) -> dict:
    """Tally and close an OPEN proposal. Approved effects run in the same request."""
    with _governance_errors():
        result = await close_proposal(
            repo, registry, proposal_id, body.actor_id, force_close=body.force_close
        )
    await _commit_and_notify(repo, notifier, result.notifications)
    return {"data": result.model_dump(mode="json", exclude={"notifications"})}


@router.post("/proposals/{proposal_id}/admin-close")
async def api_admin_close(
    proposal_id: str, body: AdminCloseRequest, repo: RepoDep, notifier: NotifierDep
) -> dict:
    with _governance_errors():
        outcome = await administrative_close(repo, proposal_id, body.actor_id, body.reason)
    await _commit_and_notify(repo, notifier, outcome.notifications)
    return {"data": _proposal_dict(outcome.proposal), "message": outcome.message}


@router.get("/proposals/{proposal_id}/execution-logs")
async def api_execution_logs(proposal_id: str, repo: RepoDep) -> dict:
    logs = await repo.get_execution_logs(proposal_id)
    return {
        "data": [
            {
                "id": log.id,
                "status": log.status,
                "execution_subtype": log.execution_subtype,
                "effects_submitted": log.effects_submitted,
                "effects_executed": log.effects_executed,
                "error_message": log.error_message,
                "created_at": _iso(log.created_at),
            }
            for log in logs
        ]
    }


# --- Effects ---


@router.post("/effects/validate")
async def api_validate_effects(
    body: ValidateEffectsRequest, repo: RepoDep, registry: RegistryDep
) -> dict:
    """Dry-run effects validation, as done at proposal creation."""
    context = EffectContext(band_id=body.band_id, repo=repo)
    result = await validate_effects(
        registry, body.effects, body.execution_type, body.execution_subtype, context
    )
    return {"data": result.model_dump()}
