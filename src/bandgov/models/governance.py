"""Governance models: effects, validation/execution results, tallies, notifications.

Persisted shapes (``ProposalEffect``) must stay stable across versions: the
``effects`` column and the execution log both store lists of
``{type, payload, order?}`` objects.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ProposalStatus = Literal[
    "DRAFT",
    "PENDING_REVIEW",
    "OPEN",
    "APPROVED",
    "REJECTED",
    "WITHDRAWN",
    "CLOSED",
]

# Statuses a proposal can still move out of (other than by tally).
ACTIVE_PROPOSAL_STATUSES: tuple[str, ...] = ("DRAFT", "PENDING_REVIEW", "OPEN")

ProposalType = Literal[
    "GENERAL",
    "BUDGET",
    "PROJECT",
    "POLICY",
    "MEMBERSHIP",
    "DISSOLUTION",
    "ADD_FOUNDER",
]

ExecutionType = Literal["GOVERNANCE", "PROJECT", "ACTION", "RESOLUTION"]

# Execution types that carry declarative effects.
EFFECT_EXECUTION_TYPES: frozenset[str] = frozenset({"GOVERNANCE", "ACTION"})

VotingMethod = Literal[
    "SIMPLE_MAJORITY",
    "SUPERMAJORITY_66",
    "SUPERMAJORITY_75",
    "UNANIMOUS",
]

VoteChoice = Literal["YES", "NO", "ABSTAIN"]

MemberRole = Literal[
    "FOUNDER",
    "GOVERNOR",
    "MODERATOR",
    "CONDUCTOR",
    "VOTING_MEMBER",
    "OBSERVER",
]

MemberStatus = Literal["ACTIVE", "INVITED", "LEFT", "REMOVED"]

ExecutionStatus = Literal["SUCCESS", "FAILED"]

NotificationPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]


class ProposalEffect(BaseModel):
    """A declarative instruction executed when a GOVERNANCE/ACTION proposal passes."""

    type: str
    payload: dict[str, Any]
    order: int | None = None

    def to_stored(self) -> dict[str, Any]:
        """JSON shape persisted on the proposal and in execution logs."""
        return self.model_dump(mode="json", exclude_none=True)


class EffectsValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class EffectsExecutionResult(BaseModel):
    """Outcome of one execution attempt.

    ``effects_executed`` only ever lists effects that were committed. When a
    handler fails the whole batch is rolled back, so it is empty and
    ``rolled_back`` carries the effects that had been applied before the
    failure, for diagnostics.
    """

    success: bool
    effects_executed: list[ProposalEffect] = Field(default_factory=list)
    rolled_back: list[ProposalEffect] = Field(default_factory=list)
    error: str | None = None


class QuorumInfo(BaseModel):
    required: float
    actual: int
    met: bool
    eligible_voters: int
    total_voters: int


class TallyOutcome(BaseModel):
    """Result of resolving a closed proposal's votes."""

    approved: bool
    yes_count: int = 0
    no_count: int = 0
    abstain_count: int = 0
    yes_percentage: float = 0.0
    reason_code: str | None = None
    rejection_reason: str | None = None
    quorum: QuorumInfo


class Notification(BaseModel):
    """A user-facing notification, dispatched after the decision commits."""

    user_id: str
    type: str
    title: str
    message: str
    action_url: str = ""
    priority: NotificationPriority = "MEDIUM"
    related_id: str | None = None


class AuditEvent(BaseModel):
    """Append-only audit record handed to the audit sink."""

    event_type: str
    band_id: str
    entity_type: str = "Proposal"
    entity_id: str = ""
    actor_id: str | None = None
    payload: dict[str, Any]
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CloseResult(BaseModel):
    """What ``close_proposal`` hands back to the request layer."""

    proposal_id: str
    status: ProposalStatus
    message: str
    rejection_reason: str | None = None
    reason_code: str | None = None
    quorum_info: QuorumInfo
    execution_result: EffectsExecutionResult | None = None
    notifications: list[Notification] = Field(default_factory=list)
