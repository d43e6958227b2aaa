"""SQLAlchemy ORM models for the band governance database.

Core tables: bands, members, proposals, votes. Finance tables (buckets,
band_finance_settings) are the targets of governance effects. Execution
logs, review/edit history and audit events are append-only.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


DEFAULT_VOTING_ROLES = ["FOUNDER", "GOVERNOR", "MODERATOR", "CONDUCTOR", "VOTING_MEMBER"]
DEFAULT_PROPOSAL_ROLES = ["FOUNDER", "GOVERNOR", "MODERATOR", "CONDUCTOR"]


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class BandRow(Base):
    __tablename__ = "bands"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    voting_method: Mapped[str] = mapped_column(String(30), default="SIMPLE_MAJORITY")
    voting_period_days: Mapped[int] = mapped_column(Integer, default=7)
    quorum_percentage: Mapped[float] = mapped_column(Float, default=50.0)
    voting_roles: Mapped[list] = mapped_column(JSON, default=lambda: list(DEFAULT_VOTING_ROLES))
    proposal_roles: Mapped[list] = mapped_column(
        JSON, default=lambda: list(DEFAULT_PROPOSAL_ROLES)
    )
    require_proposal_review: Mapped[bool] = mapped_column(Boolean, default=False)
    dues_enforcement_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    dissolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dissolved_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    dissolution_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)


class MemberRow(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    band_id: Mapped[str] = mapped_column(ForeignKey("bands.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="VOTING_MEMBER")
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    is_treasurer: Mapped[bool] = mapped_column(Boolean, default=False)
    # None means no billing record exists for this member.
    dues_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (
        UniqueConstraint("band_id", "user_id", name="uq_member_band_user"),
        Index("ix_members_band_status", "band_id", "status"),
    )


class ProposalRow(Base):
    __tablename__ = "proposals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    band_id: Mapped[str] = mapped_column(ForeignKey("bands.id"), nullable=False)
    created_by_id: Mapped[str] = mapped_column(String(36), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(20), default="GENERAL")
    execution_type: Mapped[str] = mapped_column(String(20), default="PROJECT")
    execution_subtype: Mapped[str | None] = mapped_column(String(100), nullable=True)
    effects: Mapped[list | None] = mapped_column(JSON, nullable=True)
    nominee_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")
    submission_count: Mapped[int] = mapped_column(Integer, default=0)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    voting_started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    voting_ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    reviewed_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    closure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    edit_count: Mapped[int] = mapped_column(Integer, default=0)
    last_edited_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    effects_validated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    effects_executed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    execution_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (Index("ix_proposals_band_status", "band_id", "status"),)


class VoteRow(Base):
    __tablename__ = "votes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    proposal_id: Mapped[str] = mapped_column(ForeignKey("proposals.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    vote: Mapped[str] = mapped_column(String(10), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (UniqueConstraint("proposal_id", "user_id", name="uq_vote_proposal_user"),)


class BucketRow(Base):
    """A finance bucket. Created and changed only through governance effects."""

    __tablename__ = "buckets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    band_id: Mapped[str] = mapped_column(ForeignKey("bands.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    visibility: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by_proposal_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (UniqueConstraint("band_id", "name", name="uq_bucket_band_name"),)


class BandFinanceSettingsRow(Base):
    __tablename__ = "band_finance_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    band_id: Mapped[str] = mapped_column(ForeignKey("bands.id"), nullable=False, unique=True)
    bucket_management_policy: Mapped[str] = mapped_column(String(20), default="OFFICER_TIER")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)


class ProposalExecutionLogRow(Base):
    """One row per execution attempt. Never updated after insert."""

    __tablename__ = "proposal_execution_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    proposal_id: Mapped[str] = mapped_column(ForeignKey("proposals.id"), nullable=False)
    band_id: Mapped[str] = mapped_column(String(36), nullable=False)
    execution_subtype: Mapped[str] = mapped_column(String(100), nullable=False)
    effects_submitted: Mapped[list | dict | None] = mapped_column(JSON, nullable=True)
    effects_executed: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (Index("ix_execution_logs_proposal", "proposal_id"),)


class ProposalReviewHistoryRow(Base):
    __tablename__ = "proposal_review_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    proposal_id: Mapped[str] = mapped_column(ForeignKey("proposals.id"), nullable=False)
    reviewer_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)


class ProposalEditHistoryRow(Base):
    __tablename__ = "proposal_edit_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    proposal_id: Mapped[str] = mapped_column(ForeignKey("proposals.id"), nullable=False)
    editor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status_at_edit: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changes: Mapped[dict] = mapped_column(JSON, default=dict)
    votes_reset: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)


class AuditEventRow(Base):
    """Append-only audit sink."""

    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    band_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), default="Proposal")
    entity_id: Mapped[str] = mapped_column(String(36), default="")
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (
        Index("ix_audit_events_band", "band_id"),
        Index("ix_audit_events_type", "event_type"),
    )
