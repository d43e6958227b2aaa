"""Repository pattern for database access.

Wraps a SQLAlchemy async session. Execution logs, review/edit history and
audit events are append-only. ``transaction()`` is the one atomic primitive
the governance core relies on: everything written inside it commits or
rolls back together.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from bandgov.core.errors import ConflictError
from bandgov.db.models import (
    AuditEventRow,
    BandFinanceSettingsRow,
    BandRow,
    BucketRow,
    MemberRow,
    ProposalEditHistoryRow,
    ProposalExecutionLogRow,
    ProposalReviewHistoryRow,
    ProposalRow,
    VoteRow,
)
from bandgov.models.governance import AuditEvent


class Repository:
    """Async repository for all database operations."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[None, None]:
        """Run a block atomically inside the current session.

        Uses a SAVEPOINT so the block can roll back on its own without
        discarding work the caller already did in the outer transaction.
        Handlers must write through this repository, never open their own.
        On rollback every loaded row is expired, since bulk status updates
        made inside the block are not tracked by the savepoint.
        """
        try:
            async with self.session.begin_nested():
                yield
        except Exception:  # Re-raise pattern: expire stale state, then propagate
            self.session.expire_all()
            raise
        await self.session.flush()

    # --- Bands / Members ---

    async def create_band(self, name: str, slug: str, **settings: Any) -> BandRow:
        row = BandRow(name=name, slug=slug, **settings)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_band(self, band_id: str) -> BandRow | None:
        return await self.session.get(BandRow, band_id, populate_existing=True)

    async def get_band_by_slug(self, slug: str) -> BandRow | None:
        result = await self.session.execute(select(BandRow).where(BandRow.slug == slug))
        return result.scalar_one_or_none()

    async def update_band(self, band_id: str, **fields: Any) -> None:
        band = await self.session.get(BandRow, band_id)
        if band is None:
            msg = f"Band {band_id} not found"
            raise ValueError(msg)
        for key, value in fields.items():
            setattr(band, key, value)
        await self.session.flush()

    async def add_member(
        self,
        band_id: str,
        user_id: str,
        role: str = "VOTING_MEMBER",
        status: str = "ACTIVE",
        is_treasurer: bool = False,
        dues_status: str | None = None,
    ) -> MemberRow:
        row = MemberRow(
            band_id=band_id,
            user_id=user_id,
            role=role,
            status=status,
            is_treasurer=is_treasurer,
            dues_status=dues_status,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_member(self, band_id: str, user_id: str) -> MemberRow | None:
        stmt = select(MemberRow).where(MemberRow.band_id == band_id, MemberRow.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_member_by_id(self, member_id: str) -> MemberRow | None:
        return await self.session.get(MemberRow, member_id, populate_existing=True)

    async def get_active_members(
        self,
        band_id: str,
        roles: list[str] | None = None,
    ) -> list[MemberRow]:
        """Active members of a band, optionally restricted to a set of roles."""
        stmt = select(MemberRow).where(MemberRow.band_id == band_id, MemberRow.status == "ACTIVE")
        if roles is not None:
            stmt = stmt.where(MemberRow.role.in_(roles))
        result = await self.session.execute(stmt.order_by(MemberRow.created_at))
        return list(result.scalars().all())

    async def get_members(self, band_id: str, statuses: list[str]) -> list[MemberRow]:
        stmt = select(MemberRow).where(MemberRow.band_id == band_id, MemberRow.status.in_(statuses))
        result = await self.session.execute(stmt.order_by(MemberRow.created_at))
        return list(result.scalars().all())

    async def count_active_members(self, band_id: str, roles: list[str] | None = None) -> int:
        stmt = select(func.count(MemberRow.id)).where(
            MemberRow.band_id == band_id, MemberRow.status == "ACTIVE"
        )
        if roles is not None:
            stmt = stmt.where(MemberRow.role.in_(roles))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def update_member(self, member_id: str, **fields: Any) -> None:
        member = await self.session.get(MemberRow, member_id)
        if member is None:
            msg = f"Member {member_id} not found"
            raise ValueError(msg)
        for key, value in fields.items():
            setattr(member, key, value)
        await self.session.flush()

    async def count_treasurers(self, band_id: str) -> int:
        stmt = select(func.count(MemberRow.id)).where(
            MemberRow.band_id == band_id,
            MemberRow.status == "ACTIVE",
            MemberRow.is_treasurer.is_(True),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    # --- Proposals ---

    async def create_proposal(self, **fields: Any) -> ProposalRow:
        row = ProposalRow(**fields)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_proposal(self, proposal_id: str) -> ProposalRow | None:
        return await self.session.get(ProposalRow, proposal_id, populate_existing=True)

    async def get_proposals_for_band(
        self,
        band_id: str,
        statuses: list[str] | None = None,
        proposal_type: str | None = None,
    ) -> list[ProposalRow]:
        stmt = select(ProposalRow).where(ProposalRow.band_id == band_id)
        if statuses is not None:
            stmt = stmt.where(ProposalRow.status.in_(statuses))
        if proposal_type is not None:
            stmt = stmt.where(ProposalRow.type == proposal_type)
        result = await self.session.execute(stmt.order_by(ProposalRow.created_at))
        return list(result.scalars().all())

    async def update_proposal(self, proposal: ProposalRow, **fields: Any) -> ProposalRow:
        for key, value in fields.items():
            setattr(proposal, key, value)
        await self.session.flush()
        return proposal

    async def transition_status(
        self,
        proposal: ProposalRow,
        expected: str,
        new: str,
        **fields: Any,
    ) -> ProposalRow:
        """Move a proposal from ``expected`` to ``new`` status, or raise ConflictError.

        The status check happens in the UPDATE itself, so two concurrent
        writers cannot both win the same transition.
        """
        stmt = (
            update(ProposalRow)
            .where(ProposalRow.id == proposal.id, ProposalRow.status == expected)
            .values(status=new, **fields)
            .execution_options(synchronize_session="evaluate")
        )
        msg = f"Proposal {proposal.id} is no longer {expected}"
        try:
            result = await self.session.execute(stmt)
        except OperationalError as exc:
            # SQLite reports a competing writer as a lock error, not a zero-row update.
            if "locked" not in str(exc.orig):
                raise
            raise ConflictError(msg) from exc
        if result.rowcount != 1:
            raise ConflictError(msg)
        return proposal

    # --- Votes ---

    async def get_vote(self, proposal_id: str, user_id: str) -> VoteRow | None:
        stmt = select(VoteRow).where(VoteRow.proposal_id == proposal_id, VoteRow.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_votes(self, proposal_id: str) -> list[VoteRow]:
        stmt = select(VoteRow).where(VoteRow.proposal_id == proposal_id)
        result = await self.session.execute(stmt.order_by(VoteRow.created_at))
        return list(result.scalars().all())

    async def upsert_vote(
        self,
        proposal_id: str,
        user_id: str,
        vote: str,
        comment: str | None = None,
    ) -> tuple[VoteRow, bool]:
        """Insert or update the (proposal, user) vote. Returns (row, created)."""
        existing = await self.get_vote(proposal_id, user_id)
        if existing is not None:
            existing.vote = vote
            existing.comment = comment
            await self.session.flush()
            return existing, False
        row = VoteRow(proposal_id=proposal_id, user_id=user_id, vote=vote, comment=comment)
        self.session.add(row)
        await self.session.flush()
        return row, True

    async def delete_votes(self, proposal_id: str) -> int:
        result = await self.session.execute(
            delete(VoteRow)
            .where(VoteRow.proposal_id == proposal_id)
            .execution_options(synchronize_session="fetch")
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    # --- Finance ---

    async def get_finance_settings(self, band_id: str) -> BandFinanceSettingsRow | None:
        stmt = select(BandFinanceSettingsRow).where(BandFinanceSettingsRow.band_id == band_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_bucket_management_policy(
        self, band_id: str, policy: str
    ) -> BandFinanceSettingsRow:
        row = await self.get_finance_settings(band_id)
        if row is None:
            row = BandFinanceSettingsRow(band_id=band_id, bucket_management_policy=policy)
            self.session.add(row)
        else:
            row.bucket_management_policy = policy
        await self.session.flush()
        return row

    async def create_bucket(self, **fields: Any) -> BucketRow:
        row = BucketRow(**fields)
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_bucket(self, bucket_id: str) -> BucketRow | None:
        return await self.session.get(BucketRow, bucket_id, populate_existing=True)

    async def get_bucket_by_name(self, band_id: str, name: str) -> BucketRow | None:
        stmt = select(BucketRow).where(BucketRow.band_id == band_id, BucketRow.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_buckets(self, band_id: str) -> list[BucketRow]:
        stmt = select(BucketRow).where(BucketRow.band_id == band_id)
        result = await self.session.execute(stmt.order_by(BucketRow.created_at))
        return list(result.scalars().all())

    async def update_bucket(self, bucket_id: str, **fields: Any) -> None:
        bucket = await self.session.get(BucketRow, bucket_id)
        if bucket is None:
            msg = f"Bucket {bucket_id} not found"
            raise ValueError(msg)
        for key, value in fields.items():
            setattr(bucket, key, value)
        await self.session.flush()

    async def count_operating_buckets(self, band_id: str) -> int:
        stmt = select(func.count(BucketRow.id)).where(
            BucketRow.band_id == band_id,
            BucketRow.type == "OPERATING",
            BucketRow.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    # --- Execution log / history (append-only) ---

    async def append_execution_log(
        self,
        proposal_id: str,
        band_id: str,
        execution_subtype: str,
        effects_submitted: list | dict | None,
        effects_executed: list,
        status: str,
        error_message: str | None = None,
        executed_by_id: str | None = None,
    ) -> ProposalExecutionLogRow:
        row = ProposalExecutionLogRow(
            proposal_id=proposal_id,
            band_id=band_id,
            execution_subtype=execution_subtype,
            effects_submitted=effects_submitted,
            effects_executed=effects_executed,
            status=status,
            error_message=error_message,
            executed_by_id=executed_by_id,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_execution_logs(self, proposal_id: str) -> list[ProposalExecutionLogRow]:
        stmt = select(ProposalExecutionLogRow).where(
            ProposalExecutionLogRow.proposal_id == proposal_id
        )
        result = await self.session.execute(stmt.order_by(ProposalExecutionLogRow.created_at))
        return list(result.scalars().all())

    async def append_review_history(
        self,
        proposal_id: str,
        reviewer_id: str,
        action: str,
        reason: str | None = None,
    ) -> ProposalReviewHistoryRow:
        row = ProposalReviewHistoryRow(
            proposal_id=proposal_id, reviewer_id=reviewer_id, action=action, reason=reason
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_review_history(self, proposal_id: str) -> list[ProposalReviewHistoryRow]:
        stmt = select(ProposalReviewHistoryRow).where(
            ProposalReviewHistoryRow.proposal_id == proposal_id
        )
        result = await self.session.execute(stmt.order_by(ProposalReviewHistoryRow.created_at))
        return list(result.scalars().all())

    async def append_edit_history(
        self,
        proposal_id: str,
        editor_id: str,
        status_at_edit: str,
        changes: dict,
        votes_reset: int,
        reason: str | None = None,
    ) -> ProposalEditHistoryRow:
        row = ProposalEditHistoryRow(
            proposal_id=proposal_id,
            editor_id=editor_id,
            status_at_edit=status_at_edit,
            changes=changes,
            votes_reset=votes_reset,
            reason=reason,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_edit_history(self, proposal_id: str) -> list[ProposalEditHistoryRow]:
        stmt = select(ProposalEditHistoryRow).where(
            ProposalEditHistoryRow.proposal_id == proposal_id
        )
        result = await self.session.execute(stmt.order_by(ProposalEditHistoryRow.created_at))
        return list(result.scalars().all())

    # --- Audit sink ---

    async def record(self, event: AuditEvent) -> AuditEventRow:
        """Append an audit event."""
        row = AuditEventRow(
            event_type=event.event_type,
            band_id=event.band_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            actor_id=event.actor_id,
            payload=event.payload,
            created_at=event.created_at,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_audit_events(
        self,
        band_id: str,
        event_types: list[str] | None = None,
    ) -> list[AuditEventRow]:
        stmt = select(AuditEventRow).where(AuditEventRow.band_id == band_id)
        if event_types is not None:
            stmt = stmt.where(AuditEventRow.event_type.in_(event_types))
        result = await self.session.execute(stmt.order_by(AuditEventRow.created_at))
        return list(result.scalars().all())

    async def has_active_dissolution(self, band_id: str, statuses: list[str]) -> bool:
        stmt = select(func.count(ProposalRow.id)).where(
            ProposalRow.band_id == band_id,
            ProposalRow.type == "DISSOLUTION",
            ProposalRow.status.in_(statuses),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one()) > 0

    async def mark_band_dissolved(
        self,
        band_id: str,
        dissolved_by_id: str,
        reason: str,
        dissolved_at: datetime,
    ) -> None:
        await self.update_band(
            band_id,
            status="INACTIVE",
            dissolved_at=dissolved_at,
            dissolved_by_id=dissolved_by_id,
            dissolution_reason=reason,
        )
