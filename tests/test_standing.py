"""Tests for dues good standing."""

import pytest

from bandgov.core.errors import NotInGoodStandingError
from bandgov.core.governance import cast_vote, create_proposal, submit_proposal
from bandgov.core.standing import (
    DUES_REASONS,
    NO_DUES_RECORD,
    check_good_standing,
    require_good_standing,
)


@pytest.fixture
async def band(make_band):
    return await make_band(dues_enforcement_enabled=True)


async def _set_dues(repo, band_id: str, user_id: str, **fields) -> None:
    member = await repo.get_member(band_id, user_id)
    await repo.update_member(member.id, **fields)


class TestCheckGoodStanding:
    async def test_enforcement_disabled(self, repo, make_band):
        band = await make_band()
        result = await check_good_standing(repo, band.id, "u-member-1")
        assert result.in_good_standing

    async def test_no_dues_record(self, repo, band):
        result = await check_good_standing(repo, band.id, "u-member-1")
        assert not result.in_good_standing
        assert result.reason == NO_DUES_RECORD

    async def test_past_due(self, repo, band):
        await _set_dues(repo, band.id, "u-member-1", dues_status="PAST_DUE")
        result = await check_good_standing(repo, band.id, "u-member-1")
        assert result.reason == DUES_REASONS["PAST_DUE"]

    async def test_active_dues(self, repo, band):
        await _set_dues(repo, band.id, "u-member-1", dues_status="ACTIVE")
        result = await check_good_standing(repo, band.id, "u-member-1")
        assert result.in_good_standing
        assert not result.exempt

    async def test_treasurer_exempt(self, repo, band):
        await _set_dues(repo, band.id, "u-member-1", is_treasurer=True, dues_status="UNPAID")
        result = await check_good_standing(repo, band.id, "u-member-1")
        assert result.in_good_standing
        assert result.exempt

    async def test_non_member(self, repo, band):
        result = await check_good_standing(repo, band.id, "u-stranger")
        assert not result.in_good_standing
        assert result.reason == "You are not a member of this band."

    async def test_open_dissolution_freezes_dues(self, repo, registry, band):
        await _set_dues(repo, band.id, "u-founder", dues_status="ACTIVE")
        outcome = await create_proposal(
            repo,
            registry,
            band_id=band.id,
            author_id="u-founder",
            title="Call it a day",
            proposal_type="DISSOLUTION",
        )
        await submit_proposal(repo, outcome.proposal.id, "u-founder")

        result = await check_good_standing(repo, band.id, "u-member-1")
        assert result.in_good_standing


class TestRequireGoodStanding:
    async def test_raises_with_reason(self, repo, band):
        await _set_dues(repo, band.id, "u-member-1", dues_status="CANCELED")
        with pytest.raises(NotInGoodStandingError, match="canceled"):
            await require_good_standing(repo, band.id, "u-member-1")

    async def test_blocks_voting(self, repo, registry, band):
        await _set_dues(repo, band.id, "u-conductor", dues_status="ACTIVE")
        outcome = await create_proposal(
            repo, registry, band_id=band.id, author_id="u-conductor", title="New van"
        )
        await submit_proposal(repo, outcome.proposal.id, "u-conductor")
        with pytest.raises(NotInGoodStandingError):
            await cast_vote(repo, outcome.proposal.id, "u-member-2", "YES")

    async def test_custom_collaborator(self, repo, registry, make_band):
        class EveryoneButMember2:
            async def require_good_standing(self, band_id: str, user_id: str) -> None:
                if user_id == "u-member-2":
                    raise NotInGoodStandingError("Suspended")

        band = await make_band()
        outcome = await create_proposal(
            repo, registry, band_id=band.id, author_id="u-conductor", title="New van"
        )
        await submit_proposal(repo, outcome.proposal.id, "u-conductor")
        standing = EveryoneButMember2()
        await cast_vote(repo, outcome.proposal.id, "u-member-1", "YES", standing=standing)
        with pytest.raises(NotInGoodStandingError, match="Suspended"):
            await cast_vote(repo, outcome.proposal.id, "u-member-2", "YES", standing=standing)
