"""Shared test fixtures."""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from bandgov.config import Settings
from bandgov.core.effects import EffectRegistry
from bandgov.core.finance_effects import build_registry
from bandgov.db.engine import create_engine, create_tables, get_session
from bandgov.db.models import BandRow, ProposalRow
from bandgov.db.repository import Repository

# user_id -> role for the default band roster.
DEFAULT_ROSTER = {
    "u-founder": "FOUNDER",
    "u-governor": "GOVERNOR",
    "u-moderator": "MODERATOR",
    "u-conductor": "CONDUCTOR",
    "u-member-1": "VOTING_MEMBER",
    "u-member-2": "VOTING_MEMBER",
}


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults."""
    return Settings(bandgov_env="development", database_url="sqlite+aiosqlite:///:memory:")


@pytest.fixture
async def engine() -> AsyncEngine:
    """Create an in-memory SQLite engine with all tables."""
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
async def repo(engine: AsyncEngine) -> Repository:
    """Yield a repository with a session bound to the in-memory database."""
    async with get_session(engine) as session:
        yield Repository(session)


@pytest.fixture
def registry() -> EffectRegistry:
    return build_registry()


MakeBand = Callable[..., Awaitable[BandRow]]


@pytest.fixture
def make_band(repo: Repository) -> MakeBand:
    """Factory: a band with the default roster (or ``roster``) and any band settings."""
    counter = {"n": 0}

    async def _make(roster: dict[str, str] | None = None, **band_settings) -> BandRow:
        counter["n"] += 1
        band = await repo.create_band(
            "The Late Shift", f"the-late-shift-{counter['n']}", **band_settings
        )
        for user_id, role in (roster or DEFAULT_ROSTER).items():
            await repo.add_member(band.id, user_id, role=role)
        return band

    return _make


@pytest.fixture
def expire_voting(repo: Repository) -> Callable[[ProposalRow], Awaitable[None]]:
    """Move a proposal's voting deadline into the past."""

    async def _expire(proposal: ProposalRow) -> None:
        await repo.update_proposal(
            proposal, voting_ends_at=datetime.now(UTC) - timedelta(minutes=1)
        )

    return _expire
