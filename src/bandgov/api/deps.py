"""FastAPI dependency injection for sessions, repository and governance collaborators."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from bandgov.config import Settings
from bandgov.core.effects import EffectRegistry
from bandgov.core.notify import Notifier
from bandgov.db.engine import create_session_factory
from bandgov.db.repository import Repository


async def get_engine(request: Request) -> AsyncEngine:
    """Get the database engine from app state."""
    return request.app.state.engine


async def get_session(
    engine: Annotated[AsyncEngine, Depends(get_engine)],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session."""
    factory = create_session_factory(engine)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:  # Re-raise pattern: must catch all to ensure rollback on any error
            await session.rollback()
            raise


async def get_repo(session: Annotated[AsyncSession, Depends(get_session)]) -> Repository:
    """Get a repository instance bound to the current session."""
    return Repository(session)


async def get_registry(request: Request) -> EffectRegistry:
    """The effect registry built at startup."""
    return request.app.state.registry


async def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


async def get_settings(request: Request) -> Settings:
    return request.app.state.settings


RepoDep = Annotated[Repository, Depends(get_repo)]
RegistryDep = Annotated[EffectRegistry, Depends(get_registry)]
NotifierDep = Annotated[Notifier, Depends(get_notifier)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
