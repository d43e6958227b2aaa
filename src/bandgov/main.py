"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bandgov.api.governance import router as governance_router
from bandgov.config import Settings
from bandgov.core.finance_effects import build_registry
from bandgov.core.notify import LoggingNotifier
from bandgov.db.engine import create_engine, create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: create engine and tables. The registry is already built and frozen."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    app.state.engine = engine
    logger.info(
        "startup env=%s handlers=%d",
        settings.bandgov_env,
        len(app.state.registry.handler_types),
    )

    yield

    await engine.dispose()
    logger.info("shutdown")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the band governance FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.bandgov_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Band Governance",
        version="0.1.0",
        description="Proposal lifecycle, vote tallying and governance effects for bands",
        docs_url="/docs" if settings.bandgov_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    # Registration finishes here, before any request can be served.
    app.state.registry = build_registry(allow_override=settings.bandgov_allow_handler_override)
    app.state.notifier = LoggingNotifier()

    app.include_router(governance_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.bandgov_env}

    return app


app = create_app()
