"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Lifespan manager — logging, table creation, and the long-lived engine
     components (rails, verifier, coordinator, session registry)
  2. CORS middleware — allows frontend origins to make cross-origin requests
  3. Exception handlers — maps domain errors to HTTP responses
  4. Router registration — mounts all API endpoint groups

Running locally:
    uvicorn fundcard.main:app --reload

Key sessions live in process memory, so run a single worker or pin each
client to one worker.
"""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fundcard.config import settings
from fundcard.database import AsyncSessionLocal, Base, engine
from fundcard.exceptions import register_exception_handlers
from fundcard.logging_config import configure_logging
from fundcard.mirror import LedgerMirror, build_mirror
from fundcard.models.funding_intent import RailKind
from fundcard.rails import PaymentRail, build_rails
from fundcard.routers import cards, fees, funding, sessions
from fundcard.security import SessionRegistry
from fundcard.services.issuance_service import IssuanceCoordinator
from fundcard.services.verification_service import PaymentVerifier


def configure_state(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    rails: dict[RailKind, PaymentRail],
    mirror: LedgerMirror | None = None,
    verifier: PaymentVerifier | None = None,
) -> None:
    """Wire the engine components onto app.state (used by dependencies.py)."""
    app.state.rails = rails
    app.state.mirror = mirror
    app.state.sessions = SessionRegistry()
    app.state.verifier = verifier or PaymentVerifier(session_factory, rails)
    app.state.coordinator = IssuanceCoordinator(session_factory, app.state.verifier, mirror)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
      Configures logging, creates tables if missing (use migrations in
      production), builds rails, verifier and coordinator, and starts the
      expired-session purge.

    Shutdown:
      Stops the session purge, cancels in-flight polling, closes rail and
      mirror HTTP clients, and disposes of the database engine.
    """
    # --- Startup ---
    configure_logging()
    db_path = engine.url.database
    if engine.url.get_backend_name() == "sqlite" and db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    configure_state(app, AsyncSessionLocal, build_rails(), build_mirror())
    purge_task = asyncio.create_task(
        app.state.sessions.purge_periodically(settings.SESSION_PURGE_INTERVAL_SECONDS)
    )
    yield
    # --- Shutdown ---
    purge_task.cancel()
    await asyncio.gather(purge_task, return_exceptions=True)
    await app.state.verifier.close()
    for rail in app.state.rails.values():
        await rail.aclose()
    if app.state.mirror is not None:
        await app.state.mirror.aclose()
    await engine.dispose()


# Create the FastAPI application instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Payment-verified virtual card issuance and funding",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(sessions.router, prefix="/sessions", tags=["Sessions"])
app.include_router(fees.router, prefix="/fees", tags=["Fees"])
app.include_router(funding.router, prefix="/funding-intents", tags=["Funding"])
app.include_router(cards.router, prefix="/cards", tags=["Cards"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness probe for deployment orchestrators."""
    return {"status": "ok", "version": settings.APP_VERSION}
