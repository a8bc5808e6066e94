"""StepSync API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncGenerator
from zoneinfo import ZoneInfo

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import Settings, get_settings
from src.routers import challenges, health, nudges, steps
from src.services.supabase import PostgresLedger, close_pool, init_pool
from src.steps.adapters import GoogleFitHealthSource, PushedStepSensor
from src.steps.config_loader import get_engine_config
from src.steps.session import SessionRegistry, StepSession

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("stepsync")


def build_session(
    settings: Settings,
    ledger: PostgresLedger,
    sensor: PushedStepSensor,
    http_client: httpx.AsyncClient | None = None,
) -> StepSession:
    """Assemble the step session for the configured user."""
    health_source = None
    if settings.google_fit_access_token:
        health_source = GoogleFitHealthSource(
            access_token=settings.google_fit_access_token,
            http_client=http_client,
            timeout_seconds=settings.health_timeout_seconds,
        )
    return StepSession(
        ledger,
        sensor,
        health_source,
        local_user_id=settings.local_user_id,
        partner_id=settings.partner_id or None,
        couple_id=settings.couple_id or None,
        config=get_engine_config(),
        tz=ZoneInfo(settings.timezone),
    )


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting %s API v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )
    registry = SessionRegistry()
    sensor = PushedStepSensor()
    app.state.sessions = registry
    app.state.sensor = sensor

    async with AsyncExitStack() as stack:
        await init_pool(settings)
        stack.push_async_callback(close_pool)

        if settings.local_user_id:
            http_client = await stack.enter_async_context(
                httpx.AsyncClient(timeout=settings.health_timeout_seconds)
            )
            ledger = PostgresLedger(channel=settings.ledger_channel)
            await registry.replace(build_session(settings, ledger, sensor, http_client))
            stack.push_async_callback(registry.clear)
        else:
            logger.info("LOCAL_USER_ID not set; no step session started")

        yield

    logger.info("StepSync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description=(
            "Daily step tracking for couples: sensor and health-platform "
            "reconciliation, shared streaks, step challenges and partner nudges."
        ),
        version=settings.app_version,
        debug=settings.debug,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(steps.router, prefix=v1_prefix)
    app.include_router(challenges.router, prefix=v1_prefix)
    app.include_router(nudges.router, prefix=v1_prefix)

    return app


app = create_app()
