"""Health check endpoint, public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.dependencies import AppSettings
from src.services.supabase import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("stepsync.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check and reports whether a
    step session is running.
    """
    db_ok = False
    try:
        pool = get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        db_ok = True
    except Exception as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    session = request.app.state.sessions.current
    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "session": {
            "running": bool(session and session.is_running),
            "user_id": session.local_user_id if session else None,
            "mode": ("solo" if session.is_solo else "couple") if session else None,
            "syncs": session.engine.sync_count if session else 0,
            "sync_errors": session.engine.sync_errors if session else 0,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
