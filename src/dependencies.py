"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.steps.adapters.sensor import PushedStepSensor
from src.steps.session import SessionRegistry, StepSession


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def get_session(request: Request) -> StepSession:
    """Return the running step session.

    The lifespan hook starts one when a local user is configured; without
    it there is nothing to report.
    """
    session = get_registry(request).current
    if session is None or not session.is_running:
        raise HTTPException(status_code=503, detail="No active step session")
    return session


async def get_sensor(request: Request) -> PushedStepSensor:
    sensor: PushedStepSensor | None = getattr(request.app.state, "sensor", None)
    if sensor is None:
        raise HTTPException(status_code=503, detail="Step sensor not configured")
    return sensor


# Annotated shortcuts for route signatures
ActiveSession = Annotated[StepSession, Depends(get_session)]
Sensor = Annotated[PushedStepSensor, Depends(get_sensor)]
AppSettings = Annotated[Settings, Depends(get_settings)]
