"""Step count endpoints: today's totals, history, streak, sensor and manual input."""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import ActiveSession, Sensor
from src.models.steps import (
    DailyStepsRead,
    HistoryPoint,
    ManualStepsCreate,
    SensorReading,
    StreakRead,
    TodayRead,
)

router = APIRouter(prefix="/steps", tags=["steps"])


@router.get("/today", response_model=TodayRead)
async def get_today(session: ActiveSession) -> Any:
    partner_steps = (
        session.get_canonical_steps(session.partner_id) if session.partner_id else None
    )
    return {
        "date": session.today(),
        "steps": session.get_canonical_steps(session.local_user_id),
        "partner_steps": partner_steps,
        "partner_active": session.is_partner_active(),
        "daily_goal": session.config.streak.daily_goal_steps,
    }


@router.get("/streak", response_model=StreakRead)
async def get_streak(session: ActiveSession, user_id: str | None = Query(default=None)) -> Any:
    user_id = user_id or session.local_user_id
    result = session.get_streak(user_id)
    return {
        "user_id": user_id,
        "current_streak": result.current_streak,
        "highest_streak": result.highest_streak,
        "daily_goal": session.config.streak.daily_goal_steps,
    }


@router.get("/history", response_model=list[HistoryPoint])
async def get_history(
    session: ActiveSession,
    user_id: str | None = Query(default=None),
    days: int = Query(default=7, ge=1, le=30),
) -> Any:
    return [
        {"date": day, "steps": steps}
        for day, steps in session.get_history(user_id, days)
    ]


@router.get("/{user_id}/{day}", response_model=DailyStepsRead)
async def get_day(user_id: str, day: date, session: ActiveSession) -> Any:
    record = session.get_record(user_id, day)
    if record is None:
        raise HTTPException(status_code=404, detail="No steps recorded for that day")
    return record


@router.post("/sensor", status_code=202)
async def push_sensor_reading(body: SensorReading, sensor: Sensor, session: ActiveSession) -> dict:
    """Forward the device's running total to the sensor subscribers."""
    delivered = sensor.push(body.total)
    return {
        "delivered": delivered,
        "steps": session.get_canonical_steps(session.local_user_id),
    }


@router.post("/manual", response_model=DailyStepsRead)
async def add_manual_steps(body: ManualStepsCreate, session: ActiveSession) -> Any:
    record = session.add_manual_steps(body.count)
    if record is None:
        raise HTTPException(status_code=409, detail="Manual steps were not applied")
    return record
