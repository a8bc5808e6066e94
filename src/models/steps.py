"""Pydantic models for step counts, streaks, challenges and nudges."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from src.models.base import StepSyncBase
from src.steps.base import NudgeType


# ---------- Steps ----------

class DailyStepsRead(StepSyncBase):
    user_id: str
    date: date
    count: int = Field(ge=0)
    last_local_update_at: datetime | None = None
    last_synced_at: datetime | None = None


class TodayRead(StepSyncBase):
    date: date
    steps: int = Field(ge=0)
    partner_steps: int | None = None
    partner_active: bool = False
    daily_goal: int


class SensorReading(StepSyncBase):
    """Running total for today as reported by the device sensor."""

    total: int = Field(ge=0, le=1_000_000)


class ManualStepsCreate(StepSyncBase):
    count: int = Field(gt=0, le=100_000)


class StreakRead(StepSyncBase):
    user_id: str
    current_streak: int
    highest_streak: int
    daily_goal: int


class HistoryPoint(StepSyncBase):
    date: date
    steps: int


# ---------- Challenges ----------

class MilestoneRead(StepSyncBase):
    steps: int
    label: str


class ChallengeRead(StepSyncBase):
    challenge_id: str
    title: str
    goal: int
    description: str = ""
    duration_days: int = 7
    milestones: list[MilestoneRead] = Field(default_factory=list)


class ChallengeSelect(StepSyncBase):
    challenge_id: str = Field(min_length=1)


class ChallengeProgressRead(StepSyncBase):
    challenge_id: str
    title: str
    goal: int
    status: str
    aggregated_steps: int
    pct_complete: float = Field(ge=0, le=100)
    next_milestone: MilestoneRead | None = None
    completed_at: datetime | None = None


class CompletedChallengeRead(StepSyncBase):
    assignment_id: str
    challenge: ChallengeRead
    start_date: datetime | None = None
    end_date: datetime | None = None


# ---------- Nudges ----------

class NudgeCreate(StepSyncBase):
    type: NudgeType = NudgeType.motivate
    message: str | None = Field(default=None, max_length=280)


class NudgeRead(StepSyncBase):
    nudge_id: str
    sender_id: str
    receiver_id: str
    type: str
    message: str
    read: bool
    created_at: datetime | None = None


class UnreadNudgesRead(StepSyncBase):
    unread: int = Field(ge=0)
