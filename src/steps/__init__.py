"""StepSync daily step engine.

This package reconciles step counts from several sources into one canonical
value per user per day, propagates the local user's value to the remote
ledger, and derives streaks and challenge progress from the result.
Partners can also nudge each other through the same ledger.

Subpackages:
    adapters/  — Sensor and platform-health inputs (Google Fit, pushed sensor)
    sync/      — Write throttle, reconciliation engine, upsert helpers

Core modules:
    base          — Data models and the StepSensor / HealthSource / RemoteLedger ABCs
    day_store     — Canonical per-(user, date) records and the merge policy
    realtime      — Resubscribing ledger change feeds and the step merge consumer
    nudges        — Partner nudges: send, inbox, unread count, mark-read
    streaks       — Streak and chart derivation
    challenges    — Challenge completion state machine
    session       — Per-user lifecycle wiring
    config_loader — Load/validate/hot-reload engine_config.yaml
"""

from src.steps.base import (
    Challenge,
    ChallengeProgress,
    DailyStepRecord,
    HealthSource,
    Nudge,
    NudgeType,
    Observation,
    ObservationSource,
    RemoteLedger,
    StepSensor,
    StreakResult,
)
from src.steps.config_loader import EngineConfig, get_engine_config

__all__ = [
    "Observation",
    "ObservationSource",
    "DailyStepRecord",
    "StreakResult",
    "Challenge",
    "ChallengeProgress",
    "Nudge",
    "NudgeType",
    "StepSensor",
    "HealthSource",
    "RemoteLedger",
    "EngineConfig",
    "get_engine_config",
]
