"""Canonical data models and capability contracts for the step engine.

Every input (device sensor, platform health query, ledger change feed) is
reduced to an ``Observation`` and folded into ``DailyStepRecord`` values by
the day-record store.  The ABCs at the bottom of this module describe the
external collaborators the engine consumes; concrete implementations live in
``src.steps.adapters`` and ``src.services.supabase``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from typing import Any, AsyncIterator, Callable

logger = logging.getLogger("stepsync.steps")

#: Callback a sensor invokes with the running total for the current day.
StepCountCallback = Callable[[int], None]

#: Handle returned by ``StepSensor.subscribe``; calling it unsubscribes.
Unsubscribe = Callable[[], None]

#: Source of "now" used throughout the engine (injectable for tests).
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_today(now: datetime, tz: tzinfo | None = None) -> date:
    """Return the calendar date of ``now`` in the user's local time zone."""
    if tz is not None:
        now = now.astimezone(tz)
    return now.date()


def start_of_local_day(now: datetime, tz: tzinfo | None = None) -> datetime:
    """Return local midnight for the day containing ``now``."""
    if tz is not None:
        now = now.astimezone(tz)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce a ledger timestamp (datetime or ISO string) to a datetime."""
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Could not parse timestamp value: %r", value)
        return None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class HealthSourceError(RuntimeError):
    """Base class for platform health query failures."""


class HealthPermissionError(HealthSourceError):
    """The user has not granted read access to step data."""


class HealthUnavailableError(HealthSourceError):
    """The health platform is missing or not reachable right now."""


class LedgerError(RuntimeError):
    """A read or write against the remote ledger failed."""


# ---------------------------------------------------------------------------
# Observations and day records
# ---------------------------------------------------------------------------


class ObservationSource(str, Enum):
    sensor = "sensor"
    health_api = "health_api"
    remote_echo = "remote_echo"
    peer_push = "peer_push"


@dataclass(frozen=True)
class Observation:
    """One source's report of a step count.

    Observations are consumed by ``DayRecordStore.apply`` and discarded.

    Attributes:
        source:      Which producer emitted the value.
        user_id:     User the count belongs to.
        date:        Calendar day (user's local date).
        count:       Total steps for that day as reported by the source.
        observed_at: When the source produced the value.
    """

    source: ObservationSource
    user_id: str
    date: date
    count: int
    observed_at: datetime = field(default_factory=utc_now)


@dataclass
class DailyStepRecord:
    """Canonical step count for one user on one calendar day.

    Attributes:
        user_id:               Owner of the record.
        date:                  Calendar day (user's local date).
        count:                 Canonical step count, never negative.
        last_local_update_at:  When the count last changed in this process.
        last_synced_at:        When the count was last sent to the ledger.
    """

    user_id: str
    date: date
    count: int = 0
    last_local_update_at: datetime | None = None
    last_synced_at: datetime | None = None

    def to_row(self) -> dict[str, Any]:
        """Shape written to the ``daily_steps`` ledger table."""
        return {
            "user_id": self.user_id,
            "date": self.date,
            "count": self.count,
        }


@dataclass
class StreakResult:
    current_streak: int = 0
    highest_streak: int = 0


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------


class ChallengeStatus(str, Enum):
    active = "active"
    paused = "paused"
    completed = "completed"


class ChallengeKind(str, Enum):
    couple = "couple"
    solo = "solo"


@dataclass
class Milestone:
    steps: int
    label: str


@dataclass
class Challenge:
    """A catalogue entry users can pick as their active goal.

    Attributes:
        challenge_id:  Catalogue identifier.
        title:         Display name (e.g. "Great Wall of China").
        goal:          Steps required to complete the challenge.
        description:   Short explanation shown in the picker.
        duration_days: Suggested duration.
        milestones:    Checkpoints along the way, ascending by steps.
    """

    challenge_id: str
    title: str
    goal: int
    description: str = ""
    duration_days: int = 7
    milestones: list[Milestone] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Challenge":
        milestones = [
            Milestone(steps=int(m.get("steps", 0)), label=str(m.get("label", "")))
            for m in (row.get("milestones") or [])
        ]
        milestones.sort(key=lambda m: m.steps)
        return cls(
            challenge_id=str(row.get("id") or row.get("challenge_id")),
            title=row.get("title") or row.get("name") or "",
            goal=int(row.get("goal") or row.get("total_steps") or 0),
            description=row.get("description") or "",
            duration_days=int(row.get("duration_days") or 7),
            milestones=milestones,
        )


@dataclass
class ChallengeAssignment:
    """A challenge attached to a couple (or a solo user) with its remote status."""

    assignment_id: str
    owner_id: str
    challenge: Challenge
    status: ChallengeStatus = ChallengeStatus.active
    start_date: datetime | None = None
    end_date: datetime | None = None


@dataclass
class ChallengeProgress:
    """Derived progress of the active challenge, ready for presentation.

    Attributes:
        challenge_id:     Catalogue identifier.
        title:            Display name.
        goal:             Step threshold.
        status:           Mirrored remote status.
        aggregated_steps: Steps counted toward the goal.
        pct_complete:     0–100, capped.
        next_milestone:   First milestone not yet reached, if any.
        completed_at:     Timestamp of the completion write.
    """

    challenge_id: str
    title: str
    goal: int
    status: ChallengeStatus
    aggregated_steps: int = 0
    pct_complete: float = 0.0
    next_milestone: Milestone | None = None
    completed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Nudges
# ---------------------------------------------------------------------------


class NudgeType(str, Enum):
    poke = "poke"
    heart = "heart"
    wave = "wave"
    motivate = "motivate"
    challenge = "challenge"
    cheer = "cheer"
    one_k = "one_k"


@dataclass
class Nudge:
    """A short message one partner sends the other.

    Attributes:
        nudge_id:    Ledger row id.
        sender_id:   User who sent it.
        receiver_id: User it was sent to.
        type:        Kind of nudge, drives the icon shown to the receiver.
        message:     Text shown with the nudge.
        read:        Whether the receiver has marked it read.
        created_at:  When the ledger stored it.
    """

    nudge_id: str
    sender_id: str
    receiver_id: str
    type: NudgeType = NudgeType.poke
    message: str = ""
    read: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Nudge":
        try:
            nudge_type = NudgeType(row.get("type") or NudgeType.poke.value)
        except ValueError:
            nudge_type = NudgeType.poke
        return cls(
            nudge_id=str(row.get("id")),
            sender_id=str(row.get("sender_id")),
            receiver_id=str(row.get("receiver_id")),
            type=nudge_type,
            message=row.get("message") or "",
            read=bool(row.get("read")),
            created_at=parse_timestamp(row.get("created_at")),
        )


# ---------------------------------------------------------------------------
# Ledger change feed
# ---------------------------------------------------------------------------


@dataclass
class LedgerChange:
    """One row-level change notification from the remote ledger."""

    event_type: str  # INSERT | UPDATE | DELETE
    table: str
    row: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Capability contracts
# ---------------------------------------------------------------------------


class StepSensor(ABC):
    """On-device motion sensor.

    Emits monotonically non-decreasing totals for the current calendar day
    and resets to 0 at local midnight.
    """

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if the device has a usable step sensor."""

    @abstractmethod
    def subscribe(self, on_step_count_changed: StepCountCallback) -> Unsubscribe:
        """Register a callback and return the handle that removes it."""


class HealthSource(ABC):
    """Platform health-data service queried on demand."""

    #: Slug used in logs.
    SOURCE_ID: str = "unknown"

    @abstractmethod
    async def query_steps_in_range(self, start: datetime, end: datetime) -> int:
        """Return the step total recorded between ``start`` and ``end``.

        Raises:
            HealthPermissionError: Read access was not granted.
            HealthUnavailableError: The platform is missing or unreachable.
        """


class RemoteLedger(ABC):
    """Persisted, eventually-consistent store behind the engine."""

    @abstractmethod
    async def upsert(
        self, table: str, row: dict[str, Any], conflict_key: tuple[str, ...]
    ) -> None:
        """Insert ``row`` or update the existing row matching ``conflict_key``."""

    @abstractmethod
    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return rows whose columns equal every value in ``filters``."""

    @abstractmethod
    def subscribe(
        self, table: str, event_types: tuple[str, ...] = ("INSERT", "UPDATE")
    ) -> AsyncIterator[LedgerChange]:
        """Stream row-level changes for ``table``."""

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert ``row`` and return it as stored (generated ``id`` included)."""

    @abstractmethod
    async def update(
        self, table: str, values: dict[str, Any], filters: dict[str, Any]
    ) -> int:
        """Set ``values`` on rows matching every filter; return rows changed.

        Filters are evaluated by the ledger at write time, which is what makes
        state-conditioned writes (``status = 'active'``) race-free.
        """
