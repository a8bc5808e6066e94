"""Shared fixtures and in-memory fakes for step engine tests."""

from __future__ import annotations

import asyncio
import itertools
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator

import pytest

from src.steps.base import (
    DailyStepRecord,
    HealthSource,
    LedgerChange,
    LedgerError,
    RemoteLedger,
    StepSensor,
)
from src.steps.config_loader import EngineConfig, load_engine_config

TEST_USER_ID = "user-local"
PARTNER_ID = "user-partner"
COUPLE_ID = "couple-1"
TEST_DATE = date(2026, 2, 23)
TEST_NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class MutableClock:
    """Injectable clock whose time only moves when a test says so."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, days: int = 0) -> datetime:
        self.now += timedelta(seconds=seconds, days=days)
        return self.now


class FakeLedger(RemoteLedger):
    """In-memory ledger with equality filters and a queue-backed change feed.

    Attributes:
        tables:   table name -> list of row dicts.
        upserts:  Copy of every upsert row, in call order.
        fail:     When set, every write raises LedgerError.
        gate:     When set, writes wait on this event before applying.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.upserts: list[dict[str, Any]] = []
        self.updates: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        self.fail = False
        self.fail_queries = False
        self.gate: asyncio.Event | None = None
        self._ids = itertools.count(1)
        self._subscribers: list[asyncio.Queue[LedgerChange | None]] = []

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        self.tables.setdefault(table, []).extend(dict(r) for r in rows)

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.get(table, [])

    async def _before_write(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.fail:
            raise LedgerError("ledger offline")

    async def upsert(self, table: str, row: dict[str, Any], conflict_key: tuple[str, ...]) -> None:
        self.upserts.append(dict(row))
        await self._before_write()
        for existing in self.rows(table):
            if all(existing.get(k) == row[k] for k in conflict_key):
                existing.update(row)
                return
        self.tables.setdefault(table, []).append(dict(row))

    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        if self.fail_queries:
            raise LedgerError("ledger offline")
        rows = [r for r in self.rows(table) if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: str(r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        await self._before_write()
        stored = {"id": f"row-{next(self._ids)}", **row}
        self.tables.setdefault(table, []).append(stored)
        return dict(stored)

    async def update(self, table: str, values: dict[str, Any], filters: dict[str, Any]) -> int:
        self.updates.append((table, dict(values), dict(filters)))
        await self._before_write()
        changed = 0
        for row in self.rows(table):
            if _matches(row, filters):
                row.update(values)
                changed += 1
        return changed

    async def subscribe(
        self, table: str, event_types: tuple[str, ...] = ("INSERT", "UPDATE")
    ) -> AsyncIterator[LedgerChange]:
        queue: asyncio.Queue[LedgerChange | None] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                change = await queue.get()
                if change is None:
                    return
                if change.table == table and change.event_type in event_types:
                    yield change
        finally:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, change: LedgerChange) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(change)

    def close_feed(self) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(None)


def _matches(row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    return all(row.get(k) == v for k, v in (filters or {}).items())


class FakeSensor(StepSensor):
    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.callbacks: list[Any] = []

    def is_available(self) -> bool:
        return self.available

    def subscribe(self, on_step_count_changed):
        self.callbacks.append(on_step_count_changed)
        return lambda: self.callbacks.remove(on_step_count_changed)

    def emit(self, total: int) -> None:
        for callback in list(self.callbacks):
            callback(total)


class FakeHealthSource(HealthSource):
    SOURCE_ID = "fake_health"

    def __init__(self, steps: int = 0, error: Exception | None = None) -> None:
        self.steps = steps
        self.error = error
        self.calls: list[tuple[datetime, datetime]] = []

    async def query_steps_in_range(self, start: datetime, end: datetime) -> int:
        self.calls.append((start, end))
        if self.error is not None:
            raise self.error
        return self.steps


def make_record(day_offset: int, count: int, user_id: str = TEST_USER_ID) -> DailyStepRecord:
    """Record ``day_offset`` days before TEST_DATE."""
    return DailyStepRecord(user_id=user_id, date=TEST_DATE - timedelta(days=day_offset), count=count)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine_config() -> EngineConfig:
    """Load the bundled engine config for tests."""
    return load_engine_config()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def challenge_rows() -> list[dict[str, Any]]:
    return [
        {
            "id": "ch-wall",
            "title": "Great Wall of China",
            "goal": 10000,
            "description": "Walk the wall together",
            "duration_days": 7,
            "milestones": [
                {"steps": 7500, "label": "Watchtower"},
                {"steps": 2500, "label": "Gate"},
            ],
        },
        {"id": "ch-marathon", "title": "Marathon", "goal": 55000, "duration_days": 14},
        {"id": "ch-stroll", "title": "Park Stroll", "goal": 3000, "duration_days": 1},
    ]
