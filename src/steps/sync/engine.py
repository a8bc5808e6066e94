"""Reconciliation & throttled sync engine.

Owns the canonical day-record store and the only write path to the remote
ledger.  Every producer (sensor, health poll, realtime feed, manual entry)
calls ``submit``; the engine merges the observation, notifies listeners of
the change and, for the local user, schedules a throttled upsert.

The upsert reads the count from the store when it runs, not when it was
scheduled, so a send that races a newer local update still carries the
newest value.

Usage::

    engine = ReconciliationEngine(store, ledger, throttle)
    engine.add_listener(tracker.on_record_changed)
    engine.submit(observation)
    await engine.flush()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import date, datetime, tzinfo
from typing import Any, Awaitable, Callable

from src.steps.base import (
    Clock,
    DailyStepRecord,
    Observation,
    ObservationSource,
    RemoteLedger,
    local_today,
    utc_now,
)
from src.steps.day_store import DayRecordStore
from src.steps.sync.dedup import DAILY_STEPS_CONFLICT_KEY
from src.steps.sync.throttle import SyncThrottle

logger = logging.getLogger("stepsync.steps.sync.engine")

RecordListener = Callable[[DailyStepRecord], "Awaitable[None] | None"]


class ReconciliationEngine:
    """Merge observations and propagate the local user's count to the ledger."""

    def __init__(
        self,
        store: DayRecordStore,
        ledger: RemoteLedger,
        throttle: SyncThrottle,
        steps_table: str = "daily_steps",
        tz: tzinfo | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the engine.

        Args:
            store:       Canonical store; the engine is its only writer.
            ledger:      Remote ledger receiving upserts.
            throttle:    Spacing between upserts for this session.
            steps_table: Ledger table holding one row per (user_id, date).
            tz:          User's local time zone for calendar-day keys.
            clock:       Source of "now".
        """
        self.store = store
        self.ledger = ledger
        self.throttle = throttle
        self.steps_table = steps_table
        self.tz = tz
        self._clock = clock
        self._listeners: list[RecordListener] = []
        self._inflight: set[asyncio.Task[Any]] = set()
        self.sync_count = 0
        self.sync_errors = 0

    @property
    def local_user_id(self) -> str:
        return self.store.local_user_id

    def today(self) -> date:
        return local_today(self._clock(), self.tz)

    def add_listener(self, listener: RecordListener) -> None:
        """Call ``listener(record)`` after every canonical change."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def submit(self, observation: Observation) -> DailyStepRecord | None:
        """Apply one observation and react to the resulting change.

        Returns:
            The record after the merge (unchanged if the policy ignored it).
        """
        previous = self.store.get(observation.user_id, observation.date)
        previous_count = previous.count if previous is not None else None

        record = self.store.apply(observation)
        if record is None or record.count == previous_count:
            return record

        if record.user_id == self.local_user_id:
            self._maybe_sync(record.date)
        self._notify(record)
        return record

    def seed(self, observations: list[Observation]) -> int:
        """Load values read back from the ledger at session start.

        The values are already persisted, so they are recorded as sent and
        neither trigger an upsert nor notify listeners.

        Returns:
            Number of observations that changed the store.
        """
        changed = 0
        for observation in observations:
            previous = self.store.count(observation.user_id, observation.date)
            record = self.store.apply(observation)
            if record is None:
                continue
            if record.user_id == self.local_user_id:
                self.store.mark_sent(record.user_id, record.date, record.count)
            if record.count != previous:
                changed += 1
        return changed

    def add_manual_steps(self, count: int) -> DailyStepRecord | None:
        """Add ``count`` steps to the local user's canonical value for today.

        Treated as a sensor observation carrying ``current + count``.
        """
        if count <= 0:
            return self.store.get(self.local_user_id, self.today())
        day = self.today()
        current = self.store.count(self.local_user_id, day)
        logger.info("Manual entry: +%d steps for %s", count, day)
        return self.submit(
            Observation(
                source=ObservationSource.sensor,
                user_id=self.local_user_id,
                date=day,
                count=current + count,
                observed_at=self._clock(),
            )
        )

    def resync(self) -> bool:
        """Send today's local count if it differs from what was last sent.

        Driven by the health-poll timer so a value coalesced away by the
        throttle still reaches the ledger without a fresh observation.

        Returns:
            True if a send was scheduled.
        """
        day = self.today()
        record = self.store.get(self.local_user_id, day)
        if record is None or record.count == self.store.last_sent(self.local_user_id, day):
            return False
        return self._maybe_sync(day)

    # ------------------------------------------------------------------
    # Outbound writes
    # ------------------------------------------------------------------

    def _maybe_sync(self, day: date) -> bool:
        now = self._clock()
        if not self.throttle.try_acquire(now):
            return False
        self._spawn(self._send(day, now))
        return True

    async def _send(self, day: date, scheduled_at: datetime) -> None:
        try:
            record = self.store.get(self.local_user_id, day)
            if record is None:
                return
            count = record.count
            self.store.mark_sent(self.local_user_id, day, count)
            try:
                await self.ledger.upsert(
                    self.steps_table,
                    {**record.to_row(), "updated_at": scheduled_at},
                    DAILY_STEPS_CONFLICT_KEY,
                )
            except Exception as exc:
                # Next admitted update is the retry.
                self.sync_errors += 1
                logger.warning(
                    "Step sync failed for %s on %s (%d steps): %s",
                    self.local_user_id, day, count, exc,
                )
                return
            self.sync_count += 1
            self.store.mark_synced(self.local_user_id, day, self._clock())
            logger.info("Steps synced: %s %s = %d", self.local_user_id, day, count)
        finally:
            self.throttle.mark_sent()

    # ------------------------------------------------------------------
    # Listeners / task bookkeeping
    # ------------------------------------------------------------------

    def _notify(self, record: DailyStepRecord) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(record)
            except Exception as exc:
                logger.error("Record listener %r failed: %s", listener, exc)
                continue
            if inspect.isawaitable(result):
                self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._inflight.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background step task failed: %s", task.exception())

    async def flush(self) -> None:
        """Wait for every in-flight send and listener task to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding tasks (session teardown)."""
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._inflight.clear()
