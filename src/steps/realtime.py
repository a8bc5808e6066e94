"""Realtime merge consumer for ledger change events.

Subscribes to row-level changes on ``daily_steps`` and feeds each one back
through the reconciliation engine:

    row.user_id == local user  → remote_echo (own write coming back)
    row.user_id == partner     → peer_push   (partner's authoritative value)
    anything else              → ignored

A dropped feed is re-opened after a delay; events published while it was
down are not replayed, and the next event for a row carries its full count.

Delivery order is not guaranteed.  Because peer pushes are last-writer-wins,
an out-of-order event can briefly show a stale partner value until the next
event arrives.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import date, datetime
from typing import Awaitable, Callable

from src.steps.base import (
    LedgerChange,
    Observation,
    ObservationSource,
    RemoteLedger,
    utc_now,
)
from src.steps.sync.engine import ReconciliationEngine

logger = logging.getLogger("stepsync.steps.realtime")


def parse_row_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def change_to_observation(
    change: LedgerChange,
    local_user_id: str,
    partner_id: str | None,
) -> Observation | None:
    """Translate one change event into an observation, or None to skip it.

    Raises:
        ValueError: If the row lacks a usable date or count.
    """
    if change.event_type.upper() not in ("INSERT", "UPDATE"):
        return None

    user_id = str(change.row.get("user_id", ""))
    if user_id == local_user_id:
        source = ObservationSource.remote_echo
    elif partner_id is not None and user_id == str(partner_id):
        source = ObservationSource.peer_push
    else:
        return None

    count = change.row.get("count")
    if count is None:
        raise ValueError("row has no count")
    return Observation(
        source=source,
        user_id=user_id,
        date=parse_row_date(change.row.get("date")),
        count=int(count),
        observed_at=utc_now(),
    )


ChangeHandler = Callable[[LedgerChange], "Awaitable[None] | None"]


class ChangeFeed:
    """Background subscription to one ledger table.

    When the feed raises or ends, the subscription is re-opened after
    ``retry_seconds``; only ``stop`` ends the task.
    """

    def __init__(
        self,
        ledger: RemoteLedger,
        table: str,
        handler: ChangeHandler,
        retry_seconds: float = 5.0,
        event_types: tuple[str, ...] = ("INSERT", "UPDATE"),
    ) -> None:
        self._ledger = ledger
        self._table = table
        self._handler = handler
        self._retry_seconds = retry_seconds
        self._event_types = event_types
        self._task: asyncio.Task[None] | None = None
        self.failures = 0

    @property
    def table(self) -> str:
        return self._table

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Listening for %s changes", self._table)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped listening for %s changes", self._table)

    async def _run(self) -> None:
        while True:
            try:
                async for change in self._ledger.subscribe(self._table, self._event_types):
                    result = self._handler(change)
                    if inspect.isawaitable(result):
                        await result
                logger.warning("%s change feed closed", self._table)
            except Exception as exc:
                self.failures += 1
                logger.error("%s change feed failed: %s", self._table, exc)
            logger.info("Resubscribing to %s changes in %.0fs", self._table, self._retry_seconds)
            await asyncio.sleep(self._retry_seconds)


class RealtimeMergeConsumer:
    """Folds ``daily_steps`` change events into the engine."""

    def __init__(
        self,
        ledger: RemoteLedger,
        engine: ReconciliationEngine,
        partner_id: str | None,
        table: str = "daily_steps",
        retry_seconds: float = 5.0,
    ) -> None:
        self._engine = engine
        self._partner_id = partner_id
        self._table = table
        self.feed = ChangeFeed(ledger, table, self.handle, retry_seconds)
        self.events_applied = 0
        self.events_skipped = 0

    @property
    def is_running(self) -> bool:
        return self.feed.is_running

    def start(self) -> None:
        self.feed.start()

    async def stop(self) -> None:
        await self.feed.stop()

    def handle(self, change: LedgerChange) -> None:
        """Apply one change event; malformed rows are logged and skipped."""
        try:
            observation = change_to_observation(
                change, self._engine.local_user_id, self._partner_id
            )
        except (TypeError, ValueError) as exc:
            self.events_skipped += 1
            logger.warning("Skipping malformed %s change %r: %s", self._table, change.row, exc)
            return
        if observation is None:
            self.events_skipped += 1
            return
        self.events_applied += 1
        self._engine.submit(observation)
