"""Per-user step session: wires sources, engine, change feeds, challenges and nudges.

A session exists while a user is signed in.  It owns the input
subscriptions (sensor callback, health poll timer, the daily_steps and
nudges change feeds) and tears all of them down together on ``stop``,
including when ``start`` fails part-way through.

Usage::

    async with StepSession(ledger, sensor, health, local_user_id="u1",
                           partner_id="u2", couple_id="c1") as session:
        session.get_canonical_steps("u1")
        session.get_streak()
        session.get_challenge_progress()
        await session.send_nudge(NudgeType.cheer)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from datetime import date, timedelta, tzinfo
from typing import Any

from src.steps.adapters.health import PlatformHealthAdapter
from src.steps.adapters.sensor import DeviceSensorAdapter
from src.steps.base import (
    Challenge,
    ChallengeKind,
    ChallengeProgress,
    Clock,
    DailyStepRecord,
    HealthSource,
    Nudge,
    NudgeType,
    Observation,
    ObservationSource,
    RemoteLedger,
    StepSensor,
    StreakResult,
    utc_now,
)
from src.steps.challenges import ChallengeTracker, CompletionCallback, aggregate_steps
from src.steps.config_loader import EngineConfig, get_engine_config
from src.steps.day_store import DayRecordStore
from src.steps.nudges import NudgeCallback, NudgeService
from src.steps.realtime import ChangeFeed, RealtimeMergeConsumer, parse_row_date
from src.steps.streaks import compute_streak, history_for_chart
from src.steps.sync.engine import ReconciliationEngine
from src.steps.sync.throttle import SyncThrottle

logger = logging.getLogger("stepsync.steps.session")

# Upper bound on waiting for in-flight writes during teardown.
_DRAIN_TIMEOUT_SECONDS = 5.0


class StepSession:
    """Everything the engine needs for one signed-in user."""

    def __init__(
        self,
        ledger: RemoteLedger,
        sensor: StepSensor | None,
        health: HealthSource | None,
        local_user_id: str,
        partner_id: str | None = None,
        couple_id: str | None = None,
        config: EngineConfig | None = None,
        tz: tzinfo | None = None,
        clock: Clock = utc_now,
        on_challenge_completed: CompletionCallback | None = None,
        on_nudge_received: NudgeCallback | None = None,
    ) -> None:
        cfg = config or get_engine_config()
        self.config = cfg
        self.ledger = ledger
        self.local_user_id = local_user_id
        self.partner_id = partner_id
        self.couple_id = couple_id
        self.tz = tz
        self._clock = clock

        self.store = DayRecordStore(local_user_id, cfg.history.days, clock)
        self.throttle = SyncThrottle(cfg.sync.throttle_seconds)
        self.engine = ReconciliationEngine(
            self.store, ledger, self.throttle, cfg.ledger.steps_table, tz, clock
        )

        if partner_id and couple_id:
            kind, owner, table = ChallengeKind.couple, couple_id, cfg.ledger.assignments_table
        else:
            kind, owner, table = ChallengeKind.solo, local_user_id, cfg.ledger.solo_assignments_table
        self.challenges = ChallengeTracker(
            ledger,
            owner,
            kind,
            challenges_table=cfg.ledger.challenges_table,
            assignments_table=table,
            on_completed=on_challenge_completed,
            clock=clock,
        )

        self.sensor_adapter = (
            DeviceSensorAdapter(sensor, local_user_id, self.engine.submit, tz, clock)
            if sensor is not None else None
        )
        self.health_adapter = (
            PlatformHealthAdapter(
                health,
                local_user_id,
                self.engine.submit,
                interval_seconds=cfg.health_poll.interval_seconds,
                on_tick=self.engine.resync,
                tz=tz,
                clock=clock,
            )
            if health is not None and cfg.health_poll.enabled else None
        )
        self.realtime = RealtimeMergeConsumer(
            ledger, self.engine, partner_id, cfg.ledger.steps_table, cfg.realtime.retry_seconds
        )
        self.nudges = NudgeService(
            ledger,
            local_user_id,
            partner_id,
            table=cfg.ledger.nudges_table,
            clock=clock,
            on_received=on_nudge_received,
        )
        self.nudge_feed = ChangeFeed(
            ledger, cfg.ledger.nudges_table, self.nudges.handle_change, cfg.realtime.retry_seconds
        )
        self.engine.add_listener(self._on_record_changed)

        self._exit_stack: AsyncExitStack | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._exit_stack is not None

    @property
    def is_solo(self) -> bool:
        return self.challenges.kind is ChallengeKind.solo

    async def __aenter__(self) -> "StepSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Seed state from the ledger and start every input.

        If any step raises, inputs started so far are released before the
        exception propagates.
        """
        if self._exit_stack is not None:
            return
        async with AsyncExitStack() as stack:
            stack.push_async_callback(self._drain)

            await self._seed()
            try:
                await self.challenges.load()
            except Exception as exc:
                logger.warning("Could not load active challenge for %s: %s", self.local_user_id, exc)
            try:
                await self.nudges.refresh()
            except Exception as exc:
                logger.warning("Could not load nudges for %s: %s", self.local_user_id, exc)

            if self.sensor_adapter is not None and self.sensor_adapter.start():
                stack.callback(self.sensor_adapter.stop)
            if self.health_adapter is not None:
                self.health_adapter.start()
                stack.push_async_callback(self.health_adapter.stop)
            self.realtime.start()
            stack.push_async_callback(self.realtime.stop)
            self.nudge_feed.start()
            stack.push_async_callback(self.nudge_feed.stop)

            self._exit_stack = stack.pop_all()

        await self._evaluate_challenge()
        logger.info(
            "Step session started for %s (%s)",
            self.local_user_id, "solo" if self.is_solo else f"partner {self.partner_id}",
        )

    async def stop(self) -> None:
        """Tear down sensor, health poll and change feeds together."""
        stack, self._exit_stack = self._exit_stack, None
        if stack is None:
            return
        try:
            await stack.aclose()
        finally:
            self.throttle.reset()
            logger.info("Step session stopped for %s", self.local_user_id)

    async def _drain(self) -> None:
        try:
            await asyncio.wait_for(self.engine.flush(), _DRAIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Pending step writes did not finish before teardown")
        await self.engine.aclose()

    async def _seed(self) -> None:
        """Load both users' recent history through the store's normal merge path."""
        today = self.today()
        users = [(self.local_user_id, ObservationSource.remote_echo)]
        if self.partner_id:
            users.append((self.partner_id, ObservationSource.peer_push))
        observations: list[Observation] = []
        try:
            for user_id, source in users:
                rows = await self.ledger.query(
                    self.config.ledger.steps_table,
                    {"user_id": user_id},
                    order_by="date",
                    descending=True,
                    limit=self.config.history.days,
                )
                observations += self._rows_to_observations(rows, source, today)
        except Exception as exc:
            logger.warning("Could not seed step history from ledger: %s", exc)
        changed = self.engine.seed(observations)
        logger.info("Seeded %d step records (%d rows read)", changed, len(observations))

    def _rows_to_observations(
        self, rows: list[dict[str, Any]], source: ObservationSource, today: date
    ) -> list[Observation]:
        oldest = today - timedelta(days=self.config.history.days - 1)
        observations = []
        for row in rows:
            try:
                day = parse_row_date(row.get("date"))
                count = int(row.get("count") or 0)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed step row %r: %s", row, exc)
                continue
            if oldest <= day <= today:
                observations.append(
                    Observation(source, str(row.get("user_id")), day, count, self._clock())
                )
        return observations

    # ------------------------------------------------------------------
    # Derived-state query surface
    # ------------------------------------------------------------------

    def today(self) -> date:
        return self.engine.today()

    def get_record(self, user_id: str, day: date | None = None) -> DailyStepRecord | None:
        return self.store.get(user_id, day or self.today())

    def get_canonical_steps(self, user_id: str, day: date | None = None) -> int:
        return self.store.count(user_id, day or self.today())

    def get_streak(self, user_id: str | None = None) -> StreakResult:
        user_id = user_id or self.local_user_id
        window = self.config.streak.window_days
        today = self.today()
        return compute_streak(
            self.store.history(user_id, today, window),
            today,
            threshold=self.config.streak.daily_goal_steps,
            window_days=window,
        )

    def get_history(self, user_id: str | None = None, days: int | None = None) -> list[tuple[date, int]]:
        user_id = user_id or self.local_user_id
        if days is None:
            days = self.config.history.chart_days
        today = self.today()
        return history_for_chart(self.store.history(user_id, today), today, days)

    def get_challenge_progress(self, challenge_id: str | None = None) -> ChallengeProgress | None:
        progress = self.challenges.progress(self.aggregated_steps_today())
        if progress is None:
            return None
        if challenge_id is not None and progress.challenge_id != str(challenge_id):
            return None
        return progress

    def aggregated_steps_today(self) -> int:
        today = self.today()
        partner_steps = self.store.count(self.partner_id, today) if self.partner_id else 0
        return aggregate_steps(
            self.challenges.kind,
            self.store.count(self.local_user_id, today),
            partner_steps,
        )

    def is_partner_active(self) -> bool:
        """True if the partner has logged any steps today."""
        return bool(self.partner_id) and self.get_canonical_steps(self.partner_id) > 0

    def add_manual_steps(self, count: int) -> DailyStepRecord | None:
        return self.engine.add_manual_steps(count)

    async def select_challenge(self, challenge: Challenge) -> bool:
        if not await self.challenges.select_challenge(challenge):
            return False
        await self._evaluate_challenge()
        return True

    def get_nudges(self) -> list[Nudge]:
        """Recent nudges sent or received, newest first."""
        return list(self.nudges.nudges)

    def unread_nudge_count(self) -> int:
        return self.nudges.unread_count

    async def send_nudge(self, nudge_type: NudgeType = NudgeType.motivate, message: str | None = None) -> Nudge:
        return await self.nudges.send(nudge_type, message)

    async def mark_nudge_read(self, nudge_id: str) -> bool:
        return await self.nudges.mark_as_read(nudge_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_record_changed(self, record: DailyStepRecord):
        if record.date != self.today():
            return None
        return self._evaluate_challenge()

    async def _evaluate_challenge(self) -> bool:
        return await self.challenges.evaluate(self.aggregated_steps_today())


class SessionRegistry:
    """Holds the single active session; replacing it stops the previous one."""

    def __init__(self) -> None:
        self.current: StepSession | None = None
        self._lock = asyncio.Lock()

    async def replace(self, session: StepSession | None) -> StepSession | None:
        async with self._lock:
            previous, self.current = self.current, None
            if previous is not None:
                await previous.stop()
            if session is not None:
                await session.start()
                self.current = session
            return session

    async def clear(self) -> None:
        await self.replace(None)
