"""End-to-end tests for the per-user step session."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.steps.base import ChallengeStatus, LedgerChange, NudgeType
from src.steps.config_loader import EngineConfig
from src.steps.session import SessionRegistry, StepSession
from src.steps.sync.throttle import ThrottleState
from src.steps.tests.conftest import (
    COUPLE_ID,
    PARTNER_ID,
    TEST_DATE,
    TEST_USER_ID,
    FakeHealthSource,
    FakeLedger,
    FakeSensor,
    MutableClock,
)


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def couple_ledger(ledger: FakeLedger, challenge_rows) -> FakeLedger:
    ledger.seed("challenges", *challenge_rows)
    ledger.seed(
        "couple_challenges",
        {"id": "as-1", "couple_id": COUPLE_ID, "challenge_id": "ch-wall", "status": "active"},
    )
    ledger.seed(
        "daily_steps",
        {"user_id": TEST_USER_ID, "date": TEST_DATE - timedelta(days=1), "count": 6000},
        {"user_id": TEST_USER_ID, "date": TEST_DATE - timedelta(days=2), "count": 5200},
        {"user_id": PARTNER_ID, "date": TEST_DATE, "count": 5000},
    )
    return ledger


@pytest.fixture
def sensor() -> FakeSensor:
    return FakeSensor()


@pytest.fixture
def make_session(couple_ledger: FakeLedger, sensor: FakeSensor, engine_config: EngineConfig, clock: MutableClock):
    def _make(**kwargs) -> StepSession:
        options = {
            "partner_id": PARTNER_ID,
            "couple_id": COUPLE_ID,
            "config": engine_config,
            "clock": clock,
        }
        options.update(kwargs)
        health = options.pop("health", FakeHealthSource(steps=0))
        return StepSession(couple_ledger, sensor, health, TEST_USER_ID, **options)

    return _make


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_start_seeds_history_and_partner(self, make_session) -> None:
        async with make_session() as session:
            assert session.get_canonical_steps(PARTNER_ID) == 5000
            assert session.get_canonical_steps(TEST_USER_ID, TEST_DATE - timedelta(days=1)) == 6000
            assert session.is_partner_active()
            streak = session.get_streak()
            assert (streak.current_streak, streak.highest_streak) == (2, 2)

    @pytest.mark.asyncio
    async def test_partner_history_seeded_for_window(self, make_session, couple_ledger: FakeLedger) -> None:
        couple_ledger.seed(
            "daily_steps",
            *({"user_id": PARTNER_ID, "date": TEST_DATE - timedelta(days=d), "count": 6000} for d in (1, 2, 3)),
        )
        async with make_session() as session:
            history = session.get_history(PARTNER_ID, days=4)
            assert [steps for _, steps in history] == [6000, 6000, 6000, 5000]
            streak = session.get_streak(PARTNER_ID)
            assert (streak.current_streak, streak.highest_streak) == (4, 4)
        assert couple_ledger.upserts == []

    @pytest.mark.asyncio
    async def test_stop_releases_every_input(self, make_session, sensor: FakeSensor, couple_ledger: FakeLedger) -> None:
        session = make_session()
        await session.start()
        await settle()
        assert len(sensor.callbacks) == 1
        assert couple_ledger.subscriber_count == 2
        assert session.health_adapter.is_running

        await session.stop()
        assert sensor.callbacks == []
        assert couple_ledger.subscriber_count == 0
        assert not session.health_adapter.is_running
        assert session.throttle.state is ThrottleState.idle
        await session.stop()  # idempotent

    @pytest.mark.asyncio
    async def test_failed_start_releases_started_inputs(self, make_session, sensor: FakeSensor) -> None:
        session = make_session()

        def explode() -> None:
            raise RuntimeError("feed refused")

        session.realtime.start = explode
        with pytest.raises(RuntimeError):
            await session.start()
        assert sensor.callbacks == []
        assert not session.health_adapter.is_running
        assert not session.is_running

    @pytest.mark.asyncio
    async def test_ledger_outage_at_start_is_tolerated(self, make_session, couple_ledger: FakeLedger) -> None:
        couple_ledger.fail_queries = True
        async with make_session() as session:
            assert session.is_running
            assert session.get_canonical_steps(PARTNER_ID) == 0
            assert session.get_challenge_progress() is None

    @pytest.mark.asyncio
    async def test_solo_session_without_partner(self, make_session, couple_ledger: FakeLedger) -> None:
        async with make_session(partner_id=None, couple_id=None) as session:
            assert session.is_solo
            assert not session.is_partner_active()
            progress = session.get_challenge_progress()
            assert progress.title == "Park Stroll"
        assert couple_ledger.rows("solo_challenges")[0]["user_id"] == TEST_USER_ID


class TestSessionFlow:
    @pytest.mark.asyncio
    async def test_sensor_update_is_synced(self, make_session, sensor: FakeSensor, couple_ledger: FakeLedger) -> None:
        async with make_session() as session:
            sensor.emit(1500)
            await session.engine.flush()
            assert session.get_canonical_steps(TEST_USER_ID) == 1500
        today = [r for r in couple_ledger.rows("daily_steps")
                 if r["user_id"] == TEST_USER_ID and r["date"] == TEST_DATE]
        assert today[0]["count"] == 1500

    @pytest.mark.asyncio
    async def test_health_value_adopted_then_sensor_wins(self, make_session, sensor: FakeSensor) -> None:
        async with make_session(health=FakeHealthSource(steps=1200)) as session:
            await settle()
            assert session.get_canonical_steps(TEST_USER_ID) == 1200
            sensor.emit(900)
            assert session.get_canonical_steps(TEST_USER_ID) == 900

    @pytest.mark.asyncio
    async def test_couple_challenge_completes_once(
        self, make_session, sensor: FakeSensor, couple_ledger: FakeLedger
    ) -> None:
        completed = []
        async with make_session(on_challenge_completed=completed.append) as session:
            sensor.emit(3000)
            sensor.emit(6000)
            await session.engine.flush()

            progress = session.get_challenge_progress()
            assert progress.aggregated_steps == 11000
            assert progress.status is ChallengeStatus.completed

        assert len(completed) == 1
        assert couple_ledger.rows("couple_challenges")[0]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_partner_push_counts_toward_challenge(
        self, make_session, sensor: FakeSensor, couple_ledger: FakeLedger
    ) -> None:
        async with make_session() as session:
            sensor.emit(4000)
            await settle()
            assert session.challenges.status is ChallengeStatus.active

            couple_ledger.publish(LedgerChange(
                "UPDATE", "daily_steps",
                {"user_id": PARTNER_ID, "date": TEST_DATE.isoformat(), "count": 6500},
            ))
            await settle()
            await session.engine.flush()
            assert session.challenges.status is ChallengeStatus.completed

    @pytest.mark.asyncio
    async def test_select_challenge_switches_active(self, make_session, couple_ledger: FakeLedger) -> None:
        async with make_session() as session:
            marathon = await session.challenges.get_challenge("ch-marathon")
            assert await session.select_challenge(marathon)
            assert session.get_challenge_progress("ch-marathon").goal == 55000
            assert session.get_challenge_progress("ch-wall") is None

    @pytest.mark.asyncio
    async def test_chart_history_oldest_first(self, make_session) -> None:
        async with make_session() as session:
            history = session.get_history(days=3)
            assert [steps for _, steps in history] == [5200, 6000, 0]


class TestSessionRegistry:
    @pytest.mark.asyncio
    async def test_replace_stops_previous_session(self, make_session, sensor: FakeSensor) -> None:
        registry = SessionRegistry()
        first = await registry.replace(make_session())
        second = await registry.replace(make_session())

        assert registry.current is second
        assert not first.is_running
        assert len(sensor.callbacks) == 1

        await registry.clear()
        assert registry.current is None
        assert sensor.callbacks == []


class TestSessionNudges:
    @pytest.mark.asyncio
    async def test_send_and_receive_nudges(self, make_session, couple_ledger: FakeLedger, clock: MutableClock) -> None:
        couple_ledger.seed("nudges", {
            "id": "n-old", "sender_id": PARTNER_ID, "receiver_id": TEST_USER_ID,
            "type": "wave", "message": "hi", "read": False, "created_at": clock.now,
        })
        received = []
        async with make_session(on_nudge_received=received.append) as session:
            assert session.unread_nudge_count() == 1

            clock.advance(seconds=60)
            sent = await session.send_nudge(NudgeType.cheer)
            assert sent.receiver_id == PARTNER_ID
            assert [n.nudge_id for n in session.get_nudges()] == [sent.nudge_id, "n-old"]

            row = {
                "id": "n-new", "sender_id": PARTNER_ID, "receiver_id": TEST_USER_ID,
                "type": "poke", "message": "move!", "read": False,
                "created_at": clock.advance(seconds=60),
            }
            couple_ledger.seed("nudges", row)
            couple_ledger.publish(LedgerChange("INSERT", "nudges", row))
            await settle()
            assert [n.nudge_id for n in received] == ["n-new"]
            assert session.unread_nudge_count() == 2

            assert await session.mark_nudge_read("n-old")
            assert session.unread_nudge_count() == 1

    @pytest.mark.asyncio
    async def test_solo_user_cannot_nudge(self, make_session, couple_ledger: FakeLedger) -> None:
        async with make_session(partner_id=None, couple_id=None) as session:
            with pytest.raises(ValueError):
                await session.send_nudge()
        assert couple_ledger.rows("nudges") == []
