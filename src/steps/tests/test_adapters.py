"""Tests for the sensor and health adapters and the Google Fit source."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.steps.adapters.google_fit import GoogleFitHealthSource, sum_aggregate_steps
from src.steps.adapters.health import PlatformHealthAdapter
from src.steps.adapters.sensor import DeviceSensorAdapter, PushedStepSensor
from src.steps.base import (
    HealthPermissionError,
    HealthUnavailableError,
    ObservationSource,
)
from src.steps.tests.conftest import (
    TEST_DATE,
    TEST_NOW,
    TEST_USER_ID,
    FakeHealthSource,
    FakeSensor,
    MutableClock,
)


# ---------------------------------------------------------------------------
# Device sensor
# ---------------------------------------------------------------------------


class TestDeviceSensorAdapter:
    def test_sensor_callback_becomes_observation(self, clock: MutableClock) -> None:
        sensor, received = FakeSensor(), []
        adapter = DeviceSensorAdapter(sensor, TEST_USER_ID, received.append, clock=clock)
        assert adapter.start() is True

        sensor.emit(321)
        assert adapter.latest_steps == 321
        assert received[0].source is ObservationSource.sensor
        assert received[0].date == TEST_DATE
        assert received[0].count == 321

    def test_unavailable_sensor_not_subscribed(self) -> None:
        sensor = FakeSensor(available=False)
        adapter = DeviceSensorAdapter(sensor, TEST_USER_ID, lambda o: None)
        assert adapter.start() is False
        assert sensor.callbacks == []
        assert adapter.latest_steps == 0

    def test_stop_is_idempotent(self) -> None:
        sensor = FakeSensor()
        adapter = DeviceSensorAdapter(sensor, TEST_USER_ID, lambda o: None)
        adapter.start()
        adapter.stop()
        adapter.stop()
        assert sensor.callbacks == []
        assert not adapter.is_running

    def test_local_midnight_decides_the_day(self) -> None:
        received = []
        late = MutableClock(datetime(2026, 2, 23, 23, 30, tzinfo=timezone.utc))
        adapter = DeviceSensorAdapter(
            FakeSensor(), TEST_USER_ID, received.append,
            tz=timezone(timedelta(hours=2)), clock=late,
        )
        adapter._handle(50)
        assert received[0].date == TEST_DATE + timedelta(days=1)


class TestPushedStepSensor:
    def test_push_reaches_every_subscriber(self) -> None:
        sensor, a, b = PushedStepSensor(), [], []
        sensor.subscribe(a.append)
        unsubscribe = sensor.subscribe(b.append)
        assert sensor.push(10) == 2
        unsubscribe()
        assert sensor.push(20) == 1
        assert a == [10, 20]
        assert b == [10]

    def test_negative_total_rejected(self) -> None:
        with pytest.raises(ValueError):
            PushedStepSensor().push(-1)


# ---------------------------------------------------------------------------
# Platform health polling
# ---------------------------------------------------------------------------


class TestPlatformHealthAdapter:
    @pytest.mark.asyncio
    async def test_poll_queries_midnight_to_now(self, clock: MutableClock) -> None:
        source, received = FakeHealthSource(steps=1200), []
        adapter = PlatformHealthAdapter(source, TEST_USER_ID, received.append, clock=clock)

        assert await adapter.poll_once() == 1200
        start, end = source.calls[0]
        assert start == datetime(2026, 2, 23, tzinfo=timezone.utc)
        assert end == TEST_NOW
        assert received[0].source is ObservationSource.health_api
        assert received[0].count == 1200

    @pytest.mark.asyncio
    async def test_permission_denied_maps_to_zero(self, clock: MutableClock) -> None:
        source = FakeHealthSource(error=HealthPermissionError("not granted"))
        received = []
        adapter = PlatformHealthAdapter(source, TEST_USER_ID, received.append, clock=clock)
        assert await adapter.poll_once() == 0
        assert received[0].count == 0
        assert adapter.last_error == "not granted"

    @pytest.mark.asyncio
    async def test_unavailable_maps_to_zero(self, clock: MutableClock) -> None:
        source = FakeHealthSource(error=HealthUnavailableError("no platform"))
        adapter = PlatformHealthAdapter(source, TEST_USER_ID, lambda o: None, clock=clock)
        assert await adapter.poll_once() == 0

    @pytest.mark.asyncio
    async def test_loop_polls_eagerly_and_ticks(self, clock: MutableClock) -> None:
        source, ticks = FakeHealthSource(steps=5), []
        adapter = PlatformHealthAdapter(
            source, TEST_USER_ID, lambda o: None,
            interval_seconds=3600, on_tick=lambda: ticks.append(1), clock=clock,
        )
        adapter.start()
        for _ in range(3):
            await asyncio.sleep(0)
        assert len(source.calls) == 1
        assert ticks == [1]

        await adapter.stop()
        assert not adapter.is_running


# ---------------------------------------------------------------------------
# Google Fit
# ---------------------------------------------------------------------------


def _mock_client(status_code: int = 200, payload: dict | None = None) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json = MagicMock(return_value=payload or {})
    if status_code >= 400:
        mock_response.raise_for_status = MagicMock(
            side_effect=httpx.HTTPStatusError("error", request=MagicMock(), response=mock_response)
        )
    else:
        mock_response.raise_for_status = MagicMock()
    mock_client = MagicMock()
    mock_client.post = AsyncMock(return_value=mock_response)
    return mock_client


AGGREGATE_PAYLOAD = {
    "bucket": [
        {
            "dataset": [
                {"point": [{"value": [{"intVal": 1200}]}, {"value": [{"intVal": 345}]}]},
                {"point": []},
            ]
        },
        {"dataset": []},
    ]
}


class TestGoogleFitHealthSource:
    def test_sum_aggregate_steps(self) -> None:
        assert sum_aggregate_steps(AGGREGATE_PAYLOAD) == 1545
        assert sum_aggregate_steps({}) == 0

    @pytest.mark.asyncio
    async def test_query_posts_aggregate_request(self) -> None:
        client = _mock_client(payload=AGGREGATE_PAYLOAD)
        source = GoogleFitHealthSource(access_token="tok", http_client=client)

        steps = await source.query_steps_in_range(TEST_NOW - timedelta(hours=12), TEST_NOW)

        assert steps == 1545
        _, kwargs = client.post.call_args
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}
        assert kwargs["json"]["endTimeMillis"] - kwargs["json"]["startTimeMillis"] == 12 * 3600 * 1000

    @pytest.mark.asyncio
    async def test_missing_token_is_permission_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GOOGLE_FIT_ACCESS_TOKEN", raising=False)
        source = GoogleFitHealthSource(http_client=_mock_client())
        with pytest.raises(HealthPermissionError):
            await source.query_steps_in_range(TEST_NOW - timedelta(hours=1), TEST_NOW)

    @pytest.mark.asyncio
    async def test_empty_range_skips_request(self) -> None:
        client = _mock_client()
        source = GoogleFitHealthSource(access_token="tok", http_client=client)
        assert await source.query_steps_in_range(TEST_NOW, TEST_NOW) == 0
        client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_forbidden_is_permission_error(self) -> None:
        source = GoogleFitHealthSource(access_token="tok", http_client=_mock_client(403))
        with pytest.raises(HealthPermissionError):
            await source.query_steps_in_range(TEST_NOW - timedelta(hours=1), TEST_NOW)

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self) -> None:
        source = GoogleFitHealthSource(access_token="tok", http_client=_mock_client(503))
        with pytest.raises(HealthUnavailableError):
            await source.query_steps_in_range(TEST_NOW - timedelta(hours=1), TEST_NOW)

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self) -> None:
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        source = GoogleFitHealthSource(access_token="tok", http_client=client)
        with pytest.raises(HealthUnavailableError):
            await source.query_steps_in_range(TEST_NOW - timedelta(hours=1), TEST_NOW)
