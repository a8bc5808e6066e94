"""Google Fit health source.

Answers "how many steps between start and end" from the Fitness REST API
aggregate endpoint, using the merged ``com.google.step_count.delta`` stream
that Android devices publish.

Environment variables:
    GOOGLE_FIT_ACCESS_TOKEN — OAuth2 bearer token with fitness.activity.read

Endpoint used:
    POST /fitness/v1/users/me/dataset:aggregate
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

import httpx

from src.steps.base import (
    HealthPermissionError,
    HealthSource,
    HealthUnavailableError,
)

logger = logging.getLogger("stepsync.steps.adapters.google_fit")

_AGGREGATE_URL = "https://www.googleapis.com/fitness/v1/users/me/dataset:aggregate"
_STEP_DATA_SOURCE = (
    "derived:com.google.step_count.delta:com.google.android.gms:estimated_steps"
)


def _to_millis(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def sum_aggregate_steps(payload: dict) -> int:
    """Add up every integer step value in an aggregate response.

    Handles missing buckets, datasets or points gracefully.
    """
    total = 0
    for bucket in payload.get("bucket") or []:
        for dataset in bucket.get("dataset") or []:
            for point in dataset.get("point") or []:
                for value in point.get("value") or []:
                    total += int(value.get("intVal") or 0)
    return total


class GoogleFitHealthSource(HealthSource):
    """``HealthSource`` backed by the Google Fit REST API."""

    SOURCE_ID = "google_fit"

    def __init__(
        self,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize the source.

        Args:
            access_token:    Bearer token (GOOGLE_FIT_ACCESS_TOKEN env var).
            http_client:     Optional pre-configured httpx client (for testing).
            timeout_seconds: Per-request timeout.
        """
        self._access_token = access_token or os.environ.get("GOOGLE_FIT_ACCESS_TOKEN", "")
        self._http_client = http_client
        self._timeout = timeout_seconds

    async def query_steps_in_range(self, start: datetime, end: datetime) -> int:
        if not self._access_token:
            raise HealthPermissionError("no Google Fit access token configured")

        start_ms, end_ms = _to_millis(start), _to_millis(end)
        if end_ms <= start_ms:
            return 0

        body = {
            "aggregateBy": [
                {
                    "dataTypeName": "com.google.step_count.delta",
                    "dataSourceId": _STEP_DATA_SOURCE,
                }
            ],
            "bucketByTime": {"durationMillis": end_ms - start_ms},
            "startTimeMillis": start_ms,
            "endTimeMillis": end_ms,
        }
        payload = await self._post(_AGGREGATE_URL, body)
        steps = sum_aggregate_steps(payload)
        logger.debug("Google Fit: %d steps between %s and %s", steps, start, end)
        return steps

    def _build_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _post(self, url: str, body: dict) -> dict:
        """POST to the Fitness API, translating failures into health errors.

        Raises:
            HealthPermissionError:  401 / 403 responses.
            HealthUnavailableError: Transport errors and other non-2xx responses.
        """
        headers = self._build_headers()
        try:
            if self._http_client:
                response = await self._http_client.post(url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise HealthUnavailableError(f"Google Fit unreachable: {exc}") from exc

        if response.status_code in (401, 403):
            raise HealthPermissionError(f"Google Fit refused access ({response.status_code})")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise HealthUnavailableError(f"Google Fit error: {exc}") from exc
        return response.json()
