from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx

from velosync.core.config import Settings, get_settings
from velosync.core.errors import PermanentJobFailure, TransientUpstreamFailure
from velosync.services.resilience import call_with_timeout
from velosync.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

# Stream channels requested from the upstream API.
STREAM_KEYS = "time,latlng,altitude,heartrate,cadence,watts"


class ActivityApi(Protocol):
    async def get_activity(self, access_token: str, activity_id: str) -> dict[str, Any]: ...

    async def get_streams(self, access_token: str, activity_id: str) -> dict[str, Any]: ...

    async def list_activities(
        self, access_token: str, *, after_epoch_s: int, page: int, per_page: int
    ) -> list[dict[str, Any]]: ...


def classify_status(status_code: int, *, path: str) -> None:
    # Map upstream HTTP statuses onto the retry taxonomy; 2xx falls through.
    if status_code < 400:
        return
    if status_code == 429 or status_code >= 500:
        raise TransientUpstreamFailure(
            f"Upstream {path} responded with status {status_code}", status_code=status_code
        )
    # 401/403/404/410 and other client errors will not change on retry.
    raise PermanentJobFailure(f"Upstream {path} responded with status {status_code}")


class UpstreamClient:
    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        # Transport injection lets tests mount httpx.MockTransport.
        self._transport = transport

    async def _get(self, path: str, access_token: str, params: dict[str, Any] | None = None) -> Any:
        settings = self._settings
        url = f"{settings.upstream_base_url.rstrip('/')}{path}"
        timeout = settings.upstream_timeout_ms / 1000.0
        headers = {"Authorization": f"Bearer {access_token}"}
        start = time.monotonic()

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                return await client.get(url, params=params, headers=headers)

        try:
            response = await call_with_timeout(_call, timeout_ms=settings.upstream_timeout_ms)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            self._record(start, success=False)
            raise TransientUpstreamFailure(f"Upstream {path} unreachable: {exc}") from exc
        except TransientUpstreamFailure:
            self._record(start, success=False)
            raise

        try:
            classify_status(response.status_code, path=path)
        except Exception:
            self._record(start, success=False)
            raise
        self._record(start, success=True)
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentJobFailure(f"Upstream {path} returned malformed JSON") from exc

    def _record(self, start: float, *, success: bool) -> None:
        record_external_call(
            integration=f"upstream.{self._settings.upstream_provider}",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )

    async def get_activity(self, access_token: str, activity_id: str) -> dict[str, Any]:
        payload = await self._get(f"/activities/{activity_id}", access_token)
        if not isinstance(payload, dict):
            raise PermanentJobFailure(f"Activity {activity_id} payload is not an object")
        return payload

    async def get_streams(self, access_token: str, activity_id: str) -> dict[str, Any]:
        payload = await self._get(
            f"/activities/{activity_id}/streams",
            access_token,
            params={"keys": STREAM_KEYS, "key_by_type": "true"},
        )
        if not isinstance(payload, dict):
            raise PermanentJobFailure(f"Streams for {activity_id} payload is not an object")
        return payload

    async def list_activities(
        self, access_token: str, *, after_epoch_s: int, page: int, per_page: int
    ) -> list[dict[str, Any]]:
        payload = await self._get(
            "/athlete/activities",
            access_token,
            params={"after": after_epoch_s, "page": page, "per_page": per_page},
        )
        if not isinstance(payload, list):
            raise PermanentJobFailure("Activity listing payload is not a list")
        return payload
