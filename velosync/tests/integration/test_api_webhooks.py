from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from velosync.apps.api.deps import get_pipeline_dep
from velosync.apps.api.main import create_app
from velosync.domain.jobs import QUEUE_LIVE
from velosync.tests.utils.harness import Harness, make_harness


def _client(harness: Harness) -> AsyncClient:
    app = create_app()
    app.dependency_overrides[get_pipeline_dep] = lambda: harness.pipeline
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_subscription_handshake() -> None:
    harness = make_harness()
    async with _client(harness) as client:
        ok = await client.get(
            "/webhooks/activity",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "c-123"},
        )
        bad = await client.get(
            "/webhooks/activity",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "c-123"},
        )

    assert ok.status_code == 200
    assert ok.json() == {"hub.challenge": "c-123"}
    assert bad.status_code == 403
    assert bad.json()["detail"]["code"] == "WEBHOOK_REJECTED"


@pytest.mark.asyncio
async def test_event_is_acknowledged_and_enqueued() -> None:
    harness = make_harness()
    body = {
        "object_type": "activity",
        "object_id": 1234,
        "aspect_type": "create",
        "owner_id": 77,
        "subscription_id": 1,
        "event_time": 1_700_000_000,
        "updates": {},
    }
    async with _client(harness) as client:
        response = await client.post("/webhooks/activity", json=body)
        duplicate = await client.post("/webhooks/activity", json=body)

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "action": "enqueued", "event_type": "activity.create"}
    assert duplicate.status_code == 200
    assert (await harness.pipeline.queue.depth())[QUEUE_LIVE] == 2
    assert sum(harness.upstream.calls.values()) == 0
    assert "X-Request-Id" in response.headers


@pytest.mark.asyncio
async def test_deauthorization_event_revokes_immediately() -> None:
    harness = make_harness(tokens={"77": "token"})
    body = {
        "object_type": "athlete",
        "object_id": 77,
        "aspect_type": "update",
        "owner_id": 77,
        "updates": {"authorized": "false"},
    }
    async with _client(harness) as client:
        response = await client.post("/webhooks/activity", json=body)

    assert response.json()["action"] == "revoked"
    assert await harness.credentials.get_access_token("77") is None


@pytest.mark.asyncio
async def test_malformed_event_is_rejected() -> None:
    harness = make_harness()
    async with _client(harness) as client:
        response = await client.post("/webhooks/activity", json={"object_type": "activity"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_foreign_subscription_is_forbidden() -> None:
    harness = make_harness(webhook_subscription_id=5)
    body = {
        "object_type": "activity",
        "object_id": 1,
        "aspect_type": "create",
        "owner_id": 2,
        "subscription_id": 6,
    }
    async with _client(harness) as client:
        response = await client.post("/webhooks/activity", json=body)
    assert response.status_code == 403
