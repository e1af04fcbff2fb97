from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.container import build_service_container
from app.main import create_app

AUTH = {"Authorization": "Bearer whsec-test"}


@pytest.fixture
async def webhook_client(session_factory, worker_settings):
  notifications = MagicMock()
  notifications.drain = AsyncMock()
  # Submission-only instance: no generation workers are wired.
  settings = replace(worker_settings, worker_enabled=False)
  container = build_service_container(settings, session_factory=session_factory, notifications=notifications)
  app = create_app()
  app.state.container = container
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client, container


def _renewal(event_id: str = "evt-100") -> dict:
  return {"api_version": "1.0", "event": {"id": event_id, "type": "RENEWAL", "app_user_id": "42", "product_id": "pro_monthly", "expiration_at_ms": 1_800_000_000_000}}


@pytest.mark.anyio
async def test_wrong_authorization_is_rejected(webhook_client) -> None:
  client, container = webhook_client

  response = await client.post("/v1/webhooks/billing", json=_renewal(), headers={"Authorization": "Bearer wrong"})
  missing = await client.post("/v1/webhooks/billing", json=_renewal())

  assert response.status_code == 401
  assert missing.status_code == 401
  assert await container.usage_gate.access_level(42) == "trial"


@pytest.mark.anyio
async def test_renewal_grants_unlimited_access_once(webhook_client) -> None:
  client, container = webhook_client

  first = await client.post("/v1/webhooks/billing", json=_renewal(), headers=AUTH)
  replay = await client.post("/v1/webhooks/billing", json=_renewal(), headers=AUTH)

  assert first.status_code == 200
  assert first.json() == {"success": True, "message": "Webhook processed successfully"}
  assert replay.json() == {"success": True, "message": "Event already processed"}
  assert await container.usage_gate.access_level(42) == "unlimited"


@pytest.mark.anyio
async def test_malformed_bodies_are_bad_requests(webhook_client) -> None:
  client, _ = webhook_client

  not_json = await client.post("/v1/webhooks/billing", content=b"{nope", headers={**AUTH, "content-type": "application/json"})
  no_event = await client.post("/v1/webhooks/billing", json={"api_version": "1.0"}, headers=AUTH)
  no_id = await client.post("/v1/webhooks/billing", json={"event": {"type": "RENEWAL"}}, headers=AUTH)
  blank_id = await client.post("/v1/webhooks/billing", json={"event": {"id": "", "type": "RENEWAL"}}, headers=AUTH)

  assert [not_json.status_code, no_event.status_code, no_id.status_code, blank_id.status_code] == [400, 400, 400, 400]


@pytest.mark.anyio
async def test_processing_failures_ask_the_sender_to_retry(webhook_client) -> None:
  client, _ = webhook_client
  envelope = {"event": {"id": "evt-200", "type": "INITIAL_PURCHASE", "app_user_id": "42"}}

  response = await client.post("/v1/webhooks/billing", json=envelope, headers=AUTH)

  assert response.status_code == 500
  assert response.json() == {"success": False, "message": "Webhook processing failed"}
