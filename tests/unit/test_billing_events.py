from __future__ import annotations

from datetime import UTC, datetime

import pytest

from app.services.billing_events import BillingEventError, BillingEventProcessor, expiration_status, parse_event_timestamp, resolve_event_user_id
from app.services.subscriptions import SubscriptionStatus
from app.storage.webhook_ledger import WebhookLedger
from app.utils.clock import ensure_aware, utc_now

EXPIRES_MS = 1_800_000_000_000


def _envelope(event_id: str, event_type: str, **fields) -> dict:
  return {"api_version": "1.0", "event": {"id": event_id, "type": event_type, **fields}}


@pytest.fixture
def ledger(session_factory) -> WebhookLedger:
  return WebhookLedger(session_factory)


@pytest.fixture
def processor(ledger, subscription_repo) -> BillingEventProcessor:
  return BillingEventProcessor(ledger=ledger, subscriptions=subscription_repo)


def test_parse_event_timestamp_prefers_milliseconds() -> None:
  assert parse_event_timestamp(1_700_000_000_000, "2020-01-01T00:00:00Z") == datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
  assert parse_event_timestamp(None, "2026-05-01T10:00:00Z") == datetime(2026, 5, 1, 10, 0, tzinfo=UTC)
  assert parse_event_timestamp(None, None) is None


def test_resolve_event_user_id_falls_back_through_identities() -> None:
  assert resolve_event_user_id({"app_user_id": "42"}) == 42
  assert resolve_event_user_id({"app_user_id": "$RCAnonymousID:abc", "subscriber_attributes": {"$userId": {"value": "77"}}}) == 77
  assert resolve_event_user_id({"app_user_id": "anon", "original_app_user_id": "15"}) == 15
  assert resolve_event_user_id({"app_user_id": "anon", "aliases": ["anon-2", "19"]}) == 19
  assert resolve_event_user_id({"app_user_id": "anon"}) is None


@pytest.mark.parametrize(
  ("current", "reason", "expected"),
  [
    ("cancelled", "BILLING_ERROR", SubscriptionStatus.CANCELLED),
    ("active", "SUBSCRIPTION_PAUSED", SubscriptionStatus.PAUSED),
    ("active", "UNSUBSCRIBE", SubscriptionStatus.CANCELLED),
    ("active", "BILLING_ERROR", SubscriptionStatus.EXPIRED),
    (None, None, SubscriptionStatus.EXPIRED),
  ],
)
def test_expiration_status(current, reason, expected) -> None:
  assert expiration_status(current, reason) == expected


@pytest.mark.anyio
async def test_initial_purchase_activates_subscription(processor, subscription_repo) -> None:
  result = await processor.handle(_envelope("evt-1", "INITIAL_PURCHASE", app_user_id="42", product_id="pro_monthly", period_type="NORMAL", expiration_at_ms=EXPIRES_MS))

  assert result.message == "Webhook processed successfully"
  stored = await subscription_repo.get(42)
  assert stored.status == "active"
  assert stored.plan == "pro_monthly"
  assert ensure_aware(stored.ends_at) == datetime.fromtimestamp(EXPIRES_MS / 1000, tz=UTC)


@pytest.mark.anyio
async def test_trial_purchase_records_trial_status(processor, subscription_repo) -> None:
  await processor.handle(_envelope("evt-1", "INITIAL_PURCHASE", app_user_id="42", product_id="pro_monthly", period_type="TRIAL"))

  assert (await subscription_repo.get(42)).status == "trial"


@pytest.mark.anyio
async def test_duplicate_delivery_is_applied_once(processor, subscription_repo, ledger) -> None:
  envelope = _envelope("evt-dup", "RENEWAL", app_user_id="42", product_id="pro_monthly", expiration_at_ms=EXPIRES_MS)
  await processor.handle(envelope)
  # A later state change must survive a replay of the earlier event.
  await subscription_repo.upsert(42, status=SubscriptionStatus.EXPIRED)

  result = await processor.handle(envelope)

  assert result.message == "Event already processed"
  assert (await subscription_repo.get(42)).status == "expired"
  assert await ledger.is_processed("evt-dup")


@pytest.mark.anyio
async def test_ledger_insert_reports_concurrent_duplicates(ledger) -> None:
  assert await ledger.mark_processed("evt-9", "RENEWAL", "{}") is True
  assert await ledger.mark_processed("evt-9", "RENEWAL", "{}") is False


@pytest.mark.anyio
async def test_test_events_are_acknowledged_without_recording(processor, ledger) -> None:
  result = await processor.handle(_envelope("evt-test", "TEST"))

  assert result.message == "Test webhook received"
  assert not await ledger.is_processed("evt-test")


@pytest.mark.anyio
async def test_initial_purchase_without_product_is_not_recorded(processor, ledger) -> None:
  with pytest.raises(BillingEventError, match="Product ID required"):
    await processor.handle(_envelope("evt-2", "INITIAL_PURCHASE", app_user_id="42"))

  # Unrecorded events are applied when the sender retries.
  assert not await ledger.is_processed("evt-2")


@pytest.mark.anyio
async def test_refund_cancellation_ends_access_now(processor, subscription_repo) -> None:
  await processor.handle(_envelope("evt-1", "INITIAL_PURCHASE", app_user_id="42", product_id="pro_monthly", expiration_at_ms=EXPIRES_MS))

  await processor.handle(_envelope("evt-2", "CANCELLATION", app_user_id="42", cancel_reason="CUSTOMER_SUPPORT", expiration_at_ms=EXPIRES_MS))

  stored = await subscription_repo.get(42)
  assert stored.status == "cancelled"
  assert ensure_aware(stored.ends_at) <= utc_now()


@pytest.mark.anyio
async def test_billing_issue_starts_grace_period(processor, subscription_repo) -> None:
  await processor.handle(_envelope("evt-3", "BILLING_ISSUE", app_user_id="42", grace_period_expiration_at_ms=EXPIRES_MS))

  stored = await subscription_repo.get(42)
  assert stored.status == "grace_period"
  assert ensure_aware(stored.ends_at) == datetime.fromtimestamp(EXPIRES_MS / 1000, tz=UTC)


@pytest.mark.anyio
async def test_transfer_revokes_previous_owners(processor, subscription_repo) -> None:
  await subscription_repo.upsert(11, status=SubscriptionStatus.ACTIVE, plan="pro_monthly")
  await subscription_repo.upsert(12, status=SubscriptionStatus.ACTIVE, plan="pro_monthly")

  await processor.handle(_envelope("evt-4", "TRANSFER", transferred_from=["11", "12", "$RCAnonymousID:x"], transferred_to=["42"]))

  assert (await subscription_repo.get(11)).status == "expired"
  assert (await subscription_repo.get(12)).status == "expired"


@pytest.mark.anyio
async def test_unresolvable_user_is_recorded_without_effect(processor, subscription_repo, ledger) -> None:
  result = await processor.handle(_envelope("evt-5", "RENEWAL", app_user_id="$RCAnonymousID:abc", product_id="pro_monthly"))

  assert result.success
  assert await ledger.is_processed("evt-5")


@pytest.mark.anyio
async def test_event_without_id_is_rejected(processor) -> None:
  with pytest.raises(BillingEventError):
    await processor.handle({"event": {"type": "RENEWAL"}})
