"""Apply subscription billing webhook events exactly once."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.services.subscriptions import SubscriptionStatus
from app.storage.usage_repo import SubscriptionRepository
from app.storage.webhook_ledger import WebhookLedger
from app.utils.clock import utc_now

logger = logging.getLogger(__name__)

_USER_ID_ATTRIBUTES = ("$userId", "user_id", "userId")
_LOG_ONLY_EVENTS = frozenset({"SUBSCRIPTION_PAUSED", "SUBSCRIBER_ALIAS"})


class BillingEventError(ValueError):
  """Raised when an event cannot be applied and the sender should retry."""


@dataclass(frozen=True)
class BillingEventResult:
  success: bool
  message: str


def _positive_int(raw: Any) -> int | None:
  try:
    value = int(str(raw))
  except (TypeError, ValueError):
    return None
  return value if value > 0 else None


def parse_event_timestamp(ms: Any, iso: Any) -> datetime | None:
  """Prefer the millisecond field and fall back to the ISO string."""
  if ms:
    return datetime.fromtimestamp(int(ms) / 1000, tz=UTC)
  if iso:
    parsed = datetime.fromisoformat(str(iso).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
  return None


def resolve_event_user_id(event: dict[str, Any]) -> int | None:
  """Find the app user an event refers to, or None for anonymous purchasers."""
  user_id = _positive_int(event.get("app_user_id"))
  if user_id is not None:
    return user_id

  attributes = event.get("subscriber_attributes") or {}
  for key in _USER_ID_ATTRIBUTES:
    attribute = attributes.get(key)
    if isinstance(attribute, dict):
      user_id = _positive_int(attribute.get("value"))
      if user_id is not None:
        return user_id

  user_id = _positive_int(event.get("original_app_user_id"))
  if user_id is not None:
    return user_id

  for alias in event.get("aliases") or ():
    user_id = _positive_int(alias)
    if user_id is not None:
      return user_id
  return None


def expiration_status(current: str | None, reason: str | None) -> SubscriptionStatus:
  if current == SubscriptionStatus.CANCELLED:
    return SubscriptionStatus.CANCELLED
  if reason == "SUBSCRIPTION_PAUSED":
    return SubscriptionStatus.PAUSED
  if reason in {"UNSUBSCRIBE", "DEVELOPER_INITIATED"}:
    return SubscriptionStatus.CANCELLED
  return SubscriptionStatus.EXPIRED


class BillingEventProcessor:
  """Check the ledger, apply the subscription effect, then record the event."""

  def __init__(self, *, ledger: WebhookLedger, subscriptions: SubscriptionRepository) -> None:
    self._ledger = ledger
    self._subscriptions = subscriptions

  async def handle(self, envelope: dict[str, Any]) -> BillingEventResult:
    event = envelope.get("event") or {}
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    if not event_id or not event_type:
      raise BillingEventError("Webhook event is missing id or type.")

    logger.info("Billing webhook received event_id=%s event_type=%s app_user_id=%s api_version=%s", event_id, event_type, event.get("app_user_id"), envelope.get("api_version"))
    if event_type == "TEST":
      return BillingEventResult(success=True, message="Test webhook received")

    if await self._ledger.is_processed(event_id):
      logger.info("Billing webhook already processed event_id=%s event_type=%s", event_id, event_type)
      return BillingEventResult(success=True, message="Event already processed")

    await self._apply(event_type, event)
    recorded = await self._ledger.mark_processed(event_id, event_type, json.dumps(envelope, default=str))
    if not recorded:
      return BillingEventResult(success=True, message="Event already processed")
    logger.info("Billing webhook processed event_id=%s event_type=%s", event_id, event_type)
    return BillingEventResult(success=True, message="Webhook processed successfully")

  async def _apply(self, event_type: str, event: dict[str, Any]) -> None:
    if event_type == "TRANSFER":
      await self._apply_transfer(event)
      return
    if event_type in _LOG_ONLY_EVENTS:
      logger.info("Billing event recorded without effect event_type=%s app_user_id=%s", event_type, event.get("app_user_id"))
      return

    user_id = resolve_event_user_id(event)
    if user_id is None:
      logger.warning("Billing event user could not be resolved event_type=%s app_user_id=%s", event_type, event.get("app_user_id"))
      return

    expires_at = parse_event_timestamp(event.get("expiration_at_ms"), event.get("expires_at"))
    purchased_at = parse_event_timestamp(event.get("purchased_at_ms"), event.get("purchased_at"))
    product_id = event.get("product_id")

    if event_type == "INITIAL_PURCHASE":
      if not product_id:
        raise BillingEventError("Product ID required for initial purchase")
      status = SubscriptionStatus.TRIAL if event.get("period_type") == "TRIAL" else SubscriptionStatus.ACTIVE
      await self._subscriptions.upsert(user_id, status=status, plan=product_id, started_at=purchased_at, ends_at=expires_at)
    elif event_type in {"RENEWAL", "NON_RENEWING_PURCHASE"}:
      await self._subscriptions.upsert(user_id, status=SubscriptionStatus.ACTIVE, plan=product_id, started_at=purchased_at, ends_at=expires_at)
    elif event_type == "UNCANCELLATION":
      await self._subscriptions.upsert(user_id, status=SubscriptionStatus.ACTIVE, ends_at=expires_at)
    elif event_type == "CANCELLATION":
      # Refunds revoke access immediately; other cancellations run to the end of the period.
      ends_at = utc_now() if event.get("cancel_reason") == "CUSTOMER_SUPPORT" else expires_at
      await self._subscriptions.upsert(user_id, status=SubscriptionStatus.CANCELLED, ends_at=ends_at)
    elif event_type == "EXPIRATION":
      current = await self._subscriptions.get(user_id)
      status = expiration_status(current.status if current else None, event.get("expiration_reason"))
      await self._subscriptions.upsert(user_id, status=status, ends_at=expires_at or utc_now())
    elif event_type == "BILLING_ISSUE":
      grace_ends = parse_event_timestamp(event.get("grace_period_expiration_at_ms"), None)
      logger.warning("Billing issue; user in grace period user_id=%s grace_ends=%s", user_id, grace_ends)
      await self._subscriptions.upsert(user_id, status=SubscriptionStatus.GRACE_PERIOD, ends_at=grace_ends)
    elif event_type == "PRODUCT_CHANGE":
      await self._subscriptions.upsert(user_id, status=SubscriptionStatus.ACTIVE, plan=product_id, ends_at=expires_at)
    else:
      logger.warning("Unknown billing event type ignored event_type=%s user_id=%s", event_type, user_id)
      return
    logger.info("Subscription updated from billing event event_type=%s user_id=%s", event_type, user_id)

  async def _apply_transfer(self, event: dict[str, Any]) -> None:
    for raw_user in event.get("transferred_from") or ():
      user_id = _positive_int(raw_user)
      if user_id is None:
        logger.warning("Could not revoke access from transferred user from_user=%s", raw_user)
        continue
      await self._subscriptions.upsert(user_id, status=SubscriptionStatus.EXPIRED, ends_at=utc_now())
      logger.info("Access revoked from transferred user user_id=%s", user_id)
