"""Subscription statuses and the access level they grant."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from app.utils.clock import ensure_aware, utc_now


class SubscriptionStatus(StrEnum):
  TRIAL = "trial"
  ACTIVE = "active"
  GRACE_PERIOD = "grace_period"
  CANCELLED = "cancelled"
  EXPIRED = "expired"
  PAUSED = "paused"


class AccessLevel(StrEnum):
  UNLIMITED = "unlimited"
  TRIAL = "trial"
  BLOCKED = "blocked"


def resolve_access_level(status: SubscriptionStatus | str | None, ends_at: datetime | None, *, now: datetime | None = None) -> AccessLevel:
  """Map a subscription to its access level; users without a subscription are on trial."""
  if status is None:
    return AccessLevel.TRIAL

  current = ensure_aware(now or utc_now())
  resolved = SubscriptionStatus(status)
  if resolved == SubscriptionStatus.ACTIVE:
    return AccessLevel.UNLIMITED

  # Grace periods and cancellations keep paid access until the paid period ends.
  if resolved in {SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.CANCELLED}:
    if ends_at is not None and ensure_aware(ends_at) > current:
      return AccessLevel.UNLIMITED
    return AccessLevel.BLOCKED

  if resolved == SubscriptionStatus.TRIAL:
    return AccessLevel.TRIAL

  return AccessLevel.BLOCKED
