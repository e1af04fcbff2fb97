"""Storage interfaces for usage counters and subscriptions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class UsageCounts:
  """Lifetime counters for one user."""

  user_id: int
  weekly_regenerations: int
  daily_regenerations: int
  tokens_used: int


@dataclass(frozen=True)
class UsageDelta:
  weekly_regenerations: int = 0
  daily_regenerations: int = 0
  tokens: int = 0


@dataclass(frozen=True)
class UsageCeiling:
  """Upper bounds checked atomically while applying a delta; None means unchecked."""

  weekly_regenerations_below: int | None = None
  daily_regenerations_below: int | None = None
  tokens_at_most: int | None = None


@dataclass(frozen=True)
class SubscriptionRecord:
  user_id: int
  status: str
  plan: str | None
  started_at: datetime | None
  ends_at: datetime | None


class UsageRepository(Protocol):
  async def get_or_create(self, user_id: int) -> UsageCounts:
    """Return the user's counters, creating a zeroed row on first use."""

  async def increment(self, user_id: int, delta: UsageDelta) -> None:
    """Apply a delta with a single atomic UPDATE."""

  async def increment_if_below(self, user_id: int, delta: UsageDelta, ceiling: UsageCeiling) -> bool:
    """Apply a delta only while every ceiling still holds; returns whether it applied."""

  async def decrement(self, user_id: int, delta: UsageDelta) -> None:
    """Refund a delta, clamping counters at zero."""


class SubscriptionRepository(Protocol):
  async def get(self, user_id: int) -> SubscriptionRecord | None:
    """Fetch the user's subscription row, if any."""

  async def upsert(self, user_id: int, *, status: str, plan: str | None = None, started_at: datetime | None = None, ends_at: datetime | None = None) -> SubscriptionRecord:
    """Create or update the user's subscription, keeping fields that are passed as None."""
