"""Admission control for generation requests against trial usage limits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from app.config import Settings
from app.services.subscriptions import AccessLevel, resolve_access_level
from app.storage.usage_repo import SubscriptionRepository, UsageCeiling, UsageCounts, UsageDelta, UsageRepository

logger = logging.getLogger(__name__)

TOKEN_LIMIT_REASON = "Token limit exceeded"
SUBSCRIPTION_REQUIRED_REASON = "Subscription required"
CONCURRENT_CHANGE_REASON = "Usage changed concurrently; please retry"


class UsageOperation(StrEnum):
  GENERATION = "generation"
  REGENERATION = "regeneration"


class UsageScope(StrEnum):
  WEEKLY = "weekly"
  DAILY = "daily"


class PaywallType(StrEnum):
  WEEKLY_LIMIT_EXCEEDED = "weekly_limit_exceeded"
  DAILY_REGENERATION_LIMIT_EXCEEDED = "daily_regeneration_limit_exceeded"
  TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
  SUBSCRIPTION_REQUIRED = "subscription_required"


@dataclass(frozen=True)
class UsageLimits:
  weekly_regenerations: int
  daily_regenerations: int
  tokens: int

  @classmethod
  def from_settings(cls, settings: Settings) -> UsageLimits:
    return cls(weekly_regenerations=settings.trial_weekly_regenerations, daily_regenerations=settings.trial_daily_regenerations, tokens=settings.trial_token_cap)


@dataclass(frozen=True)
class UsageDecision:
  allowed: bool
  reason: str | None = None
  limits: dict[str, dict[str, int]] = field(default_factory=dict)
  access_level: AccessLevel = AccessLevel.TRIAL
  # Set when the counters moved between check and reservation; the caller may simply retry.
  retryable: bool = False


class UsageLimitExceededError(RuntimeError):
  """Raised when a request is refused admission."""

  def __init__(self, decision: UsageDecision) -> None:
    super().__init__(decision.reason or "Usage limit exceeded")
    self.decision = decision

  @property
  def paywall_type(self) -> PaywallType:
    return paywall_type(self.decision.reason)


def build_limits_snapshot(counts: UsageCounts, limits: UsageLimits) -> dict[str, dict[str, int]]:
  return {
    "weekly_regenerations": {"used": counts.weekly_regenerations, "limit": limits.weekly_regenerations},
    "daily_regenerations": {"used": counts.daily_regenerations, "limit": limits.daily_regenerations},
    "tokens": {"used": counts.tokens_used, "limit": limits.tokens},
  }


def evaluate_trial_limits(counts: UsageCounts, limits: UsageLimits, *, operation: UsageOperation, estimated_cost: int) -> str | None:
  """Return the denial reason for a trial user, or None when the request fits.

  Generations only spend tokens. Regenerations are refused when any threshold is
  reached, whichever scope was requested, and a multi-breach reason names every
  breached kind.
  """
  tokens_breached = counts.tokens_used + estimated_cost > limits.tokens
  if operation == UsageOperation.GENERATION:
    return TOKEN_LIMIT_REASON if tokens_breached else None

  breaches: list[str] = []
  if counts.weekly_regenerations >= limits.weekly_regenerations:
    breaches.append("weekly regenerations")
  if counts.daily_regenerations >= limits.daily_regenerations:
    breaches.append("daily regenerations")
  if tokens_breached:
    breaches.append("tokens")

  if not breaches:
    return None
  if len(breaches) > 1:
    return f"Trial limits exceeded: {', '.join(breaches)}. Subscribe to continue."
  if breaches[0] == "weekly regenerations":
    return f"Weekly plan regeneration limit exceeded ({limits.weekly_regenerations} total lifetime)"
  if breaches[0] == "daily regenerations":
    return f"Day-plan regeneration limit exceeded ({limits.daily_regenerations} total lifetime)"
  return TOKEN_LIMIT_REASON


def paywall_type(reason: str | None) -> PaywallType:
  """Map a denial reason onto the paywall the client should show.

  Tokens win over regeneration caps, so a multi-breach reason that lists tokens
  shows the token paywall.
  """
  normalized = (reason or "").lower()
  if "token" in normalized:
    return PaywallType.TOKEN_LIMIT_EXCEEDED
  if "weekly" in normalized:
    return PaywallType.WEEKLY_LIMIT_EXCEEDED
  if "day-plan" in normalized or "daily" in normalized:
    return PaywallType.DAILY_REGENERATION_LIMIT_EXCEEDED
  return PaywallType.SUBSCRIPTION_REQUIRED


def denial_detail(decision: UsageDecision) -> dict[str, Any]:
  """Body returned to clients whose request was refused; retryable refusals show no paywall."""
  paywall = None if decision.retryable else str(paywall_type(decision.reason))
  return {"reason": decision.reason, "paywall_type": paywall, "limits": decision.limits, "retryable": decision.retryable}


def usage_delta(operation: UsageOperation, scope: UsageScope | None, cost: int) -> UsageDelta:
  if operation == UsageOperation.REGENERATION and scope == UsageScope.WEEKLY:
    return UsageDelta(weekly_regenerations=1, tokens=cost)
  if operation == UsageOperation.REGENERATION and scope == UsageScope.DAILY:
    return UsageDelta(daily_regenerations=1, tokens=cost)
  return UsageDelta(tokens=cost)


class UsageGate:
  """Check, reserve and refund usage against per-user lifetime counters."""

  def __init__(self, *, usage_repo: UsageRepository, subscription_repo: SubscriptionRepository, limits: UsageLimits, default_estimated_cost: int) -> None:
    self._usage_repo = usage_repo
    self._subscription_repo = subscription_repo
    self._limits = limits
    self._default_estimated_cost = default_estimated_cost

  @property
  def limits(self) -> UsageLimits:
    return self._limits

  async def access_level(self, user_id: int) -> AccessLevel:
    subscription = await self._subscription_repo.get(user_id)
    if subscription is None:
      return AccessLevel.TRIAL
    return resolve_access_level(subscription.status, subscription.ends_at)

  async def check_limit(self, user_id: int, operation: UsageOperation, scope: UsageScope | None = None, estimated_cost: int | None = None) -> UsageDecision:
    """Decide admission without mutating counters."""
    cost = self._resolve_cost(estimated_cost)
    counts = await self._usage_repo.get_or_create(user_id)
    limits = build_limits_snapshot(counts, self._limits)
    level = await self.access_level(user_id)

    if level == AccessLevel.UNLIMITED:
      return UsageDecision(allowed=True, limits=limits, access_level=level)
    if level == AccessLevel.BLOCKED:
      return UsageDecision(allowed=False, reason=SUBSCRIPTION_REQUIRED_REASON, limits=limits, access_level=level)

    reason = evaluate_trial_limits(counts, self._limits, operation=operation, estimated_cost=cost)
    return UsageDecision(allowed=reason is None, reason=reason, limits=limits, access_level=level)

  async def commit(self, user_id: int, operation: UsageOperation, scope: UsageScope | None = None, actual_cost: int | None = None) -> None:
    """Record consumed usage with one atomic increment."""
    await self._usage_repo.increment(user_id, usage_delta(operation, scope, self._resolve_cost(actual_cost)))

  async def reserve(self, user_id: int, operation: UsageOperation, scope: UsageScope | None = None, estimated_cost: int | None = None) -> UsageDecision:
    """Check and commit in one step so two concurrent requests cannot both pass the last slot."""
    cost = self._resolve_cost(estimated_cost)
    decision = await self.check_limit(user_id, operation, scope, cost)
    if not decision.allowed:
      return decision

    delta = usage_delta(operation, scope, cost)
    if decision.access_level == AccessLevel.UNLIMITED:
      await self._usage_repo.increment(user_id, delta)
      return decision

    applied = await self._usage_repo.increment_if_below(user_id, delta, self._ceiling(operation))
    if applied:
      return decision

    # Another request consumed the remaining allowance between the check and the update.
    recheck = await self.check_limit(user_id, operation, scope, cost)
    logger.info("Usage reservation lost a race user_id=%s operation=%s scope=%s", user_id, operation, scope)
    if recheck.allowed:
      return UsageDecision(allowed=False, reason=CONCURRENT_CHANGE_REASON, limits=recheck.limits, access_level=recheck.access_level, retryable=True)
    return recheck

  async def release(self, user_id: int, operation: UsageOperation, scope: UsageScope | None = None, estimated_cost: int | None = None) -> None:
    """Refund a reservation whose job never reached the queue."""
    await self._usage_repo.decrement(user_id, usage_delta(operation, scope, self._resolve_cost(estimated_cost)))

  def _ceiling(self, operation: UsageOperation) -> UsageCeiling:
    tokens_at_most = self._limits.tokens
    if operation == UsageOperation.GENERATION:
      return UsageCeiling(tokens_at_most=tokens_at_most)
    return UsageCeiling(weekly_regenerations_below=self._limits.weekly_regenerations, daily_regenerations_below=self._limits.daily_regenerations, tokens_at_most=tokens_at_most)

  def _resolve_cost(self, cost: int | None) -> int:
    if cost is None:
      return self._default_estimated_cost
    if cost < 0:
      raise ValueError("estimated_cost must be >= 0")
    return cost
