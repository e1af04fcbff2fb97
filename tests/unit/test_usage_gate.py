from __future__ import annotations

from datetime import timedelta

import pytest

from app.services.subscriptions import AccessLevel, SubscriptionStatus
from app.services.usage_gate import (
  CONCURRENT_CHANGE_REASON,
  SUBSCRIPTION_REQUIRED_REASON,
  TOKEN_LIMIT_REASON,
  PaywallType,
  UsageGate,
  UsageLimits,
  UsageOperation,
  UsageScope,
  denial_detail,
  evaluate_trial_limits,
  paywall_type,
  usage_delta,
)
from app.storage.usage_repo import UsageCounts, UsageDelta
from app.utils.clock import utc_now

LIMITS = UsageLimits(weekly_regenerations=2, daily_regenerations=5, tokens=1000)


def _counts(*, weekly: int = 0, daily: int = 0, tokens: int = 0) -> UsageCounts:
  return UsageCounts(user_id=42, weekly_regenerations=weekly, daily_regenerations=daily, tokens_used=tokens)


@pytest.fixture
def gate(usage_repo, subscription_repo) -> UsageGate:
  return UsageGate(usage_repo=usage_repo, subscription_repo=subscription_repo, limits=LIMITS, default_estimated_cost=100)


def test_single_breach_reasons_name_the_lifetime_cap() -> None:
  assert evaluate_trial_limits(_counts(weekly=2), LIMITS, operation=UsageOperation.REGENERATION, estimated_cost=0) == "Weekly plan regeneration limit exceeded (2 total lifetime)"
  assert evaluate_trial_limits(_counts(daily=5), LIMITS, operation=UsageOperation.REGENERATION, estimated_cost=0) == "Day-plan regeneration limit exceeded (5 total lifetime)"
  assert evaluate_trial_limits(_counts(tokens=950), LIMITS, operation=UsageOperation.REGENERATION, estimated_cost=100) == TOKEN_LIMIT_REASON


def test_multiple_breaches_are_listed_together() -> None:
  reason = evaluate_trial_limits(_counts(weekly=2, daily=5, tokens=1000), LIMITS, operation=UsageOperation.REGENERATION, estimated_cost=1)
  assert reason == "Trial limits exceeded: weekly regenerations, daily regenerations, tokens. Subscribe to continue."


def test_generation_only_checks_tokens() -> None:
  assert evaluate_trial_limits(_counts(weekly=9, daily=9), LIMITS, operation=UsageOperation.GENERATION, estimated_cost=100) is None
  assert evaluate_trial_limits(_counts(tokens=901), LIMITS, operation=UsageOperation.GENERATION, estimated_cost=100) == TOKEN_LIMIT_REASON


@pytest.mark.parametrize(
  ("reason", "expected"),
  [
    ("Weekly plan regeneration limit exceeded (2 total lifetime)", PaywallType.WEEKLY_LIMIT_EXCEEDED),
    ("WEEKLY cap reached", PaywallType.WEEKLY_LIMIT_EXCEEDED),
    ("Day-plan regeneration limit exceeded (5 total lifetime)", PaywallType.DAILY_REGENERATION_LIMIT_EXCEEDED),
    (TOKEN_LIMIT_REASON, PaywallType.TOKEN_LIMIT_EXCEEDED),
    ("Trial limits exceeded: weekly regenerations, tokens. Subscribe to continue.", PaywallType.TOKEN_LIMIT_EXCEEDED),
    ("Trial limits exceeded: weekly regenerations, daily regenerations. Subscribe to continue.", PaywallType.WEEKLY_LIMIT_EXCEEDED),
    (SUBSCRIPTION_REQUIRED_REASON, PaywallType.SUBSCRIPTION_REQUIRED),
    (None, PaywallType.SUBSCRIPTION_REQUIRED),
  ],
)
def test_paywall_type_mapping(reason: str | None, expected: PaywallType) -> None:
  assert paywall_type(reason) == expected


def test_usage_delta_counts_the_requested_scope() -> None:
  assert usage_delta(UsageOperation.REGENERATION, UsageScope.DAILY, 10) == UsageDelta(daily_regenerations=1, tokens=10)
  assert usage_delta(UsageOperation.REGENERATION, UsageScope.WEEKLY, 10) == UsageDelta(weekly_regenerations=1, tokens=10)
  assert usage_delta(UsageOperation.GENERATION, None, 10) == UsageDelta(tokens=10)


@pytest.mark.anyio
async def test_check_limit_does_not_mutate_counters(gate, usage_repo) -> None:
  decision = await gate.check_limit(42, UsageOperation.REGENERATION, UsageScope.DAILY)

  assert decision.allowed
  assert decision.access_level == AccessLevel.TRIAL
  assert decision.limits["daily_regenerations"] == {"used": 0, "limit": 5}
  assert await usage_repo.get_or_create(42) == _counts()


@pytest.mark.anyio
async def test_back_to_back_reservations_stop_at_the_cap(gate, usage_repo) -> None:
  decisions = [await gate.reserve(42, UsageOperation.REGENERATION, UsageScope.DAILY, estimated_cost=10) for _ in range(6)]

  assert [decision.allowed for decision in decisions] == [True] * 5 + [False]
  assert decisions[-1].reason == "Day-plan regeneration limit exceeded (5 total lifetime)"
  counts = await usage_repo.get_or_create(42)
  assert counts.daily_regenerations == 5
  assert counts.tokens_used == 50


@pytest.mark.anyio
async def test_release_refunds_and_clamps_at_zero(gate, usage_repo) -> None:
  await gate.reserve(42, UsageOperation.REGENERATION, UsageScope.WEEKLY, estimated_cost=30)
  await gate.release(42, UsageOperation.REGENERATION, UsageScope.WEEKLY, estimated_cost=30)
  await gate.release(42, UsageOperation.REGENERATION, UsageScope.WEEKLY, estimated_cost=30)

  assert await usage_repo.get_or_create(42) == _counts()


@pytest.mark.anyio
async def test_commit_records_actual_cost(gate, usage_repo) -> None:
  await usage_repo.get_or_create(42)
  await gate.commit(42, UsageOperation.GENERATION, actual_cost=250)

  assert (await usage_repo.get_or_create(42)).tokens_used == 250


@pytest.mark.anyio
async def test_active_subscribers_bypass_trial_limits(gate, usage_repo, subscription_repo) -> None:
  await usage_repo.get_or_create(42)
  await usage_repo.increment(42, UsageDelta(weekly_regenerations=9, tokens=5000))
  await subscription_repo.upsert(42, status=SubscriptionStatus.ACTIVE, plan="pro_monthly")

  decision = await gate.reserve(42, UsageOperation.REGENERATION, UsageScope.WEEKLY)

  assert decision.allowed
  assert decision.access_level == AccessLevel.UNLIMITED
  assert (await usage_repo.get_or_create(42)).weekly_regenerations == 10


@pytest.mark.anyio
async def test_lapsed_subscribers_are_blocked(gate, subscription_repo) -> None:
  await subscription_repo.upsert(42, status=SubscriptionStatus.CANCELLED, ends_at=utc_now() - timedelta(days=1))

  decision = await gate.reserve(42, UsageOperation.GENERATION)

  assert not decision.allowed
  assert decision.reason == SUBSCRIPTION_REQUIRED_REASON
  assert denial_detail(decision)["paywall_type"] == "subscription_required"


class LosingRaceUsageRepo:
  """Counters that always pass the read check but lose the conditional update."""

  async def get_or_create(self, user_id: int) -> UsageCounts:
    return UsageCounts(user_id=user_id, weekly_regenerations=0, daily_regenerations=4, tokens_used=0)

  async def increment_if_below(self, user_id, delta, ceiling) -> bool:
    return False


class NoSubscriptions:
  async def get(self, user_id: int):
    return None


@pytest.mark.anyio
async def test_lost_reservation_race_is_denied_with_retry_hint() -> None:
  gate = UsageGate(usage_repo=LosingRaceUsageRepo(), subscription_repo=NoSubscriptions(), limits=LIMITS, default_estimated_cost=0)

  decision = await gate.reserve(42, UsageOperation.REGENERATION, UsageScope.DAILY)

  assert not decision.allowed
  assert decision.reason == CONCURRENT_CHANGE_REASON
  assert decision.retryable
  detail = denial_detail(decision)
  assert detail["paywall_type"] is None
  assert detail["retryable"] is True


@pytest.mark.anyio
async def test_negative_cost_is_rejected() -> None:
  gate = UsageGate(usage_repo=LosingRaceUsageRepo(), subscription_repo=NoSubscriptions(), limits=LIMITS, default_estimated_cost=0)

  with pytest.raises(ValueError):
    await gate.check_limit(42, UsageOperation.GENERATION, estimated_cost=-1)
