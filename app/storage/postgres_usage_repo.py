"""Postgres-backed usage counter and subscription repositories."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import require_session_factory
from app.schema.subscriptions import Subscription
from app.schema.usage import UsageCounter
from app.services.subscriptions import SubscriptionStatus
from app.storage.usage_repo import SubscriptionRecord, SubscriptionRepository, UsageCeiling, UsageCounts, UsageDelta, UsageRepository
from app.utils.clock import now_iso


def _counts(row: UsageCounter) -> UsageCounts:
  return UsageCounts(user_id=row.user_id, weekly_regenerations=row.lifetime_weekly_regenerations, daily_regenerations=row.lifetime_daily_regenerations, tokens_used=row.lifetime_tokens_used)


def _increment_values(delta: UsageDelta) -> dict[str, Any]:
  # Expression increments keep concurrent commits from overwriting each other.
  return {
    "lifetime_weekly_regenerations": UsageCounter.lifetime_weekly_regenerations + delta.weekly_regenerations,
    "lifetime_daily_regenerations": UsageCounter.lifetime_daily_regenerations + delta.daily_regenerations,
    "lifetime_tokens_used": UsageCounter.lifetime_tokens_used + delta.tokens,
    "updated_at": now_iso(),
  }


class PostgresUsageRepository(UsageRepository):
  """Persist lifetime usage counters in Postgres."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def get_or_create(self, user_id: int) -> UsageCounts:
    async with self._session_factory() as session:
      row = await session.get(UsageCounter, user_id)
      if row is not None:
        return _counts(row)

      timestamp = now_iso()
      row = UsageCounter(user_id=user_id, lifetime_weekly_regenerations=0, lifetime_daily_regenerations=0, lifetime_tokens_used=0, created_at=timestamp, updated_at=timestamp)
      session.add(row)
      try:
        await session.commit()
      except IntegrityError:
        # A concurrent request created the row first; read the winner.
        await session.rollback()
        existing = await session.get(UsageCounter, user_id)
        if existing is None:
          raise
        return _counts(existing)
      return _counts(row)

  async def increment(self, user_id: int, delta: UsageDelta) -> None:
    async with self._session_factory() as session:
      await session.execute(update(UsageCounter).where(UsageCounter.user_id == user_id).values(**_increment_values(delta)))
      await session.commit()

  async def increment_if_below(self, user_id: int, delta: UsageDelta, ceiling: UsageCeiling) -> bool:
    conditions = [UsageCounter.user_id == user_id]
    if ceiling.weekly_regenerations_below is not None:
      conditions.append(UsageCounter.lifetime_weekly_regenerations < ceiling.weekly_regenerations_below)
    if ceiling.daily_regenerations_below is not None:
      conditions.append(UsageCounter.lifetime_daily_regenerations < ceiling.daily_regenerations_below)
    if ceiling.tokens_at_most is not None:
      conditions.append(UsageCounter.lifetime_tokens_used + delta.tokens <= ceiling.tokens_at_most)

    async with self._session_factory() as session:
      result = await session.execute(update(UsageCounter).where(*conditions).values(**_increment_values(delta)))
      await session.commit()
      return (result.rowcount or 0) == 1

  async def decrement(self, user_id: int, delta: UsageDelta) -> None:
    def _clamped(column: Any, amount: int) -> Any:
      return case((column > amount, column - amount), else_=0)

    values = {
      "lifetime_weekly_regenerations": _clamped(UsageCounter.lifetime_weekly_regenerations, delta.weekly_regenerations),
      "lifetime_daily_regenerations": _clamped(UsageCounter.lifetime_daily_regenerations, delta.daily_regenerations),
      "lifetime_tokens_used": _clamped(UsageCounter.lifetime_tokens_used, delta.tokens),
      "updated_at": now_iso(),
    }
    async with self._session_factory() as session:
      await session.execute(update(UsageCounter).where(UsageCounter.user_id == user_id).values(**values))
      await session.commit()


class PostgresSubscriptionRepository(SubscriptionRepository):
  """Persist subscription state driven by billing events."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def get(self, user_id: int) -> SubscriptionRecord | None:
    async with self._session_factory() as session:
      result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
      row = result.scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

  async def upsert(self, user_id: int, *, status: str, plan: str | None = None, started_at: datetime | None = None, ends_at: datetime | None = None) -> SubscriptionRecord:
    status = str(SubscriptionStatus(status))
    async with self._session_factory() as session:
      result = await session.execute(select(Subscription).where(Subscription.user_id == user_id).with_for_update())
      row = result.scalar_one_or_none()
      if row is None:
        row = Subscription(user_id=user_id, status=status, plan=plan, started_at=started_at, ends_at=ends_at, updated_at=now_iso())
        session.add(row)
      else:
        row.status = status
        row.updated_at = now_iso()
        if plan is not None:
          row.plan = plan
        if started_at is not None:
          row.started_at = started_at
        if ends_at is not None:
          row.ends_at = ends_at
      await session.commit()
      return self._model_to_record(row)

  def _model_to_record(self, row: Subscription) -> SubscriptionRecord:
    return SubscriptionRecord(user_id=row.user_id, status=row.status, plan=row.plan, started_at=row.started_at, ends_at=row.ends_at)
