"""Shared fixtures: environment defaults and a throwaway sqlite database per test."""

from __future__ import annotations

import os
from dataclasses import replace

# Required settings must exist before any app module reads them.
os.environ["FITPLAN_ALLOWED_ORIGINS"] = "http://localhost"
os.environ["FITPLAN_QUEUE_PROVIDER"] = "memory"
os.environ["FITPLAN_WORKER_ENABLED"] = "0"
os.environ.pop("FITPLAN_PG_DSN", None)
os.environ.pop("DATABASE_URL", None)

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.config import Settings, get_settings  # noqa: E402
from app.core.database import create_all_tables  # noqa: E402
from app.storage.postgres_jobs_repo import PostgresJobsRepository  # noqa: E402
from app.storage.postgres_usage_repo import PostgresSubscriptionRepository, PostgresUsageRepository  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
async def session_factory(tmp_path):
  # A file database keeps every pooled connection on the same data.
  engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fitplan.db'}")
  await create_all_tables(engine)
  yield async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
  await engine.dispose()


@pytest.fixture
def jobs_repo(session_factory) -> PostgresJobsRepository:
  return PostgresJobsRepository(session_factory)


@pytest.fixture
def usage_repo(session_factory) -> PostgresUsageRepository:
  return PostgresUsageRepository(session_factory)


@pytest.fixture
def subscription_repo(session_factory) -> PostgresSubscriptionRepository:
  return PostgresSubscriptionRepository(session_factory)


@pytest.fixture
def worker_settings() -> Settings:
  """Settings for in-process workers that retry immediately and poll fast."""
  return replace(get_settings(), queue_provider="memory", worker_enabled=True, queue_poll_interval_seconds=0.01, queue_backoff_base_seconds=0.0, queue_lock_seconds=30, billing_webhook_auth="Bearer whsec-test")
