from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.queue.broker import TaskBroker
from app.queue.memory_broker import InMemoryTaskBroker
from app.queue.models import BackoffPolicy, TaskOptions
from app.queue.postgres_broker import PostgresTaskBroker
from app.queue.runner import TaskQueue


def get_task_broker(settings: Settings, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> TaskBroker:
  """Factory to get the configured task broker."""
  if settings.queue_provider == "memory":
    return InMemoryTaskBroker()
  return PostgresTaskBroker(session_factory)


def default_task_options(settings: Settings) -> TaskOptions:
  backoff = BackoffPolicy(base_seconds=settings.queue_backoff_base_seconds, factor=settings.queue_backoff_factor, max_seconds=settings.queue_backoff_max_seconds)
  return TaskOptions(max_attempts=settings.queue_max_attempts, backoff=backoff, keep_completed=settings.queue_keep_completed, keep_failed=settings.queue_keep_failed)


def build_task_queue(settings: Settings, *, broker: TaskBroker | None = None, session_factory: async_sessionmaker[AsyncSession] | None = None) -> TaskQueue:
  resolved = broker or get_task_broker(settings, session_factory=session_factory)
  return TaskQueue(resolved, default_options=default_task_options(settings), lock_seconds=settings.queue_lock_seconds, poll_interval_seconds=settings.queue_poll_interval_seconds)
