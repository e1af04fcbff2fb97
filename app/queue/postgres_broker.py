"""Postgres-backed task broker using row leases and SKIP LOCKED claiming."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import ColumnElement, and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import require_session_factory
from app.queue.broker import TaskBroker
from app.queue.models import STALLED_TASK_ERROR, BackoffPolicy, TaskOptions, TaskRecord, TaskState
from app.schema.tasks import QueueTask
from app.utils.clock import iso_after, now_iso

logger = logging.getLogger(__name__)


def _lease_lapsed(now: str) -> ColumnElement[bool]:
  return and_(QueueTask.state == str(TaskState.ACTIVE), QueueTask.locked_until < now)


class PostgresTaskBroker(TaskBroker):
  """Durable broker; a crashed worker's task becomes claimable again once its lease lapses."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def add(self, task_type: str, payload: dict[str, Any], options: TaskOptions) -> TaskRecord:
    timestamp = now_iso()
    async with self._session_factory() as session:
      row = QueueTask(
        task_id=uuid.uuid4().hex,
        task_type=task_type,
        payload_json=payload,
        state=str(TaskState.WAITING),
        attempts_made=0,
        max_attempts=options.max_attempts,
        backoff_base_seconds=options.backoff.base_seconds,
        backoff_factor=options.backoff.factor,
        backoff_max_seconds=options.backoff.max_seconds,
        keep_completed=options.keep_completed,
        keep_failed=options.keep_failed,
        available_at=timestamp,
        created_at=timestamp,
      )
      session.add(row)
      await session.commit()
      return self._model_to_record(row)

  async def claim(self, task_type: str, *, limit: int, lock_seconds: float) -> list[TaskRecord]:
    if limit <= 0:
      return []
    now = now_iso()
    async with self._session_factory() as session:
      # Waiting tasks that are due, plus stalled tasks that still have attempts left.
      due = and_(QueueTask.state == str(TaskState.WAITING), QueueTask.available_at <= now)
      stalled = and_(_lease_lapsed(now), QueueTask.attempts_made < QueueTask.max_attempts)
      stmt = select(QueueTask).where(QueueTask.task_type == task_type, or_(due, stalled)).order_by(QueueTask.available_at, QueueTask.created_at).limit(limit).with_for_update(skip_locked=True)
      result = await session.execute(stmt)
      rows = list(result.scalars().all())
      locked_until = iso_after(lock_seconds)
      for row in rows:
        if row.state == str(TaskState.ACTIVE):
          logger.warning("Redelivering stalled task task_id=%s attempts_made=%s", row.task_id, row.attempts_made)
        row.state = str(TaskState.ACTIVE)
        row.attempts_made = row.attempts_made + 1
        row.locked_until = locked_until
      await session.commit()
      return [self._model_to_record(row) for row in rows]

  async def reap_stalled(self, task_type: str) -> list[TaskRecord]:
    now = now_iso()
    async with self._session_factory() as session:
      stmt = select(QueueTask).where(QueueTask.task_type == task_type, _lease_lapsed(now), QueueTask.attempts_made >= QueueTask.max_attempts).with_for_update(skip_locked=True)
      rows = list((await session.execute(stmt)).scalars().all())
      for row in rows:
        logger.error("Failing stalled task on its final attempt task_id=%s attempts_made=%s", row.task_id, row.attempts_made)
        row.state = str(TaskState.FAILED)
        row.last_error = STALLED_TASK_ERROR
        row.locked_until = None
        row.finished_at = now
      await session.commit()
      return [self._model_to_record(row) for row in rows]

  async def renew(self, task_id: str, *, lock_seconds: float) -> bool:
    async with self._session_factory() as session:
      row = await session.get(QueueTask, task_id, with_for_update=True)
      if row is None or row.state != str(TaskState.ACTIVE):
        return False
      row.locked_until = iso_after(lock_seconds)
      await session.commit()
      return True

  async def complete(self, task_id: str, result: dict[str, Any] | None) -> None:
    async with self._session_factory() as session:
      row = await session.get(QueueTask, task_id, with_for_update=True)
      if row is None:
        return
      row.state = str(TaskState.COMPLETED)
      row.result_json = result
      row.locked_until = None
      row.finished_at = now_iso()
      await session.commit()

  async def retry(self, task_id: str, *, error: str, delay_seconds: float) -> None:
    async with self._session_factory() as session:
      row = await session.get(QueueTask, task_id, with_for_update=True)
      if row is None:
        return
      row.state = str(TaskState.WAITING)
      row.available_at = iso_after(delay_seconds)
      row.locked_until = None
      row.last_error = error
      await session.commit()

  async def fail(self, task_id: str, *, error: str) -> None:
    async with self._session_factory() as session:
      row = await session.get(QueueTask, task_id, with_for_update=True)
      if row is None:
        return
      row.state = str(TaskState.FAILED)
      row.last_error = error
      row.locked_until = None
      row.finished_at = now_iso()
      await session.commit()

  async def prune(self, task_type: str, *, keep_completed: int, keep_failed: int) -> int:
    removed = 0
    async with self._session_factory() as session:
      for state, keep in ((TaskState.COMPLETED, keep_completed), (TaskState.FAILED, keep_failed)):
        # Everything past the newest `keep` finished rows of this state is housekeeping debris.
        stale_stmt = select(QueueTask.task_id).where(QueueTask.task_type == task_type, QueueTask.state == str(state)).order_by(QueueTask.finished_at.desc(), QueueTask.created_at.desc()).offset(keep)
        stale_ids = [str(task_id) for task_id in (await session.execute(stale_stmt)).scalars().all()]
        if not stale_ids:
          continue
        result = await session.execute(delete(QueueTask).where(QueueTask.task_id.in_(stale_ids)))
        removed += int(result.rowcount or 0)
      await session.commit()
    return removed

  async def get(self, task_id: str) -> TaskRecord | None:
    async with self._session_factory() as session:
      row = await session.get(QueueTask, task_id)
      if row is None:
        return None
      return self._model_to_record(row)

  def _model_to_record(self, row: QueueTask) -> TaskRecord:
    return TaskRecord(
      task_id=row.task_id,
      task_type=row.task_type,
      payload=dict(row.payload_json or {}),
      state=TaskState(row.state),
      attempts_made=row.attempts_made,
      max_attempts=row.max_attempts,
      backoff=BackoffPolicy(base_seconds=row.backoff_base_seconds, factor=row.backoff_factor, max_seconds=row.backoff_max_seconds),
      keep_completed=row.keep_completed,
      keep_failed=row.keep_failed,
      available_at=row.available_at,
      created_at=row.created_at,
      locked_until=row.locked_until,
      last_error=row.last_error,
      result=row.result_json,
      finished_at=row.finished_at,
    )
