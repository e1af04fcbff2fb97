"""In-process task broker for local development and tests."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from app.queue.broker import TaskBroker
from app.queue.models import STALLED_TASK_ERROR, TaskOptions, TaskRecord, TaskState
from app.utils.clock import now_iso, to_iso

logger = logging.getLogger(__name__)


def _iso_from_epoch(epoch: float) -> str:
  return to_iso(datetime.fromtimestamp(epoch, tz=UTC))


class InMemoryTaskBroker(TaskBroker):
  """Keep tasks in a dict guarded by an asyncio lock; state is lost on restart."""

  def __init__(self) -> None:
    self._tasks: dict[str, TaskRecord] = {}
    # Float deadlines keep sub-second backoff and lease expiry exact.
    self._due_at: dict[str, float] = {}
    self._lease_until: dict[str, float] = {}
    self._finished_order: list[str] = []
    self._lock = asyncio.Lock()

  async def add(self, task_type: str, payload: dict[str, Any], options: TaskOptions) -> TaskRecord:
    async with self._lock:
      timestamp = now_iso()
      record = TaskRecord(
        task_id=uuid.uuid4().hex,
        task_type=task_type,
        payload=dict(payload),
        state=TaskState.WAITING,
        attempts_made=0,
        max_attempts=options.max_attempts,
        backoff=options.backoff,
        keep_completed=options.keep_completed,
        keep_failed=options.keep_failed,
        available_at=timestamp,
        created_at=timestamp,
      )
      self._tasks[record.task_id] = record
      self._due_at[record.task_id] = time.time()
      return record

  async def claim(self, task_type: str, *, limit: int, lock_seconds: float) -> list[TaskRecord]:
    if limit <= 0:
      return []
    async with self._lock:
      now = time.time()
      claimed: list[TaskRecord] = []
      for task_id, record in self._tasks.items():
        if len(claimed) >= limit:
          break
        if record.task_type != task_type:
          continue
        waiting_due = record.state == TaskState.WAITING and self._due_at.get(task_id, now) <= now
        stalled = self._lease_lapsed(task_id, record, now) and not record.is_final_attempt
        if not (waiting_due or stalled):
          continue
        if stalled:
          logger.warning("Redelivering stalled task task_id=%s attempts_made=%s", task_id, record.attempts_made)
        lease_until = now + lock_seconds
        updated = replace(record, state=TaskState.ACTIVE, attempts_made=record.attempts_made + 1, locked_until=_iso_from_epoch(lease_until))
        self._tasks[task_id] = updated
        self._lease_until[task_id] = lease_until
        claimed.append(updated)
      return claimed

  async def reap_stalled(self, task_type: str) -> list[TaskRecord]:
    async with self._lock:
      now = time.time()
      exhausted = [task_id for task_id, record in self._tasks.items() if record.task_type == task_type and record.is_final_attempt and self._lease_lapsed(task_id, record, now)]
      reaped: list[TaskRecord] = []
      for task_id in exhausted:
        logger.error("Failing stalled task on its final attempt task_id=%s attempts_made=%s", task_id, self._tasks[task_id].attempts_made)
        reaped.append(self._finish_locked(task_id, state=TaskState.FAILED, result=None, error=STALLED_TASK_ERROR))
      return reaped

  async def renew(self, task_id: str, *, lock_seconds: float) -> bool:
    async with self._lock:
      record = self._tasks.get(task_id)
      if record is None or record.state != TaskState.ACTIVE:
        return False
      lease_until = time.time() + lock_seconds
      self._lease_until[task_id] = lease_until
      self._tasks[task_id] = replace(record, locked_until=_iso_from_epoch(lease_until))
      return True

  async def complete(self, task_id: str, result: dict[str, Any] | None) -> None:
    await self._finish(task_id, state=TaskState.COMPLETED, result=result, error=None)

  async def fail(self, task_id: str, *, error: str) -> None:
    await self._finish(task_id, state=TaskState.FAILED, result=None, error=error)

  async def retry(self, task_id: str, *, error: str, delay_seconds: float) -> None:
    async with self._lock:
      record = self._tasks.get(task_id)
      if record is None:
        return
      due_at = time.time() + delay_seconds
      self._due_at[task_id] = due_at
      self._lease_until.pop(task_id, None)
      self._tasks[task_id] = replace(record, state=TaskState.WAITING, available_at=_iso_from_epoch(due_at), locked_until=None, last_error=error)

  async def prune(self, task_type: str, *, keep_completed: int, keep_failed: int) -> int:
    async with self._lock:
      removed = 0
      for state, keep in ((TaskState.COMPLETED, keep_completed), (TaskState.FAILED, keep_failed)):
        finished = [task_id for task_id in self._finished_order if self._tasks[task_id].task_type == task_type and self._tasks[task_id].state == state]
        # _finished_order is oldest first, so everything before the last `keep` entries goes.
        stale = finished[: max(len(finished) - keep, 0)]
        for task_id in stale:
          self._forget(task_id)
          removed += 1
      return removed

  async def get(self, task_id: str) -> TaskRecord | None:
    async with self._lock:
      return self._tasks.get(task_id)

  async def _finish(self, task_id: str, *, state: TaskState, result: dict[str, Any] | None, error: str | None) -> None:
    async with self._lock:
      if task_id in self._tasks:
        self._finish_locked(task_id, state=state, result=result, error=error)

  def _finish_locked(self, task_id: str, *, state: TaskState, result: dict[str, Any] | None, error: str | None) -> TaskRecord:
    record = self._tasks[task_id]
    self._lease_until.pop(task_id, None)
    self._due_at.pop(task_id, None)
    finished = replace(record, state=state, result=result, last_error=error or record.last_error, locked_until=None, finished_at=now_iso())
    self._tasks[task_id] = finished
    if task_id not in self._finished_order:
      self._finished_order.append(task_id)
    return finished

  def _lease_lapsed(self, task_id: str, record: TaskRecord, now: float) -> bool:
    return record.state == TaskState.ACTIVE and self._lease_until.get(task_id, now) < now

  def _forget(self, task_id: str) -> None:
    self._tasks.pop(task_id, None)
    self._due_at.pop(task_id, None)
    self._lease_until.pop(task_id, None)
    self._finished_order.remove(task_id)
