"""Storage contract behind the durable task queue."""

from __future__ import annotations

from typing import Any, Protocol

from app.queue.models import TaskOptions, TaskRecord


class TaskBroker(Protocol):
  """Holds task payloads and attempt bookkeeping; the sole arbiter of task ownership."""

  async def add(self, task_type: str, payload: dict[str, Any], options: TaskOptions) -> TaskRecord:
    """Store a new waiting task that is immediately claimable."""

  async def claim(self, task_type: str, *, limit: int, lock_seconds: float) -> list[TaskRecord]:
    """Lease up to `limit` due tasks, counting the new attempt on each."""

  async def reap_stalled(self, task_type: str) -> list[TaskRecord]:
    """Fail active tasks whose lease lapsed on their final attempt and return them."""

  async def renew(self, task_id: str, *, lock_seconds: float) -> bool:
    """Extend the lease of an active task; returns False when the lease was lost."""

  async def complete(self, task_id: str, result: dict[str, Any] | None) -> None:
    """Acknowledge a task after its handler returned."""

  async def retry(self, task_id: str, *, error: str, delay_seconds: float) -> None:
    """Return a task to the waiting set after a failed, non-final attempt."""

  async def fail(self, task_id: str, *, error: str) -> None:
    """Mark a task failed after its final attempt raised."""

  async def prune(self, task_type: str, *, keep_completed: int, keep_failed: int) -> int:
    """Trim finished tasks beyond the retention counts; returns rows removed."""

  async def get(self, task_id: str) -> TaskRecord | None:
    """Fetch one task for inspection."""
