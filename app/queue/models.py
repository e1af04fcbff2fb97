"""Value types shared by the task queue, its brokers and its processors."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

STALLED_TASK_ERROR = "Worker lost the task lease on its final attempt"


class TaskStalledError(RuntimeError):
  """Reported to failed-task listeners when a final attempt lost its lease without finishing."""


class TaskState(StrEnum):
  WAITING = "waiting"
  ACTIVE = "active"
  COMPLETED = "completed"
  FAILED = "failed"


@dataclass(frozen=True)
class BackoffPolicy:
  """Exponential redelivery delay: base * factor**(attempt - 1), capped at max_seconds."""

  base_seconds: float = 5.0
  factor: float = 2.0
  max_seconds: float = 300.0

  def delay_for(self, attempts_made: int) -> float:
    exponent = max(attempts_made - 1, 0)
    return min(self.base_seconds * (self.factor**exponent), self.max_seconds)


@dataclass(frozen=True)
class TaskOptions:
  max_attempts: int = 3
  backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
  keep_completed: int = 50
  keep_failed: int = 20

  def __post_init__(self) -> None:
    if self.max_attempts < 1:
      raise ValueError("max_attempts must be at least 1.")


@dataclass(frozen=True)
class TaskHandle:
  task_id: str
  task_type: str


@dataclass(frozen=True)
class TaskRecord:
  """Snapshot of one task as seen by the processor handling the current attempt."""

  task_id: str
  task_type: str
  payload: dict[str, Any]
  state: TaskState
  attempts_made: int
  max_attempts: int
  backoff: BackoffPolicy
  keep_completed: int
  keep_failed: int
  available_at: str
  created_at: str
  locked_until: str | None = None
  last_error: str | None = None
  result: dict[str, Any] | None = None
  finished_at: str | None = None

  @property
  def is_final_attempt(self) -> bool:
    return self.attempts_made >= self.max_attempts


TaskHandler = Callable[[TaskRecord], Awaitable[dict[str, Any] | None]]
FailedTaskListener = Callable[[TaskRecord, BaseException], Awaitable[None]]
