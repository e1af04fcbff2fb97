"""Dependency-injected job kind dispatch helpers."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, Protocol

from app.jobs.kinds import JobOutcome
from app.jobs.models import JobPayload, JobType
from app.services.generation import GenerationService, ProgressCallback


class JobKindHandler(Protocol):
  """Processor contract for one job kind; all kinds share the worker's attempt state machine."""

  job_type: JobType

  def announce_steps(self, payload: JobPayload) -> tuple[int, ...]:
    """Progress values written when an attempt starts, in order."""

  async def run(self, *, user_id: int, payload: JobPayload, generation: GenerationService, on_progress: ProgressCallback, elapsed_ms: Callable[[], int]) -> JobOutcome:
    """Delegate to the generation service and summarize the artifact."""

  def failure_sentinel(self, *, generation_time_ms: int) -> dict[str, Any]:
    """Benign result returned to the queue after a terminal failure."""


class JobProcessorRegistry:
  """Registry mapping every job kind to its handler; incomplete registries are rejected."""

  def __init__(self, handlers: Iterable[JobKindHandler]) -> None:
    self._handlers: dict[JobType, JobKindHandler] = {}
    for handler in handlers:
      if handler.job_type in self._handlers:
        raise ValueError(f"Duplicate handler for job type: {handler.job_type}")
      self._handlers[handler.job_type] = handler

    missing = [job_type for job_type in JobType if job_type not in self._handlers]
    if missing:
      raise ValueError(f"Missing handlers for job types: {', '.join(missing)}")

  def resolve(self, job_type: JobType | str) -> JobKindHandler:
    """Resolve the handler for a job kind."""
    try:
      return self._handlers[JobType(job_type)]
    except ValueError as exc:
      raise ValueError(f"Unsupported job type: {job_type}") from exc

  @property
  def job_types(self) -> tuple[JobType, ...]:
    return tuple(self._handlers)
