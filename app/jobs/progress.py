"""Per-attempt job progress tracking."""

from __future__ import annotations

import logging
from typing import Any

from app.jobs.models import JobRecord, JobStatus
from app.services.progress_broadcaster import ProgressBroadcaster
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

# Milestones from the generation service never reach 100 before the outcome is recorded.
MAX_IN_FLIGHT_PROGRESS = 99
RETRY_WAIT_PROGRESS = 10


class JobProgressTracker:
  """Track one delivery attempt: write the job record, then mirror the value to subscribers.

  Progress never decreases within an attempt. Store failures are logged and
  swallowed because losing a status write is preferable to aborting the attempt.
  """

  def __init__(self, *, job_id: str, user_id: int, jobs_repo: JobsRepository, broadcaster: ProgressBroadcaster) -> None:
    self._job_id = job_id
    self._user_id = user_id
    self._jobs_repo = jobs_repo
    self._broadcaster = broadcaster
    self._progress = 0

  @property
  def progress(self) -> int:
    return self._progress

  async def announce(self, progress: int) -> JobRecord | None:
    """Move the job to processing at the attempt's starting value."""
    self._progress = max(0, min(progress, MAX_IN_FLIGHT_PROGRESS))
    record = await self._write(status=JobStatus.PROCESSING, progress=self._progress)
    self._broadcaster.publish(self._user_id, self._progress)
    return record

  async def advance(self, progress: int) -> None:
    """Record a milestone reported by the generation service."""
    clamped = max(self._progress, min(int(progress), MAX_IN_FLIGHT_PROGRESS))
    if clamped == self._progress:
      return
    self._progress = clamped
    await self._write(status=JobStatus.PROCESSING, progress=clamped)
    self._broadcaster.publish(self._user_id, clamped)

  async def retrying(self) -> JobRecord | None:
    """Park the job at a non-terminal value while the queue schedules a redelivery."""
    self._progress = RETRY_WAIT_PROGRESS
    record = await self._write(status=JobStatus.PROCESSING, progress=RETRY_WAIT_PROGRESS)
    self._broadcaster.publish(self._user_id, RETRY_WAIT_PROGRESS)
    return record

  async def complete(self, *, result: dict[str, Any], related_entity_id: int | None) -> JobRecord | None:
    self._progress = 100
    return await self._write(status=JobStatus.COMPLETED, progress=100, result=result, related_entity_id=related_entity_id)

  async def fail(self, *, message: str) -> JobRecord | None:
    self._progress = 0
    return await self._write(status=JobStatus.FAILED, progress=0, error=message)

  def publish_complete(self) -> None:
    self._broadcaster.publish(self._user_id, 100, complete=True)

  def publish_failed(self, message: str) -> None:
    self._broadcaster.publish(self._user_id, 0, complete=False, error=message)

  async def _write(self, *, status: JobStatus, progress: int, result: dict[str, Any] | None = None, related_entity_id: int | None = None, error: str | None = None) -> JobRecord | None:
    try:
      record = await self._jobs_repo.update_status(self._job_id, status=status, progress=progress, result=result, related_entity_id=related_entity_id, error=error)
    except Exception as exc:  # noqa: BLE001
      logger.error("Job status write failed job_id=%s status=%s progress=%s error=%s", self._job_id, status, progress, exc, exc_info=True)
      return None

    if record is None:
      logger.warning("Job status write skipped; job not found job_id=%s status=%s", self._job_id, status)
    return record
