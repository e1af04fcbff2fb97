"""Storage interfaces for background jobs."""

from __future__ import annotations

from typing import Any, Protocol

from app.jobs.models import JobRecord, JobStatus, JobType


class JobsRepository(Protocol):
  """Repository contract for job persistence."""

  async def create_job(self, *, user_id: int, job_type: JobType, payload: dict[str, Any]) -> JobRecord:
    """Persist a new pending job with progress 0."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def update_status(self, job_id: str, *, status: JobStatus, progress: int, result: dict[str, Any] | None = None, related_entity_id: int | None = None, error: str | None = None) -> JobRecord | None:
    """Apply a status/progress update; returns None when the job does not exist."""

  async def list_user_jobs(self, user_id: int, *, job_type: JobType | None = None, limit: int = 50) -> list[JobRecord]:
    """Return a user's jobs, newest first."""

  async def delete_job(self, job_id: str) -> bool:
    """Delete one job; returns whether a row was removed."""

  async def delete_terminal_before(self, cutoff_iso: str) -> int:
    """Delete completed/failed jobs last updated before the cutoff."""

  async def count_active_jobs(self) -> int:
    """Count jobs a worker is currently processing."""
