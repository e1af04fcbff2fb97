"""Submission, status and listing of generation jobs."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from app.jobs.models import JobPayload, JobRecord, JobType
from app.jobs.worker import build_task_payload
from app.queue.runner import TaskQueue
from app.services.usage_gate import UsageGate, UsageLimitExceededError, UsageOperation, UsageScope, denial_detail
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

_JOB_NOT_FOUND_MSG = "Job not found."
_QUEUE_UNAVAILABLE_MSG = "Job queue is unavailable; please retry."
MAX_LIST_LIMIT = 100

_USAGE_FOR_JOB_TYPE: dict[JobType, tuple[UsageOperation, UsageScope | None]] = {
  JobType.WORKOUT_GENERATION: (UsageOperation.GENERATION, None),
  JobType.WORKOUT_REGENERATION: (UsageOperation.REGENERATION, UsageScope.WEEKLY),
  JobType.DAILY_WORKOUT_REGENERATION: (UsageOperation.REGENERATION, UsageScope.DAILY),
}


def usage_for_job_type(job_type: JobType) -> tuple[UsageOperation, UsageScope | None]:
  return _USAGE_FOR_JOB_TYPE[job_type]


async def submit_job(*, user_id: int, job_type: JobType, payload: JobPayload, jobs_repo: JobsRepository, usage_gate: UsageGate, queue: TaskQueue) -> JobRecord:
  """Admit, persist and enqueue one job.

  Raises UsageLimitExceededError when admission is refused and a 409 when the
  reservation lost a race with a concurrent request; nothing is persisted then.
  A job that cannot be enqueued is removed again and its usage refunded, so callers
  never see a record that no worker will pick up.
  """
  if payload.job_type != job_type:
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Payload does not match job type {job_type}.")

  operation, scope = usage_for_job_type(job_type)
  decision = await usage_gate.reserve(user_id, operation, scope)
  if not decision.allowed:
    logger.info("Job admission denied user_id=%s job_type=%s reason=%s", user_id, job_type, decision.reason)
    if decision.retryable:
      raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=denial_detail(decision), headers={"Retry-After": "1"})
    raise UsageLimitExceededError(decision)

  try:
    record = await jobs_repo.create_job(user_id=user_id, job_type=job_type, payload=payload.to_dict())
  except Exception:
    await usage_gate.release(user_id, operation, scope)
    raise

  try:
    handle = await queue.enqueue(str(job_type), build_task_payload(record))
  except Exception as exc:  # noqa: BLE001
    logger.error("Enqueue failed; rolling back job job_id=%s job_type=%s error=%s", record.job_id, job_type, exc, exc_info=True)
    await _rollback_submission(record, usage_gate=usage_gate, jobs_repo=jobs_repo, operation=operation, scope=scope)
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_QUEUE_UNAVAILABLE_MSG) from exc

  logger.info("Job submitted job_id=%s task_id=%s job_type=%s user_id=%s", record.job_id, handle.task_id, job_type, user_id)
  return record


async def _rollback_submission(record: JobRecord, *, usage_gate: UsageGate, jobs_repo: JobsRepository, operation: UsageOperation, scope: UsageScope | None) -> None:
  try:
    await usage_gate.release(record.user_id, operation, scope)
  except Exception as exc:  # noqa: BLE001
    logger.error("Usage release failed user_id=%s job_id=%s error=%s", record.user_id, record.job_id, exc, exc_info=True)
  try:
    await jobs_repo.delete_job(record.job_id)
  except Exception as exc:  # noqa: BLE001
    logger.error("Orphaned job delete failed job_id=%s error=%s", record.job_id, exc, exc_info=True)


async def get_job_status(*, job_id: str, user_id: int, jobs_repo: JobsRepository) -> JobRecord:
  """Return the caller's job; other users' jobs are indistinguishable from missing ones."""
  record = await jobs_repo.get_job(job_id)
  if record is None or record.user_id != user_id:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=_JOB_NOT_FOUND_MSG)
  return record


async def list_jobs(*, user_id: int, jobs_repo: JobsRepository, job_type: JobType | None = None, limit: int = 50) -> list[JobRecord]:
  bounded = max(1, min(limit, MAX_LIST_LIMIT))
  return await jobs_repo.list_user_jobs(user_id, job_type=job_type, limit=bounded)
