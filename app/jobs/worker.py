"""Queue handlers that execute generation jobs and finalize their records."""

from __future__ import annotations

import logging
import time
from typing import Any

from app.jobs.dispatch import JobProcessorRegistry
from app.jobs.models import JobRecord, JobStatus, JobType, parse_payload
from app.jobs.progress import JobProgressTracker
from app.notifications.contracts import NotificationDispatcher, SuccessVariant
from app.queue.models import TaskRecord
from app.queue.runner import TaskQueue
from app.services.generation import GenerationError, GenerationServiceRegistry
from app.services.progress_broadcaster import ProgressBroadcaster
from app.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

_NON_RETRYABLE_MARKERS = (
  "429",
  "rate limit",
  "rate_limit",
  "too many requests",
  "quota exceeded",
  "resource exhausted",
  "401",
  "403",
  "unauthorized",
  "forbidden",
  "invalid api key",
  "invalid_api_key",
)


def is_retryable_error(exc: BaseException) -> bool:
  """Auth and rate-limit failures will not clear up on redelivery."""
  if isinstance(exc, GenerationError) and not exc.retryable:
    return False
  if "ratelimit" in type(exc).__name__.lower():
    return False
  message = str(exc).lower()
  return not any(marker in message for marker in _NON_RETRYABLE_MARKERS)


def build_task_payload(job: JobRecord) -> dict[str, Any]:
  """Task payloads carry the job's logical input so a worker can run without re-reading it."""
  return {"job_id": job.job_id, "user_id": job.user_id, "job_type": str(job.job_type), "payload": dict(job.payload)}


class GenerationJobProcessor:
  """Drive one delivery attempt: announce, delegate, then record the outcome.

  Outcomes:
    - success: COMPLETED at 100 with the summary, success notification, final event with complete=True;
    - failure with attempts left: PROCESSING at a low value, non-terminal event, error re-raised so the
      queue schedules a backoff redelivery;
    - failure on the final attempt (or a non-retryable error): FAILED at 0, failure notification,
      event carrying the error, and a sentinel result returned instead of raising.

  Returning the sentinel keeps the job record authoritative: the queue's own failure
  bookkeeping never runs for a job this processor already finalized.
  """

  def __init__(self, *, jobs_repo: JobsRepository, registry: JobProcessorRegistry, generation: GenerationServiceRegistry, notifications: NotificationDispatcher, broadcaster: ProgressBroadcaster) -> None:
    self._jobs_repo = jobs_repo
    self._registry = registry
    self._generation = generation
    self._notifications = notifications
    self._broadcaster = broadcaster

  async def handle(self, task: TaskRecord) -> dict[str, Any]:
    job_id = str(task.payload["job_id"])
    user_id = int(task.payload["user_id"])
    job_type = JobType(task.payload["job_type"])
    handler = self._registry.resolve(job_type)

    # Redelivery after a finalized attempt (e.g. a crash before the ack) must not run the job twice.
    existing = await self._load_job(job_id)
    if existing is not None and existing.is_terminal:
      logger.info("Skipping redelivered task for terminal job job_id=%s status=%s", job_id, existing.status)
      if existing.status == JobStatus.COMPLETED and existing.result is not None:
        return existing.result
      return handler.failure_sentinel(generation_time_ms=0)

    payload = parse_payload(job_type, task.payload.get("payload") or {})
    tracker = JobProgressTracker(job_id=job_id, user_id=user_id, jobs_repo=self._jobs_repo, broadcaster=self._broadcaster)
    started = time.monotonic()

    def elapsed_ms() -> int:
      return int((time.monotonic() - started) * 1000)

    logger.info("Starting job job_id=%s job_type=%s user_id=%s attempt=%s/%s", job_id, job_type, user_id, task.attempts_made, task.max_attempts)
    first_step, *later_steps = handler.announce_steps(payload)
    await tracker.announce(first_step)
    for step in later_steps:
      await tracker.advance(step)

    try:
      outcome = await handler.run(user_id=user_id, payload=payload, generation=self._generation.resolve(), on_progress=tracker.advance, elapsed_ms=elapsed_ms)
    except Exception as exc:  # noqa: BLE001
      message = str(exc) or type(exc).__name__
      retryable = is_retryable_error(exc)
      if retryable and not task.is_final_attempt:
        logger.warning("Job attempt failed; will retry job_id=%s attempt=%s/%s error=%s", job_id, task.attempts_made, task.max_attempts, message)
        await tracker.retrying()
        raise

      logger.error("Job failed job_id=%s job_type=%s attempt=%s/%s retryable=%s error=%s", job_id, job_type, task.attempts_made, task.max_attempts, retryable, message, exc_info=True)
      await tracker.fail(message=message)
      self._notify_failure(user_id=user_id, message=message)
      tracker.publish_failed(message)
      return handler.failure_sentinel(generation_time_ms=elapsed_ms())

    await tracker.complete(result=outcome.summary, related_entity_id=outcome.related_entity_id)
    self._notify_success(user_id=user_id, outcome_name=outcome.artifact_name, artifact_id=outcome.related_entity_id, variant=outcome.variant)
    tracker.publish_complete()
    logger.info("Job completed job_id=%s job_type=%s related_entity_id=%s generation_time_ms=%s", job_id, job_type, outcome.related_entity_id, outcome.summary.get("generation_time_ms"))
    return outcome.summary

  async def mark_failed_if_unfinished(self, task: TaskRecord, exc: BaseException) -> None:
    """Queue fallback for attempts that raised past the processor's own outcome handling."""
    job_id = str(task.payload.get("job_id"))
    job = await self._load_job(job_id)
    if job is None or job.is_terminal:
      return

    message = str(exc) or type(exc).__name__
    try:
      await self._jobs_repo.update_status(job_id, status=JobStatus.FAILED, progress=0, error=message)
    except Exception as write_exc:  # noqa: BLE001
      logger.error("Fallback FAILED write failed job_id=%s error=%s", job_id, write_exc, exc_info=True)
      return
    logger.error("Job marked failed by queue fallback job_id=%s error=%s", job_id, message)

  async def _load_job(self, job_id: str) -> JobRecord | None:
    try:
      return await self._jobs_repo.get_job(job_id)
    except Exception as exc:  # noqa: BLE001
      logger.error("Job lookup failed job_id=%s error=%s", job_id, exc, exc_info=True)
      return None

  def _notify_success(self, *, user_id: int, outcome_name: str, artifact_id: int, variant: SuccessVariant) -> None:
    try:
      self._notifications.notify_success(user_id=user_id, artifact_name=outcome_name, artifact_id=artifact_id, variant=variant)
    except Exception as exc:  # noqa: BLE001
      logger.error("Success notification failed user_id=%s error=%s", user_id, exc, exc_info=True)

  def _notify_failure(self, *, user_id: int, message: str) -> None:
    try:
      self._notifications.notify_failure(user_id=user_id, message=message)
    except Exception as exc:  # noqa: BLE001
      logger.error("Failure notification failed user_id=%s error=%s", user_id, exc, exc_info=True)


def register_job_processors(queue: TaskQueue, processor: GenerationJobProcessor, *, concurrency: int) -> None:
  """Attach the processor to every job kind's task type plus the failed-task fallback."""
  for job_type in JobType:
    queue.register_processor(str(job_type), concurrency, processor.handle)
  queue.on_failed(processor.mark_failed_if_unfinished)
