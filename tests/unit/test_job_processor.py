from __future__ import annotations

from unittest.mock import MagicMock

import anyio
import pytest

from app.jobs.dispatch import JobProcessorRegistry
from app.jobs.kinds import default_job_kinds
from app.jobs.models import DailyRegenerationPayload, JobStatus, JobType, WeeklyGenerationPayload
from app.jobs.progress import RETRY_WAIT_PROGRESS
from app.jobs.worker import GenerationJobProcessor, build_task_payload, is_retryable_error, register_job_processors
from app.notifications.contracts import SuccessVariant
from app.queue.memory_broker import InMemoryTaskBroker
from app.queue.models import STALLED_TASK_ERROR, BackoffPolicy, TaskOptions, TaskRecord, TaskStalledError, TaskState
from app.queue.runner import TaskQueue
from app.services.generation import GenerationError, GenerationServiceRegistry, PlanArtifact, PlanDay
from app.services.progress_broadcaster import ProgressBroadcaster, ProgressEvent

PLAN_DAY = PlanDay(id=31, day_number=2, name="Lower Body", blocks=(({"name": "squat"}, {"name": "lunge"}),))
PLAN = PlanArtifact(id=501, name="Strength Week", days=(PLAN_DAY,), previous_id=None)


class ScriptedGeneration:
  """Generation fake that fails a fixed number of calls before succeeding."""

  def __init__(self, *, failures: int = 0, error: Exception | None = None) -> None:
    self.failures = failures
    self.error = error or RuntimeError("model timeout")
    self.calls = 0

  async def _attempt(self, on_progress) -> None:
    self.calls += 1
    if self.calls <= self.failures:
      raise self.error
    if on_progress is not None:
      await on_progress(40)
      await on_progress(80)

  async def generate(self, user_id, context, on_progress=None):
    await self._attempt(on_progress)
    return PLAN

  async def regenerate_weekly(self, user_id, feedback, on_progress=None):
    await self._attempt(on_progress)
    return PlanArtifact(id=502, name="Strength Week v2", days=PLAN.days, previous_id=PLAN.id)

  async def regenerate_daily(self, user_id, day_id, reason, styles, on_progress=None):
    await self._attempt(on_progress)
    return PLAN_DAY


class RecordingBroadcaster(ProgressBroadcaster):
  def __init__(self) -> None:
    super().__init__()
    self.events: list[ProgressEvent] = []

  def publish(self, user_id: int, progress: int, complete: bool = False, error: str | None = None) -> None:
    self.events.append(ProgressEvent(progress=progress, complete=complete, error=error))
    super().publish(user_id, progress, complete=complete, error=error)


def _processor(jobs_repo, generation: ScriptedGeneration, notifications: MagicMock, broadcaster: ProgressBroadcaster | None = None) -> GenerationJobProcessor:
  registry = GenerationServiceRegistry({"scripted": generation}, default="scripted")
  return GenerationJobProcessor(jobs_repo=jobs_repo, registry=JobProcessorRegistry(default_job_kinds()), generation=registry, notifications=notifications, broadcaster=broadcaster or ProgressBroadcaster())


async def _run_through_queue(jobs_repo, generation: ScriptedGeneration, *, max_attempts: int, job_type: JobType = JobType.WORKOUT_GENERATION, payload=None):
  notifications = MagicMock()
  broker = InMemoryTaskBroker()
  queue = TaskQueue(broker, default_options=TaskOptions(max_attempts=max_attempts, backoff=BackoffPolicy(base_seconds=0.0)), lock_seconds=30, poll_interval_seconds=0.01)
  register_job_processors(queue, _processor(jobs_repo, generation, notifications), concurrency=2)
  job = await jobs_repo.create_job(user_id=42, job_type=job_type, payload=(payload or WeeklyGenerationPayload()).to_dict())

  await queue.start()
  try:
    handle = await queue.enqueue(str(job_type), build_task_payload(job))
    with anyio.fail_after(5):
      while True:
        task = await broker.get(handle.task_id)
        if task is not None and task.state in {TaskState.COMPLETED, TaskState.FAILED}:
          break
        await anyio.sleep(0.01)
  finally:
    await queue.stop(grace_seconds=1)

  stored = await jobs_repo.get_job(job.job_id)
  return stored, task, notifications


@pytest.mark.anyio
async def test_successful_attempt_completes_job_once(jobs_repo) -> None:
  generation = ScriptedGeneration()

  stored, task, notifications = await _run_through_queue(jobs_repo, generation, max_attempts=3)

  assert stored.status == JobStatus.COMPLETED
  assert stored.progress == 100
  assert stored.related_entity_id == PLAN.id
  assert stored.result["workout_id"] == PLAN.id
  assert stored.result["plan_days_count"] == 1
  assert stored.result["total_exercises"] == 2
  assert task.state == TaskState.COMPLETED
  notifications.notify_success.assert_called_once_with(user_id=42, artifact_name="Strength Week", artifact_id=PLAN.id, variant=SuccessVariant.GENERATED)
  notifications.notify_failure.assert_not_called()


@pytest.mark.anyio
@pytest.mark.parametrize("max_attempts", [1, 3, 5])
async def test_exhausted_attempts_fail_job_exactly_once(jobs_repo, max_attempts: int) -> None:
  generation = ScriptedGeneration(failures=100)

  stored, task, notifications = await _run_through_queue(jobs_repo, generation, max_attempts=max_attempts)

  assert generation.calls == max_attempts
  assert stored.status == JobStatus.FAILED
  assert stored.progress == 0
  assert stored.error == "model timeout"
  # The processor returns a sentinel on the final attempt, so the queue acknowledges the task.
  assert task.state == TaskState.COMPLETED
  assert task.result["workout_name"] == "Failed Generation"
  notifications.notify_failure.assert_called_once_with(user_id=42, message="model timeout")
  notifications.notify_success.assert_not_called()


@pytest.mark.anyio
async def test_retry_then_success_records_single_completion(jobs_repo) -> None:
  generation = ScriptedGeneration(failures=2)

  stored, _, notifications = await _run_through_queue(jobs_repo, generation, max_attempts=3)

  assert generation.calls == 3
  assert stored.status == JobStatus.COMPLETED
  assert stored.error is None
  notifications.notify_success.assert_called_once()
  notifications.notify_failure.assert_not_called()


@pytest.mark.anyio
async def test_rate_limited_generation_fails_without_retry(jobs_repo) -> None:
  error = GenerationError("Generation service returned 429: slow down", retryable=False, status_code=429)
  generation = ScriptedGeneration(failures=100, error=error)

  stored, _, notifications = await _run_through_queue(jobs_repo, generation, max_attempts=5)

  assert generation.calls == 1
  assert stored.status == JobStatus.FAILED
  notifications.notify_failure.assert_called_once()


@pytest.mark.anyio
async def test_daily_regeneration_summarizes_plan_day(jobs_repo) -> None:
  payload = DailyRegenerationPayload(plan_day_id=31, regeneration_reason="knee pain", regeneration_styles=("low impact",))

  stored, _, notifications = await _run_through_queue(jobs_repo, ScriptedGeneration(), max_attempts=3, job_type=JobType.DAILY_WORKOUT_REGENERATION, payload=payload)

  assert stored.status == JobStatus.COMPLETED
  assert stored.related_entity_id == PLAN_DAY.id
  assert stored.result["plan_day_name"] == "Lower Body"
  notifications.notify_success.assert_called_once_with(user_id=42, artifact_name="Lower Body", artifact_id=PLAN_DAY.id, variant=SuccessVariant.DAILY_REGENERATED)


def _task_for(job, *, attempts_made: int = 1, max_attempts: int = 3) -> TaskRecord:
  return TaskRecord(task_id="task-1", task_type=str(job.job_type), payload=build_task_payload(job), state=TaskState.ACTIVE, attempts_made=attempts_made, max_attempts=max_attempts, backoff=BackoffPolicy(), keep_completed=5, keep_failed=5, available_at="2026-01-01T00:00:00Z", created_at="2026-01-01T00:00:00Z")


@pytest.mark.anyio
async def test_redelivery_of_terminal_job_is_skipped(jobs_repo) -> None:
  generation = ScriptedGeneration()
  notifications = MagicMock()
  processor = _processor(jobs_repo, generation, notifications)
  job = await jobs_repo.create_job(user_id=42, job_type=JobType.WORKOUT_GENERATION, payload={})
  await jobs_repo.update_status(job.job_id, status=JobStatus.PROCESSING, progress=5)
  await jobs_repo.update_status(job.job_id, status=JobStatus.COMPLETED, progress=100, result={"workout_id": 77}, related_entity_id=77)

  result = await processor.handle(_task_for(job, attempts_made=2))

  assert result == {"workout_id": 77}
  assert generation.calls == 0
  notifications.notify_success.assert_not_called()


@pytest.mark.anyio
async def test_queue_fallback_never_overwrites_terminal_job(jobs_repo) -> None:
  processor = _processor(jobs_repo, ScriptedGeneration(), MagicMock())
  done = await jobs_repo.create_job(user_id=42, job_type=JobType.WORKOUT_GENERATION, payload={})
  await jobs_repo.update_status(done.job_id, status=JobStatus.PROCESSING, progress=5)
  await jobs_repo.update_status(done.job_id, status=JobStatus.COMPLETED, progress=100, result={"workout_id": 1}, related_entity_id=1)
  stuck = await jobs_repo.create_job(user_id=42, job_type=JobType.WORKOUT_GENERATION, payload={})
  await jobs_repo.update_status(stuck.job_id, status=JobStatus.PROCESSING, progress=40)

  await processor.mark_failed_if_unfinished(_task_for(done), RuntimeError("worker crashed"))
  await processor.mark_failed_if_unfinished(_task_for(stuck), RuntimeError("worker crashed"))

  assert (await jobs_repo.get_job(done.job_id)).status == JobStatus.COMPLETED
  failed = await jobs_repo.get_job(stuck.job_id)
  assert failed.status == JobStatus.FAILED
  assert failed.error == "worker crashed"


@pytest.mark.anyio
async def test_failed_attempt_with_retries_left_parks_job_without_final_event(jobs_repo) -> None:
  broadcaster = RecordingBroadcaster()
  notifications = MagicMock()
  processor = _processor(jobs_repo, ScriptedGeneration(failures=1), notifications, broadcaster)
  job = await jobs_repo.create_job(user_id=42, job_type=JobType.WORKOUT_GENERATION, payload=WeeklyGenerationPayload().to_dict())

  with pytest.raises(RuntimeError, match="model timeout"):
    await processor.handle(_task_for(job, attempts_made=1, max_attempts=3))

  stored = await jobs_repo.get_job(job.job_id)
  assert stored.status == JobStatus.PROCESSING
  assert stored.progress == RETRY_WAIT_PROGRESS
  assert broadcaster.events[-1] == ProgressEvent(progress=RETRY_WAIT_PROGRESS)
  assert not any(event.complete or event.error for event in broadcaster.events)
  notifications.notify_failure.assert_not_called()
  notifications.notify_success.assert_not_called()


@pytest.mark.anyio
async def test_successful_attempt_ends_with_complete_event(jobs_repo) -> None:
  broadcaster = RecordingBroadcaster()
  processor = _processor(jobs_repo, ScriptedGeneration(), MagicMock(), broadcaster)
  job = await jobs_repo.create_job(user_id=42, job_type=JobType.WORKOUT_GENERATION, payload=WeeklyGenerationPayload().to_dict())

  async with broadcaster.subscribe(42) as subscription:
    await processor.handle(_task_for(job))
    with anyio.fail_after(1):
      received = [await subscription.next_event() for _ in broadcaster.events]

  assert received == broadcaster.events
  assert received[-1] == ProgressEvent(progress=100, complete=True)
  assert [event.complete for event in received].count(True) == 1


@pytest.mark.anyio
async def test_final_failed_attempt_ends_with_error_event(jobs_repo) -> None:
  broadcaster = RecordingBroadcaster()
  notifications = MagicMock()
  processor = _processor(jobs_repo, ScriptedGeneration(failures=100), notifications, broadcaster)
  job = await jobs_repo.create_job(user_id=42, job_type=JobType.WORKOUT_GENERATION, payload=WeeklyGenerationPayload().to_dict())

  await processor.handle(_task_for(job, attempts_made=3, max_attempts=3))

  assert broadcaster.events[-1] == ProgressEvent(progress=0, complete=False, error="model timeout")
  assert not any(event.complete for event in broadcaster.events)
  notifications.notify_failure.assert_called_once_with(user_id=42, message="model timeout")


@pytest.mark.anyio
async def test_queue_fallback_records_stalled_final_attempt(jobs_repo) -> None:
  processor = _processor(jobs_repo, ScriptedGeneration(), MagicMock())
  job = await jobs_repo.create_job(user_id=42, job_type=JobType.WORKOUT_GENERATION, payload={})
  await jobs_repo.update_status(job.job_id, status=JobStatus.PROCESSING, progress=40)

  await processor.mark_failed_if_unfinished(_task_for(job, attempts_made=3, max_attempts=3), TaskStalledError(STALLED_TASK_ERROR))

  stored = await jobs_repo.get_job(job.job_id)
  assert stored.status == JobStatus.FAILED
  assert stored.error == STALLED_TASK_ERROR


@pytest.mark.parametrize(
  ("exc", "expected"),
  [
    (RuntimeError("connection reset"), True),
    (RuntimeError("429 Too Many Requests"), False),
    (RuntimeError("Invalid API key supplied"), False),
    (GenerationError("upstream 503", retryable=True), True),
    (GenerationError("forbidden", retryable=False, status_code=403), False),
  ],
)
def test_is_retryable_error(exc: Exception, expected: bool) -> None:
  assert is_retryable_error(exc) is expected
