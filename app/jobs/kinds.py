"""Per-kind generation steps, result summaries and failure sentinels."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from app.jobs.models import DailyRegenerationPayload, JobPayload, JobType, WeeklyGenerationPayload, WeeklyRegenerationPayload
from app.notifications.contracts import SuccessVariant
from app.services.generation import GenerationService, PlanArtifact, PlanDay, ProgressCallback

_PayloadT = TypeVar("_PayloadT")


def _expect(payload: JobPayload, expected: type[_PayloadT]) -> _PayloadT:
  if not isinstance(payload, expected):
    raise TypeError(f"Expected {expected.__name__}, got {type(payload).__name__}.")
  return payload


@dataclass(frozen=True)
class JobOutcome:
  """What a successful attempt produced."""

  summary: dict[str, Any]
  related_entity_id: int
  artifact_name: str
  variant: SuccessVariant


def summarize_plan(artifact: PlanArtifact, *, generation_time_ms: int) -> dict[str, Any]:
  return {"workout_id": artifact.id, "workout_name": artifact.name, "plan_days_count": len(artifact.days), "total_exercises": artifact.exercise_count, "generation_time_ms": generation_time_ms}


def summarize_plan_day(day: PlanDay, *, generation_time_ms: int) -> dict[str, Any]:
  return {"plan_day_id": day.id, "plan_day_name": day.display_name, "total_exercises": day.exercise_count, "generation_time_ms": generation_time_ms}


class WeeklyGenerationKind:
  job_type = JobType.WORKOUT_GENERATION

  def announce_steps(self, payload: JobPayload) -> tuple[int, ...]:
    typed = _expect(payload, WeeklyGenerationPayload)
    # Profile context is prepared before the model call, so it counts as an extra step.
    if typed.profile_data:
      return (5, 10)
    return (5,)

  async def run(self, *, user_id: int, payload: JobPayload, generation: GenerationService, on_progress: ProgressCallback, elapsed_ms: Callable[[], int]) -> JobOutcome:
    typed = _expect(payload, WeeklyGenerationPayload)
    context = {"custom_feedback": typed.custom_feedback, "timezone": typed.timezone, "profile_data": typed.profile_data}
    artifact = await generation.generate(user_id, context, on_progress)
    return JobOutcome(summary=summarize_plan(artifact, generation_time_ms=elapsed_ms()), related_entity_id=artifact.id, artifact_name=artifact.name, variant=SuccessVariant.GENERATED)

  def failure_sentinel(self, *, generation_time_ms: int) -> dict[str, Any]:
    return {"workout_id": 0, "workout_name": "Failed Generation", "plan_days_count": 0, "total_exercises": 0, "generation_time_ms": generation_time_ms}


class WeeklyRegenerationKind:
  job_type = JobType.WORKOUT_REGENERATION

  def announce_steps(self, payload: JobPayload) -> tuple[int, ...]:
    return (5,)

  async def run(self, *, user_id: int, payload: JobPayload, generation: GenerationService, on_progress: ProgressCallback, elapsed_ms: Callable[[], int]) -> JobOutcome:
    typed = _expect(payload, WeeklyRegenerationPayload)
    artifact = await generation.regenerate_weekly(user_id, typed.custom_feedback, on_progress)
    summary = summarize_plan(artifact, generation_time_ms=elapsed_ms())
    summary["previous_workout_id"] = artifact.previous_id
    return JobOutcome(summary=summary, related_entity_id=artifact.id, artifact_name=artifact.name, variant=SuccessVariant.REGENERATED)

  def failure_sentinel(self, *, generation_time_ms: int) -> dict[str, Any]:
    return {"workout_id": 0, "workout_name": "Failed Generation", "plan_days_count": 0, "total_exercises": 0, "generation_time_ms": generation_time_ms}


class DailyRegenerationKind:
  job_type = JobType.DAILY_WORKOUT_REGENERATION

  def announce_steps(self, payload: JobPayload) -> tuple[int, ...]:
    return (10,)

  async def run(self, *, user_id: int, payload: JobPayload, generation: GenerationService, on_progress: ProgressCallback, elapsed_ms: Callable[[], int]) -> JobOutcome:
    typed = _expect(payload, DailyRegenerationPayload)
    day = await generation.regenerate_daily(user_id, typed.plan_day_id, typed.regeneration_reason, typed.regeneration_styles, on_progress)
    return JobOutcome(summary=summarize_plan_day(day, generation_time_ms=elapsed_ms()), related_entity_id=day.id, artifact_name=day.display_name, variant=SuccessVariant.DAILY_REGENERATED)

  def failure_sentinel(self, *, generation_time_ms: int) -> dict[str, Any]:
    return {"plan_day_id": 0, "plan_day_name": "Failed Daily Regeneration", "total_exercises": 0, "generation_time_ms": generation_time_ms}


def default_job_kinds() -> list[WeeklyGenerationKind | WeeklyRegenerationKind | DailyRegenerationKind]:
  return [WeeklyGenerationKind(), WeeklyRegenerationKind(), DailyRegenerationKind()]
