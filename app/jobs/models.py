"""Domain models for asynchronous workout generation jobs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, ClassVar


class JobStatus(StrEnum):
  PENDING = "pending"
  PROCESSING = "processing"
  COMPLETED = "completed"
  FAILED = "failed"


class JobType(StrEnum):
  """Closed set of job kinds; each kind doubles as its queue task type."""

  WORKOUT_GENERATION = "workout_generation"
  WORKOUT_REGENERATION = "workout_regeneration"
  DAILY_WORKOUT_REGENERATION = "daily_workout_regeneration"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# processing -> processing carries progress updates within and across attempts.
_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
  JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
  JobStatus.PROCESSING: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}),
  JobStatus.COMPLETED: frozenset(),
  JobStatus.FAILED: frozenset(),
}


class InvalidJobTransitionError(ValueError):
  """Raised when a status update would move a job backwards."""


def is_terminal(status: JobStatus | str) -> bool:
  return JobStatus(status) in TERMINAL_STATUSES


def can_transition(current: JobStatus | str, target: JobStatus | str) -> bool:
  """Return whether a job in `current` may move to `target`."""

  return JobStatus(target) in _ALLOWED_TRANSITIONS[JobStatus(current)]


def ensure_transition(current: JobStatus | str, target: JobStatus | str) -> None:
  if not can_transition(current, target):
    raise InvalidJobTransitionError(f"Job status cannot move from {current} to {target}.")


@dataclass
class JobRecord:
  """Represents a background workout generation job."""

  job_id: str
  user_id: int
  job_type: JobType
  status: JobStatus
  created_at: str
  updated_at: str
  progress: int = 0
  payload: dict[str, Any] = field(default_factory=dict)
  result: dict[str, Any] | None = None
  error: str | None = None
  related_entity_id: int | None = None
  completed_at: str | None = None

  @property
  def is_terminal(self) -> bool:
    return is_terminal(self.status)


@dataclass(frozen=True)
class WeeklyGenerationPayload:
  """Input for generating a first weekly plan."""

  job_type: ClassVar[JobType] = JobType.WORKOUT_GENERATION

  custom_feedback: str | None = None
  timezone: str | None = None
  profile_data: dict[str, Any] | None = None

  def to_dict(self) -> dict[str, Any]:
    return asdict(self)

  @classmethod
  def from_dict(cls, data: dict[str, Any]) -> WeeklyGenerationPayload:
    return cls(custom_feedback=data.get("custom_feedback"), timezone=data.get("timezone"), profile_data=data.get("profile_data"))


@dataclass(frozen=True)
class WeeklyRegenerationPayload:
  """Input for replacing the active weekly plan."""

  job_type: ClassVar[JobType] = JobType.WORKOUT_REGENERATION

  custom_feedback: str | None = None
  profile_data: dict[str, Any] | None = None

  def to_dict(self) -> dict[str, Any]:
    return asdict(self)

  @classmethod
  def from_dict(cls, data: dict[str, Any]) -> WeeklyRegenerationPayload:
    return cls(custom_feedback=data.get("custom_feedback"), profile_data=data.get("profile_data"))


@dataclass(frozen=True)
class DailyRegenerationPayload:
  """Input for regenerating one day of the active plan."""

  job_type: ClassVar[JobType] = JobType.DAILY_WORKOUT_REGENERATION

  plan_day_id: int
  regeneration_reason: str
  regeneration_styles: tuple[str, ...] = ()
  thread_id: str | None = None

  def to_dict(self) -> dict[str, Any]:
    data = asdict(self)
    data["regeneration_styles"] = list(self.regeneration_styles)
    return data

  @classmethod
  def from_dict(cls, data: dict[str, Any]) -> DailyRegenerationPayload:
    if data.get("plan_day_id") is None:
      raise ValueError("plan_day_id is required for daily regeneration.")
    styles = data.get("regeneration_styles") or ()
    return cls(plan_day_id=int(data["plan_day_id"]), regeneration_reason=str(data.get("regeneration_reason") or ""), regeneration_styles=tuple(str(style) for style in styles), thread_id=data.get("thread_id"))


JobPayload = WeeklyGenerationPayload | WeeklyRegenerationPayload | DailyRegenerationPayload

PAYLOAD_TYPES: dict[JobType, type[WeeklyGenerationPayload] | type[WeeklyRegenerationPayload] | type[DailyRegenerationPayload]] = {
  JobType.WORKOUT_GENERATION: WeeklyGenerationPayload,
  JobType.WORKOUT_REGENERATION: WeeklyRegenerationPayload,
  JobType.DAILY_WORKOUT_REGENERATION: DailyRegenerationPayload,
}


def parse_payload(job_type: JobType | str, data: dict[str, Any]) -> JobPayload:
  """Decode a stored payload into the typed variant for its job kind."""

  return PAYLOAD_TYPES[JobType(job_type)].from_dict(data)
