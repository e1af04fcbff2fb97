from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator

from app.jobs.models import DailyRegenerationPayload, JobRecord, JobStatus, JobType, WeeklyGenerationPayload, WeeklyRegenerationPayload

MAX_FEEDBACK_CHARS = 1000
MAX_REASON_CHARS = 500
MAX_REGENERATION_STYLES = 5


class WorkoutGenerationRequest(BaseModel):
  """Request payload for generating a first weekly plan."""

  custom_feedback: StrictStr | None = Field(default=None, alias="customFeedback", max_length=MAX_FEEDBACK_CHARS)
  timezone: StrictStr | None = Field(default=None, max_length=64, examples=["Europe/Berlin"])
  profile_data: dict[str, Any] | None = Field(default=None, alias="profileData", description="Optional profile snapshot used as generation context.")
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  def to_payload(self) -> WeeklyGenerationPayload:
    return WeeklyGenerationPayload(custom_feedback=self.custom_feedback, timezone=self.timezone, profile_data=self.profile_data)


class WorkoutRegenerationRequest(BaseModel):
  """Request payload for replacing the active weekly plan."""

  custom_feedback: StrictStr | None = Field(default=None, alias="customFeedback", max_length=MAX_FEEDBACK_CHARS)
  profile_data: dict[str, Any] | None = Field(default=None, alias="profileData")
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  def to_payload(self) -> WeeklyRegenerationPayload:
    return WeeklyRegenerationPayload(custom_feedback=self.custom_feedback, profile_data=self.profile_data)


class DailyRegenerationRequest(BaseModel):
  """Request payload for regenerating one day of the active plan."""

  plan_day_id: StrictInt = Field(alias="planDayId", gt=0)
  regeneration_reason: StrictStr = Field(alias="regenerationReason", min_length=1, max_length=MAX_REASON_CHARS)
  regeneration_styles: list[StrictStr] = Field(default_factory=list, alias="regenerationStyles", max_length=MAX_REGENERATION_STYLES)
  thread_id: StrictStr | None = Field(default=None, alias="threadId")
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  @field_validator("regeneration_reason")
  @classmethod
  def strip_reason(cls, value: str) -> str:
    stripped = value.strip()
    if not stripped:
      raise ValueError("regenerationReason must not be blank.")
    return stripped

  def to_payload(self) -> DailyRegenerationPayload:
    return DailyRegenerationPayload(plan_day_id=self.plan_day_id, regeneration_reason=self.regeneration_reason, regeneration_styles=tuple(self.regeneration_styles), thread_id=self.thread_id)


class JobCreateResponse(BaseModel):
  """Response returned once a job is accepted."""

  job_id: StrictStr = Field(alias="jobId")
  status: JobStatus
  model_config = ConfigDict(populate_by_name=True)


class JobStatusResponse(BaseModel):
  """Status payload for a background job."""

  job_id: StrictStr = Field(alias="jobId")
  job_type: JobType = Field(alias="jobType")
  status: JobStatus
  progress: int
  result: dict[str, Any] | None = None
  error: StrictStr | None = None
  related_entity_id: int | None = Field(default=None, alias="relatedEntityId")
  created_at: StrictStr = Field(alias="createdAt")
  updated_at: StrictStr = Field(alias="updatedAt")
  completed_at: StrictStr | None = Field(default=None, alias="completedAt")
  model_config = ConfigDict(populate_by_name=True)

  @classmethod
  def from_record(cls, record: JobRecord) -> JobStatusResponse:
    return cls(job_id=record.job_id, job_type=record.job_type, status=record.status, progress=record.progress, result=record.result, error=record.error, related_entity_id=record.related_entity_id, created_at=record.created_at, updated_at=record.updated_at, completed_at=record.completed_at)


class JobListResponse(BaseModel):
  jobs: list[JobStatusResponse]


class BillingWebhookResponse(BaseModel):
  success: bool
  message: StrictStr
