import logging

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_container, get_current_user_id
from app.api.models import DailyRegenerationRequest, JobCreateResponse, JobListResponse, JobStatusResponse, WorkoutGenerationRequest, WorkoutRegenerationRequest
from app.core.container import ServiceContainer
from app.jobs.models import JobPayload, JobType
from app.services import jobs as job_service

router = APIRouter()
logger = logging.getLogger("app.api.routes.jobs")


async def _submit(container: ServiceContainer, *, user_id: int, job_type: JobType, payload: JobPayload) -> JobCreateResponse:
  record = await job_service.submit_job(user_id=user_id, job_type=job_type, payload=payload, jobs_repo=container.jobs_repo, usage_gate=container.usage_gate, queue=container.task_queue)
  return JobCreateResponse(job_id=record.job_id, status=record.status)


@router.post("/workout-generation", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_workout_generation(  # noqa: B008
  request: WorkoutGenerationRequest,
  user_id: int = Depends(get_current_user_id),  # noqa: B008
  container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> JobCreateResponse:
  """Queue generation of a first weekly plan."""
  return await _submit(container, user_id=user_id, job_type=JobType.WORKOUT_GENERATION, payload=request.to_payload())


@router.post("/workout-regeneration", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_workout_regeneration(  # noqa: B008
  request: WorkoutRegenerationRequest,
  user_id: int = Depends(get_current_user_id),  # noqa: B008
  container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> JobCreateResponse:
  """Queue regeneration of the active weekly plan."""
  return await _submit(container, user_id=user_id, job_type=JobType.WORKOUT_REGENERATION, payload=request.to_payload())


@router.post("/daily-regeneration", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_daily_regeneration(  # noqa: B008
  request: DailyRegenerationRequest,
  user_id: int = Depends(get_current_user_id),  # noqa: B008
  container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> JobCreateResponse:
  """Queue regeneration of a single plan day."""
  return await _submit(container, user_id=user_id, job_type=JobType.DAILY_WORKOUT_REGENERATION, payload=request.to_payload())


@router.get("", response_model=JobListResponse)
async def list_jobs(  # noqa: B008
  job_type: JobType | None = Query(default=None),  # noqa: B008
  limit: int = Query(default=50, ge=1, le=job_service.MAX_LIST_LIMIT),  # noqa: B008
  user_id: int = Depends(get_current_user_id),  # noqa: B008
  container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> JobListResponse:
  """List the caller's jobs, newest first."""
  records = await job_service.list_jobs(user_id=user_id, jobs_repo=container.jobs_repo, job_type=job_type, limit=limit)
  return JobListResponse(jobs=[JobStatusResponse.from_record(record) for record in records])


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(  # noqa: B008
  job_id: str,
  user_id: int = Depends(get_current_user_id),  # noqa: B008
  container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> JobStatusResponse:
  """Fetch the status and result of a background job."""
  record = await job_service.get_job_status(job_id=job_id, user_id=user_id, jobs_repo=container.jobs_repo)
  return JobStatusResponse.from_record(record)
