"""Postgres-backed repository for background jobs using SQLAlchemy."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import require_session_factory
from app.jobs.models import TERMINAL_STATUSES, JobRecord, JobStatus, JobType, ensure_transition, is_terminal
from app.schema.jobs import Job
from app.storage.jobs_repo import JobsRepository
from app.utils.clock import now_iso
from app.utils.ids import generate_job_id

logger = logging.getLogger(__name__)


class PostgresJobsRepository(JobsRepository):
  """Persist job records to Postgres using SQLAlchemy."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def create_job(self, *, user_id: int, job_type: JobType, payload: dict[str, Any]) -> JobRecord:
    timestamp = now_iso()
    async with self._session_factory() as session:
      job = Job(job_id=generate_job_id(), user_id=user_id, job_type=str(job_type), status=str(JobStatus.PENDING), progress=0, payload_json=payload, created_at=timestamp, updated_at=timestamp)
      session.add(job)
      await session.commit()
      return self._model_to_record(job)

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def update_status(self, job_id: str, *, status: JobStatus, progress: int, result: dict[str, Any] | None = None, related_entity_id: int | None = None, error: str | None = None) -> JobRecord | None:
    async with self._session_factory() as session:
      # Lock the row so concurrent readers never see a half-applied terminal write.
      row = await session.get(Job, job_id, with_for_update=True)
      if row is None:
        return None

      # Terminal records are immutable; report the stored state back to the caller.
      if is_terminal(row.status):
        logger.warning("Ignoring status update for terminal job job_id=%s stored=%s requested=%s", job_id, row.status, status)
        stored = self._model_to_record(row)
        await session.rollback()
        return stored

      ensure_transition(row.status, status)
      timestamp = now_iso()
      row.status = str(status)
      row.progress = max(0, min(int(progress), 100))
      row.updated_at = timestamp
      if result is not None:
        row.result_json = result
      if related_entity_id is not None:
        row.related_entity_id = related_entity_id
      if error is not None:
        row.error = error
      if JobStatus(status) in TERMINAL_STATUSES:
        row.completed_at = timestamp

      await session.commit()
      return self._model_to_record(row)

  async def list_user_jobs(self, user_id: int, *, job_type: JobType | None = None, limit: int = 50) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(Job).where(Job.user_id == user_id)
      if job_type is not None:
        stmt = stmt.where(Job.job_type == str(job_type))
      stmt = stmt.order_by(Job.created_at.desc()).limit(limit)
      result = await session.execute(stmt)
      return [self._model_to_record(row) for row in result.scalars().all()]

  async def delete_job(self, job_id: str) -> bool:
    async with self._session_factory() as session:
      result = await session.execute(delete(Job).where(Job.job_id == job_id))
      await session.commit()
      return (result.rowcount or 0) > 0

  async def delete_terminal_before(self, cutoff_iso: str) -> int:
    async with self._session_factory() as session:
      terminal = [str(status) for status in TERMINAL_STATUSES]
      stmt = delete(Job).where(Job.status.in_(terminal), Job.updated_at < cutoff_iso)
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def count_active_jobs(self) -> int:
    async with self._session_factory() as session:
      stmt = select(func.count()).select_from(Job).where(Job.status == str(JobStatus.PROCESSING))
      return int((await session.execute(stmt)).scalar_one())

  def _model_to_record(self, row: Job) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      user_id=row.user_id,
      job_type=JobType(row.job_type),
      status=JobStatus(row.status),
      progress=row.progress,
      payload=dict(row.payload_json or {}),
      result=row.result_json,
      error=row.error,
      related_entity_id=row.related_entity_id,
      created_at=row.created_at,
      updated_at=row.updated_at,
      completed_at=row.completed_at,
    )
