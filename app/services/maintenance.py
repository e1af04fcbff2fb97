"""Periodic retention sweep for finished job records."""

from __future__ import annotations

import asyncio
import logging

from app.storage.jobs_repo import JobsRepository
from app.utils.clock import iso_days_ago

logger = logging.getLogger(__name__)


class JobRetentionSweeper:
  """Delete terminal jobs older than the retention window on a fixed interval."""

  def __init__(self, *, jobs_repo: JobsRepository, retention_days: int, interval_seconds: float) -> None:
    self._jobs_repo = jobs_repo
    self._retention_days = retention_days
    self._interval_seconds = interval_seconds
    self._task: asyncio.Task[None] | None = None

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  async def run_once(self) -> int:
    cutoff = iso_days_ago(self._retention_days)
    deleted = await self._jobs_repo.delete_terminal_before(cutoff)
    if deleted:
      active = await self._jobs_repo.count_active_jobs()
      logger.info("Retention sweep removed %s jobs finished before %s; %s still processing", deleted, cutoff, active)
    return deleted

  def start(self) -> None:
    if self.running:
      return
    self._task = asyncio.get_running_loop().create_task(self._loop())
    self._task.add_done_callback(_log_sweeper_failure)
    logger.info("Job retention sweeper started interval_seconds=%s retention_days=%s", self._interval_seconds, self._retention_days)

  async def stop(self) -> None:
    task, self._task = self._task, None
    if task is None:
      return
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      pass
    logger.info("Job retention sweeper stopped.")

  async def _loop(self) -> None:
    while True:
      try:
        await self.run_once()
      except Exception as exc:  # noqa: BLE001
        logger.error("Retention sweep failed: %s", exc, exc_info=True)
      await asyncio.sleep(self._interval_seconds)


def _log_sweeper_failure(task: asyncio.Task[None]) -> None:
  if task.cancelled():
    return
  try:
    task.result()
  except Exception as exc:  # noqa: BLE001
    logger.error("Retention sweeper task failed: %s", exc, exc_info=True)
