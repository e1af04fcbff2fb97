import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from app.config import Settings, get_settings
from app.core.container import ServiceContainer, build_service_container
from app.core.database import create_all_tables, dispose_engine, get_db_engine
from app.core.logging import _initialize_logging
from app.jobs.worker import register_job_processors

logger = logging.getLogger("app.core.lifespan")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Wire services at startup and stop background work at shutdown."""
  settings = get_settings()
  try:
    _initialize_logging(settings)
  except RuntimeError:
    logger.warning("File logging unavailable; falling back to default handlers.", exc_info=True)

  if settings.auto_create_tables:
    await _ensure_tables(settings)

  # Tests install a prebuilt container before the app starts.
  container: ServiceContainer | None = getattr(app.state, "container", None)
  if container is None:
    container = build_service_container(settings)
    app.state.container = container

  await start_background_services(container, settings)
  logger.info("Service ready environment=%s queue=%s workers=%s", settings.environment, settings.queue_provider, settings.worker_enabled)
  try:
    yield
  finally:
    await stop_background_services(container)
    await dispose_engine()


async def _ensure_tables(settings: Settings) -> None:
  engine = get_db_engine()
  if engine is None:
    raise RuntimeError("FITPLAN_AUTO_CREATE_TABLES is set but FITPLAN_PG_DSN is missing.")
  logger.info("Creating missing tables dsn=%s", _redact_dsn(settings.pg_dsn))
  await create_all_tables(engine)


async def start_background_services(container: ServiceContainer, settings: Settings) -> None:
  """Start queue workers (when this instance runs them) and the retention sweeper."""
  if settings.worker_enabled and container.processor is not None:
    register_job_processors(container.task_queue, container.processor, concurrency=settings.queue_concurrency)
    await container.task_queue.start()
    logger.info("Job workers started provider=%s concurrency=%s", settings.queue_provider, settings.queue_concurrency)
  else:
    logger.info("Job workers disabled; this instance only accepts submissions.")
  container.sweeper.start()


async def stop_background_services(container: ServiceContainer) -> None:
  await container.sweeper.stop()
  if container.task_queue.running:
    await container.task_queue.stop()
  # Pending push deliveries finish before the process exits.
  await container.notifications.drain()
  logger.info("Background services stopped.")


def _redact_dsn(raw: str | None) -> str:
  """Render a DSN for logs with the password removed."""
  if not raw:
    return "<unset>"
  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"
  host = parsed.hostname or ""
  if parsed.port:
    host = f"{host}:{parsed.port}"
  netloc = f"{parsed.username}@{host}" if parsed.username else host
  database = parsed.path.lstrip("/")
  return f"{parsed.scheme}://{netloc}/{database}" if database else f"{parsed.scheme}://{netloc}"
