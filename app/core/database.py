from __future__ import annotations

import logging

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import DatabaseSettings, get_database_settings

logger = logging.getLogger(__name__)

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
  pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def async_database_url(dsn: str) -> str:
  """Point plain postgres DSNs at the asyncpg driver; leave explicit drivers alone."""
  url = make_url(dsn)
  if url.drivername in {"postgres", "postgresql"}:
    url = url.set(drivername="postgresql+asyncpg")
  return url.render_as_string(hide_password=False)


def _engine_options(settings: DatabaseSettings, url: str) -> dict[str, object]:
  options: dict[str, object] = {"echo": settings.debug, "pool_pre_ping": True}
  if url.startswith("postgresql+asyncpg"):
    # asyncpg takes its connect timeout (seconds) as a connect() keyword.
    options["connect_args"] = {"timeout": settings.pg_connect_timeout}
  return options


def get_db_engine() -> AsyncEngine | None:
  """Return the process-wide engine, or None when no DSN is configured."""
  global _engine
  if _engine is not None:
    return _engine
  settings = get_database_settings()
  if not settings.pg_dsn:
    return None
  url = async_database_url(settings.pg_dsn)
  _engine = create_async_engine(url, **_engine_options(settings, url))
  return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  global _session_factory
  if _session_factory is None:
    db_engine = get_db_engine()
    if db_engine is not None:
      _session_factory = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return _session_factory


def require_session_factory() -> async_sessionmaker[AsyncSession]:
  """Return the configured session factory or fail loudly when Postgres is not configured."""
  session_factory = get_session_factory()
  if session_factory is None:
    raise RuntimeError("Database connection is not configured (FITPLAN_PG_DSN is missing).")
  return session_factory


async def create_all_tables(db_engine: AsyncEngine) -> None:
  """Create every mapped table that does not exist yet."""
  # Registers the job, task, usage, subscription, ledger and push token tables.
  import app.schema  # noqa: F401

  async with db_engine.begin() as connection:
    await connection.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
  """Close pooled connections and forget the engine so a later call rebuilds it."""
  global _engine, _session_factory
  if _engine is None:
    return
  await _engine.dispose()
  logger.info("Database engine disposed.")
  _engine = None
  _session_factory = None
