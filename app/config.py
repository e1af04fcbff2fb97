"""FITPLAN_* environment settings for the API, workers and sweeper."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_QUEUE_PROVIDERS = {"postgres", "memory"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the fitplan generation service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  auto_create_tables: bool
  queue_provider: str
  queue_concurrency: int
  queue_max_attempts: int
  queue_backoff_base_seconds: float
  queue_backoff_factor: float
  queue_backoff_max_seconds: float
  queue_keep_completed: int
  queue_keep_failed: int
  queue_lock_seconds: int
  queue_poll_interval_seconds: float
  worker_enabled: bool
  trial_weekly_regenerations: int
  trial_daily_regenerations: int
  trial_token_cap: int
  estimated_generation_tokens: int
  generation_url: str | None
  generation_timeout_seconds: float
  push_notifications_enabled: bool
  expo_push_url: str
  expo_access_token: str | None
  billing_webhook_auth: str | None
  jobs_retention_days: int
  jobs_sweep_interval_seconds: int


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("FITPLAN_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("FITPLAN_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("FITPLAN_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _parse_positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_non_negative_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value < 0:
    raise ValueError(f"{name} must be zero or positive.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("FITPLAN_ENV", "development").lower()

  # Debug also raises log verbosity to DEBUG.
  debug = _parse_bool(os.getenv("FITPLAN_DEBUG"))

  log_max_bytes = _parse_positive_int("FITPLAN_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("FITPLAN_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("FITPLAN_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Client errors are quiet unless this is set.
  log_http_4xx = _parse_bool(os.getenv("FITPLAN_LOG_HTTP_4XX"))

  queue_provider = (os.getenv("FITPLAN_QUEUE_PROVIDER") or "postgres").strip().lower()
  if queue_provider not in _QUEUE_PROVIDERS:
    raise ValueError(f"FITPLAN_QUEUE_PROVIDER must be one of {sorted(_QUEUE_PROVIDERS)}.")

  backoff_factor = float(os.getenv("FITPLAN_QUEUE_BACKOFF_FACTOR", "2"))
  if backoff_factor < 1:
    raise ValueError("FITPLAN_QUEUE_BACKOFF_FACTOR must be at least 1.")

  keep_completed = int(os.getenv("FITPLAN_QUEUE_KEEP_COMPLETED", "50"))
  keep_failed = int(os.getenv("FITPLAN_QUEUE_KEEP_FAILED", "20"))
  if keep_completed < 0 or keep_failed < 0:
    raise ValueError("FITPLAN_QUEUE_KEEP_COMPLETED and FITPLAN_QUEUE_KEEP_FAILED must be zero or positive.")

  push_notifications_enabled = _parse_bool(os.getenv("FITPLAN_PUSH_NOTIFICATIONS_ENABLED"))
  expo_push_url = (os.getenv("FITPLAN_EXPO_PUSH_URL") or "https://exp.host/--/api/v2/push/send").strip()

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("FITPLAN_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=log_http_4xx,
    pg_dsn=os.getenv("FITPLAN_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_parse_positive_int("FITPLAN_PG_CONNECT_TIMEOUT", "5"),
    auto_create_tables=_parse_bool(os.getenv("FITPLAN_AUTO_CREATE_TABLES")),
    queue_provider=queue_provider,
    queue_concurrency=_parse_positive_int("FITPLAN_QUEUE_CONCURRENCY", "10"),
    queue_max_attempts=_parse_positive_int("FITPLAN_QUEUE_MAX_ATTEMPTS", "3"),
    queue_backoff_base_seconds=_parse_non_negative_float("FITPLAN_QUEUE_BACKOFF_BASE_SECONDS", "5"),
    queue_backoff_factor=backoff_factor,
    queue_backoff_max_seconds=_parse_non_negative_float("FITPLAN_QUEUE_BACKOFF_MAX_SECONDS", "300"),
    queue_keep_completed=keep_completed,
    queue_keep_failed=keep_failed,
    queue_lock_seconds=_parse_positive_int("FITPLAN_QUEUE_LOCK_SECONDS", "300"),
    queue_poll_interval_seconds=_parse_non_negative_float("FITPLAN_QUEUE_POLL_INTERVAL_SECONDS", "1.0"),
    worker_enabled=_parse_bool(os.getenv("FITPLAN_WORKER_ENABLED", "1")),
    trial_weekly_regenerations=_parse_positive_int("FITPLAN_TRIAL_WEEKLY_REGENERATIONS", "2"),
    trial_daily_regenerations=_parse_positive_int("FITPLAN_TRIAL_DAILY_REGENERATIONS", "5"),
    trial_token_cap=_parse_positive_int("FITPLAN_TRIAL_TOKEN_CAP", "50000"),
    estimated_generation_tokens=_parse_positive_int("FITPLAN_ESTIMATED_GENERATION_TOKENS", "2000"),
    generation_url=_optional_str(os.getenv("FITPLAN_GENERATION_URL")),
    generation_timeout_seconds=_parse_non_negative_float("FITPLAN_GENERATION_TIMEOUT_SECONDS", "120"),
    push_notifications_enabled=push_notifications_enabled,
    expo_push_url=expo_push_url,
    expo_access_token=_optional_str(os.getenv("FITPLAN_EXPO_ACCESS_TOKEN")),
    billing_webhook_auth=_optional_str(os.getenv("FITPLAN_BILLING_WEBHOOK_AUTH")),
    jobs_retention_days=_parse_positive_int("FITPLAN_JOBS_RETENTION_DAYS", "30"),
    jobs_sweep_interval_seconds=_parse_positive_int("FITPLAN_JOBS_SWEEP_INTERVAL_SECONDS", "3600"),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Database-only settings; scripts use these without CORS or queue variables."""
  debug = _parse_bool(os.getenv("FITPLAN_DEBUG"))
  pg_connect_timeout = _parse_positive_int("FITPLAN_PG_CONNECT_TIMEOUT", "5")

  # Support fallback to DATABASE_URL for hosted Postgres providers.
  pg_dsn = os.getenv("FITPLAN_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
