"""UTC timestamp helpers shared by the stores and the task queue."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
  return datetime.now(UTC)


def to_iso(value: datetime) -> str:
  """Render a datetime as a sortable second-precision UTC string."""
  if value.tzinfo is None:
    value = value.replace(tzinfo=UTC)
  return value.astimezone(UTC).strftime(ISO_FORMAT)


def now_iso() -> str:
  return to_iso(utc_now())


def iso_after(seconds: float, *, start: datetime | None = None) -> str:
  """Return the ISO timestamp `seconds` after `start` (defaults to now)."""
  base = start or utc_now()
  return to_iso(base + timedelta(seconds=seconds))


def iso_days_ago(days: int) -> str:
  return to_iso(utc_now() - timedelta(days=days))


def ensure_aware(value: datetime) -> datetime:
  """Attach UTC to naive datetimes returned by drivers without timezone support."""
  if value.tzinfo is None:
    return value.replace(tzinfo=UTC)
  return value
