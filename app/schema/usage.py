"""SQLAlchemy model for per-user lifetime usage counters."""

from __future__ import annotations

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class UsageCounter(Base):
  """Lifetime trial allotment counters; they are never reset automatically."""

  __tablename__ = "usage_counters"

  user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
  lifetime_weekly_regenerations: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  lifetime_daily_regenerations: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  lifetime_tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)
