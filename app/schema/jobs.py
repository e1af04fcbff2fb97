from __future__ import annotations

from typing import Any

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, JSONType


class Job(Base):
  __tablename__ = "jobs"
  __table_args__ = (Index("ix_jobs_user_created", "user_id", "created_at"), Index("ix_jobs_status_updated", "status", "updated_at"))

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
  job_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False)
  progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
  result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  related_entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)
