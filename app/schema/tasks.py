from __future__ import annotations

from typing import Any

from sqlalchemy import Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, JSONType


class QueueTask(Base):
  __tablename__ = "queue_tasks"
  __table_args__ = (Index("ix_queue_tasks_claim", "task_type", "state", "available_at"), Index("ix_queue_tasks_finished", "task_type", "state", "finished_at"))

  task_id: Mapped[str] = mapped_column(String, primary_key=True)
  task_type: Mapped[str] = mapped_column(String, nullable=False)
  payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
  state: Mapped[str] = mapped_column(String, nullable=False, default="waiting")
  attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
  backoff_base_seconds: Mapped[float] = mapped_column(Float, nullable=False)
  backoff_factor: Mapped[float] = mapped_column(Float, nullable=False)
  backoff_max_seconds: Mapped[float] = mapped_column(Float, nullable=False)
  keep_completed: Mapped[int] = mapped_column(Integer, nullable=False)
  keep_failed: Mapped[int] = mapped_column(Integer, nullable=False)
  available_at: Mapped[str] = mapped_column(String, nullable=False)
  locked_until: Mapped[str | None] = mapped_column(String, nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  result_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
  finished_at: Mapped[str | None] = mapped_column(String, nullable=True)
