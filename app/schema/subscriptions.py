from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class Subscription(Base):
  __tablename__ = "subscriptions"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="trial")
  plan: Mapped[str | None] = mapped_column(String, nullable=True)
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  updated_at: Mapped[str] = mapped_column(String, nullable=False)
