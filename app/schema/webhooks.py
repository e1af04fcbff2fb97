from __future__ import annotations

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class WebhookEvent(Base):
  __tablename__ = "webhook_events"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  event_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  payload: Mapped[str] = mapped_column(Text, nullable=False)
  processed_at: Mapped[str] = mapped_column(String, nullable=False)
