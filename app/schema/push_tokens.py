from __future__ import annotations

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class PushToken(Base):
  __tablename__ = "push_tokens"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
  token: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False)
