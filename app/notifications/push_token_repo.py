"""Repository helpers for device push tokens."""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_session_factory
from app.schema.push_tokens import PushToken


class PushTokenRepository:
  """Read and prune push tokens stored in Postgres."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory

  def _factory(self) -> async_sessionmaker[AsyncSession] | None:
    return self._session_factory or get_session_factory()

  async def list_for_user(self, *, user_id: int) -> list[str]:
    """Return every token registered for a user."""
    session_factory = self._factory()
    if session_factory is None:
      return []

    async with session_factory() as session:
      result = await session.execute(select(PushToken.token).where(PushToken.user_id == user_id).order_by(PushToken.id))
      return [str(token) for token in result.scalars().all()]

  async def delete_token(self, *, token: str) -> None:
    """Delete a token the provider reported as unregistered."""
    session_factory = self._factory()
    if session_factory is None:
      return

    async with session_factory() as session:
      await session.execute(delete(PushToken).where(PushToken.token == token))
      await session.commit()
