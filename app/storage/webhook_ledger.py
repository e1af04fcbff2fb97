"""Write-once record of processed billing webhook events."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import require_session_factory
from app.schema.webhooks import WebhookEvent
from app.utils.clock import now_iso

logger = logging.getLogger(__name__)


class WebhookLedger:
  """Lookup and insert processed event ids; rows are never updated."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def is_processed(self, event_id: str) -> bool:
    async with self._session_factory() as session:
      result = await session.execute(select(WebhookEvent.id).where(WebhookEvent.event_id == event_id))
      return result.scalar_one_or_none() is not None

  async def mark_processed(self, event_id: str, event_type: str, raw_payload: str) -> bool:
    """Insert the event; returns False when another delivery recorded it first."""
    async with self._session_factory() as session:
      session.add(WebhookEvent(event_id=event_id, event_type=event_type, payload=raw_payload, processed_at=now_iso()))
      try:
        await session.commit()
      except IntegrityError:
        await session.rollback()
        logger.info("Webhook event already recorded event_id=%s event_type=%s", event_id, event_type)
        return False
    return True
