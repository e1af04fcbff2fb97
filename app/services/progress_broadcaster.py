"""Best-effort fan-out of job progress events to per-user subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

logger = logging.getLogger(__name__)

PROGRESS_EVENT_NAME = "workout-progress"


@dataclass(frozen=True)
class ProgressEvent:
  progress: int
  complete: bool = False
  error: str | None = None

  def to_message(self) -> dict[str, Any]:
    return {"event": PROGRESS_EVENT_NAME, **asdict(self)}


def channel_for(user_id: int) -> str:
  return f"user-{user_id}"


class ProgressSubscription:
  """One subscriber's view of a user channel."""

  def __init__(self, channel: str, max_pending: int) -> None:
    self.channel = channel
    self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max_pending)

  def offer(self, event: ProgressEvent) -> bool:
    try:
      self._queue.put_nowait(event)
    except asyncio.QueueFull:
      return False
    return True

  async def next_event(self) -> ProgressEvent:
    return await self._queue.get()


class ProgressBroadcaster:
  """Publish progress hints; the job record stays the source of truth.

  Events are never buffered for absent subscribers and are dropped for slow ones,
  so clients reconcile by polling the job status after reconnecting.
  """

  def __init__(self, *, max_pending_per_subscriber: int = 100) -> None:
    self._channels: dict[str, set[ProgressSubscription]] = defaultdict(set)
    self._max_pending = max_pending_per_subscriber

  def publish(self, user_id: int, progress: int, complete: bool = False, error: str | None = None) -> None:
    """Fan an event out to the user's channel without awaiting any subscriber."""
    channel = channel_for(user_id)
    subscribers = self._channels.get(channel)
    if not subscribers:
      return
    event = ProgressEvent(progress=progress, complete=complete, error=error)
    for subscription in list(subscribers):
      if not subscription.offer(event):
        logger.warning("Dropping progress event for slow subscriber channel=%s progress=%s", channel, progress)

  @asynccontextmanager
  async def subscribe(self, user_id: int) -> AsyncIterator[ProgressSubscription]:
    channel = channel_for(user_id)
    subscription = ProgressSubscription(channel, self._max_pending)
    self._channels[channel].add(subscription)
    logger.debug("Progress subscriber joined channel=%s", channel)
    try:
      yield subscription
    finally:
      subscribers = self._channels.get(channel)
      if subscribers is not None:
        subscribers.discard(subscription)
        if not subscribers:
          self._channels.pop(channel, None)
      logger.debug("Progress subscriber left channel=%s", channel)

  def connection_count(self, user_id: int) -> int:
    return len(self._channels.get(channel_for(user_id), ()))
