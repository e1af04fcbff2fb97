"""Notification orchestration for job terminal states."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from starlette.concurrency import run_in_threadpool

from app.notifications.contracts import InvalidPushTokenError, NotificationDispatcher, NotificationProviderError, PushNotification, PushSender, SuccessVariant

logger = logging.getLogger(__name__)

FAILURE_BODY = "There was an issue generating your workout. Please try again or contact support."

_SUCCESS_TEMPLATES: dict[SuccessVariant, tuple[str, str]] = {
  SuccessVariant.GENERATED: ("Your workout plan is ready!", "{name} has been generated and is ready to start."),
  SuccessVariant.REGENERATED: ("Workout plan updated", "{name} has been regenerated based on your feedback."),
  SuccessVariant.DAILY_REGENERATED: ("Workout day updated", "{name} has been regenerated and is ready."),
}


class PushTokenLookup(Protocol):
  async def list_for_user(self, *, user_id: int) -> list[str]: ...

  async def delete_token(self, *, token: str) -> None: ...


class NotificationService(NotificationDispatcher):
  """Dispatches push alerts in the background so workers never wait on delivery."""

  def __init__(self, *, push_sender: PushSender, push_token_repo: PushTokenLookup, push_enabled: bool) -> None:
    self._push_sender = push_sender
    self._push_token_repo = push_token_repo
    self._push_enabled = push_enabled
    self._pending: set[asyncio.Task[None]] = set()

  def notify_success(self, *, user_id: int, artifact_name: str, artifact_id: int, variant: SuccessVariant) -> None:
    """Alert the user that a generation job produced an artifact."""
    title, body_template = _SUCCESS_TEMPLATES[variant]
    data = {"type": f"workout_{variant}", "artifactId": str(artifact_id)}
    self._schedule(user_id=user_id, title=title, body=body_template.format(name=artifact_name), data=data)

  def notify_failure(self, *, user_id: int, message: str) -> None:
    """Alert the user that a generation job failed for good."""
    # The raw error travels in data; the visible body stays fixed.
    data = {"type": "workout_error", "error": message}
    self._schedule(user_id=user_id, title="Workout generation failed", body=FAILURE_BODY, data=data)

  async def drain(self) -> None:
    """Wait for scheduled deliveries; used during shutdown and in tests."""
    if self._pending:
      await asyncio.gather(*list(self._pending), return_exceptions=True)

  def _schedule(self, *, user_id: int, title: str, body: str, data: dict[str, str]) -> None:
    if not self._push_enabled:
      logger.debug("Push notifications disabled; skipping user_id=%s title=%s", user_id, title)
      return

    try:
      task = asyncio.create_task(self._dispatch_push_for_user(user_id=user_id, title=title, body=body, data=data))
    except RuntimeError as exc:
      logger.error("Push dispatch could not be scheduled user_id=%s error=%s", user_id, exc)
      return
    self._pending.add(task)
    task.add_done_callback(self._pending.discard)
    task.add_done_callback(self._log_task_error)

  async def _dispatch_push_for_user(self, *, user_id: int, title: str, body: str, data: dict[str, str]) -> None:
    """Deliver a push payload to each registered device for a user."""
    # Read all tokens first so partial failures do not block remaining devices.
    try:
      tokens = await self._push_token_repo.list_for_user(user_id=user_id)
    except Exception as exc:  # noqa: BLE001
      logger.error("Push token lookup failed user_id=%s error=%s", user_id, exc, exc_info=True)
      return

    if not tokens:
      logger.info("No push token for user_id=%s; skipping notification", user_id)
      return

    for token in tokens:
      try:
        await run_in_threadpool(self._push_sender.send, PushNotification(token=token, title=title, body=body, data=data))
      except InvalidPushTokenError:
        # Remove unregistered devices immediately to prevent repeated failed sends.
        try:
          await self._push_token_repo.delete_token(token=token)
        except Exception as exc:  # noqa: BLE001
          logger.error("Failed deleting unregistered push token user_id=%s error=%s", user_id, exc, exc_info=True)
      except NotificationProviderError as exc:
        logger.error("Push notification delivery failed (provider error): %s", exc)
      except Exception as exc:  # noqa: BLE001
        logger.error("Push notification delivery failed: %s", exc, exc_info=True)

  @staticmethod
  def _log_task_error(task: asyncio.Task[None]) -> None:
    """Log background task exceptions to avoid silent delivery failures."""
    if task.cancelled():
      return
    try:
      _ = task.result()
    except Exception as exc:  # noqa: BLE001
      logger.error("Background push dispatch task failed: %s", exc, exc_info=True)
