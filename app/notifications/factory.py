"""Factory helpers for notification services."""

from __future__ import annotations

from app.config import Settings
from app.notifications.contracts import PushSender
from app.notifications.push_sender import ExpoPushConfig, ExpoPushSender, NullPushSender
from app.notifications.push_token_repo import PushTokenRepository
from app.notifications.service import NotificationService


def build_notification_service(settings: Settings) -> NotificationService:
  """Construct a notification service based on environment configuration."""
  # Push needs a token store, so it stays off without Postgres.
  push_enabled = bool(settings.push_notifications_enabled) and bool(settings.pg_dsn)
  if push_enabled:
    push_sender: PushSender = ExpoPushSender(config=ExpoPushConfig(url=settings.expo_push_url, access_token=settings.expo_access_token))
  else:
    push_sender = NullPushSender()

  return NotificationService(push_sender=push_sender, push_token_repo=PushTokenRepository(), push_enabled=push_enabled)
