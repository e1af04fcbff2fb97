"""Push notification delivery implementations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from app.notifications.contracts import InvalidPushTokenError, NotificationProviderError, PushNotification, PushSender, TransientPushProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpoPushConfig:
  """Configuration for the Expo push API."""

  url: str
  access_token: str | None = None
  timeout_seconds: float = 10.0


class ExpoPushSender(PushSender):
  """Expo push API sender with retry and unregistered-device handling."""

  def __init__(self, *, config: ExpoPushConfig, transport: httpx.BaseTransport | None = None) -> None:
    self._config = config
    self._transport = transport

  def _headers(self) -> dict[str, str]:
    headers = {"accept": "application/json", "content-type": "application/json"}
    if self._config.access_token:
      headers["authorization"] = f"Bearer {self._config.access_token}"
    return headers

  def send(self, notification: PushNotification) -> None:
    """Send one Expo push message with bounded retries for transient failures."""
    message = {"to": notification.token, "title": notification.title, "body": notification.body, "data": notification.data, "sound": "default"}
    backoff_seconds = [0.5, 1.0]

    for attempt in range(3):
      try:
        with httpx.Client(timeout=self._config.timeout_seconds, transport=self._transport, trust_env=False) as client:
          response = client.post(self._config.url, json=message, headers=self._headers())
      except httpx.RequestError as exc:
        if attempt < len(backoff_seconds):
          time.sleep(backoff_seconds[attempt])
          continue
        raise TransientPushProviderError(f"Push provider unreachable after retries: {exc}") from exc

      if 500 <= response.status_code < 600:
        if attempt < len(backoff_seconds):
          # Back off briefly to avoid amplifying transient provider incidents.
          time.sleep(backoff_seconds[attempt])
          continue
        raise TransientPushProviderError(f"Transient push provider failure after retries (status={response.status_code})")

      if response.status_code >= 400:
        raise NotificationProviderError(f"Push delivery failed (status={response.status_code})")

      _raise_for_ticket(response.json())
      return


def _raise_for_ticket(body: dict) -> None:
  """Translate an Expo push ticket error into a delivery exception."""
  ticket = body.get("data")
  if isinstance(ticket, list):
    ticket = ticket[0] if ticket else {}
  if not isinstance(ticket, dict) or ticket.get("status") != "error":
    return

  details = ticket.get("details") or {}
  if details.get("error") == "DeviceNotRegistered":
    raise InvalidPushTokenError("Push token is no longer registered")
  raise NotificationProviderError(f"Push ticket error: {ticket.get('message') or 'unknown'}")


class NullPushSender(PushSender):
  """No-op push sender used when push notifications are disabled or unconfigured."""

  def send(self, notification: PushNotification) -> None:
    """Drop the notification while recording a debug log."""
    logger.debug("Push notifications disabled; dropping push title=%s", notification.title)
