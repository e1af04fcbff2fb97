"""Contracts for user notification delivery channels."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol


class SuccessVariant(StrEnum):
  GENERATED = "generated"
  REGENERATED = "regenerated"
  DAILY_REGENERATED = "daily_regenerated"


@dataclass(frozen=True)
class PushNotification:
  """Represents a push notification payload addressed to one device token."""

  token: str
  title: str
  body: str
  data: dict[str, str]


class NotificationError(Exception):
  """Base class for all notification delivery failures."""


class NotificationProviderError(NotificationError):
  """Exception raised when the push provider returns a delivery error."""


class InvalidPushTokenError(NotificationProviderError):
  """Exception raised when a device token is no longer registered."""


class TransientPushProviderError(NotificationProviderError):
  """Exception raised when transient push provider failures exhaust retries."""


class PushSender(Protocol):
  """Delivery contract for sending push notifications."""

  def send(self, notification: PushNotification) -> None:
    """Send a push notification synchronously."""


class NotificationDispatcher(Protocol):
  """Terminal-state alerts used by the job workers; delivery failures never propagate."""

  def notify_success(self, *, user_id: int, artifact_name: str, artifact_id: int, variant: SuccessVariant) -> None:
    """Schedule a success alert for a finished job."""

  def notify_failure(self, *, user_id: int, message: str) -> None:
    """Schedule a failure alert for a job whose final attempt failed."""
