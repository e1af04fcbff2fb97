"""SQLAlchemy table models registered on the shared declarative base."""

from .jobs import Job
from .push_tokens import PushToken
from .subscriptions import Subscription
from .tasks import QueueTask
from .usage import UsageCounter
from .webhooks import WebhookEvent

__all__ = ["Job", "PushToken", "QueueTask", "Subscription", "UsageCounter", "WebhookEvent"]
