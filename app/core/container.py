"""Explicitly wired service graph shared by the API and the in-process workers."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.core.database import require_session_factory
from app.jobs.dispatch import JobProcessorRegistry
from app.jobs.kinds import default_job_kinds
from app.jobs.worker import GenerationJobProcessor
from app.notifications.factory import build_notification_service
from app.notifications.service import NotificationService
from app.queue.broker import TaskBroker
from app.queue.factory import build_task_queue
from app.queue.runner import TaskQueue
from app.services.billing_events import BillingEventProcessor
from app.services.generation import GenerationServiceRegistry, HttpGenerationService
from app.services.maintenance import JobRetentionSweeper
from app.services.progress_broadcaster import ProgressBroadcaster
from app.services.usage_gate import UsageGate, UsageLimits
from app.storage.jobs_repo import JobsRepository
from app.storage.postgres_jobs_repo import PostgresJobsRepository
from app.storage.postgres_usage_repo import PostgresSubscriptionRepository, PostgresUsageRepository
from app.storage.webhook_ledger import WebhookLedger

DEFAULT_GENERATION_PROVIDER = "http"


@dataclass
class ServiceContainer:
  settings: Settings
  jobs_repo: JobsRepository
  usage_gate: UsageGate
  broadcaster: ProgressBroadcaster
  notifications: NotificationService
  task_queue: TaskQueue
  billing: BillingEventProcessor
  sweeper: JobRetentionSweeper
  processor: GenerationJobProcessor | None = None


def build_generation_registry(settings: Settings) -> GenerationServiceRegistry:
  if not settings.generation_url:
    raise RuntimeError("FITPLAN_GENERATION_URL must be set to run generation workers.")
  provider = HttpGenerationService(base_url=settings.generation_url, timeout_seconds=settings.generation_timeout_seconds)
  return GenerationServiceRegistry({DEFAULT_GENERATION_PROVIDER: provider}, default=DEFAULT_GENERATION_PROVIDER)


def build_service_container(settings: Settings, *, session_factory: async_sessionmaker[AsyncSession] | None = None, generation: GenerationServiceRegistry | None = None, notifications: NotificationService | None = None, task_broker: TaskBroker | None = None) -> ServiceContainer:
  """Construct every long-lived service once; overrides exist for tests."""
  factory = session_factory or require_session_factory()
  jobs_repo = PostgresJobsRepository(factory)
  subscriptions = PostgresSubscriptionRepository(factory)
  usage_gate = UsageGate(usage_repo=PostgresUsageRepository(factory), subscription_repo=subscriptions, limits=UsageLimits.from_settings(settings), default_estimated_cost=settings.estimated_generation_tokens)
  broadcaster = ProgressBroadcaster()
  notification_service = notifications or build_notification_service(settings)
  task_queue = build_task_queue(settings, broker=task_broker, session_factory=factory)
  billing = BillingEventProcessor(ledger=WebhookLedger(factory), subscriptions=subscriptions)
  sweeper = JobRetentionSweeper(jobs_repo=jobs_repo, retention_days=settings.jobs_retention_days, interval_seconds=settings.jobs_sweep_interval_seconds)

  processor = None
  if generation is not None or settings.worker_enabled:
    registry = generation or build_generation_registry(settings)
    processor = GenerationJobProcessor(jobs_repo=jobs_repo, registry=JobProcessorRegistry(default_job_kinds()), generation=registry, notifications=notification_service, broadcaster=broadcaster)

  return ServiceContainer(settings=settings, jobs_repo=jobs_repo, usage_gate=usage_gate, broadcaster=broadcaster, notifications=notification_service, task_queue=task_queue, billing=billing, sweeper=sweeper, processor=processor)
