"""Durable task queue: enqueue API plus per-task-type processing loops."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any

from app.queue.broker import TaskBroker
from app.queue.models import FailedTaskListener, TaskHandle, TaskHandler, TaskOptions, TaskRecord, TaskStalledError

logger = logging.getLogger(__name__)


@dataclass
class _Processor:
  task_type: str
  concurrency: int
  handler: TaskHandler
  semaphore: asyncio.Semaphore
  wakeup: asyncio.Event
  in_flight: set[asyncio.Task[None]] = field(default_factory=set)


class TaskQueue:
  """At-least-once task delivery on top of a `TaskBroker`.

  Each registered task type gets one poll loop. The loop claims a task whenever a
  concurrency slot is free and runs the handler in its own asyncio task:

  - handler returns: the task is acknowledged with the returned result;
  - handler raises with attempts left: the task is rescheduled after the backoff delay;
  - handler raises on the final attempt: the task is marked failed and `on_failed`
    listeners run.
  - the worker holding the final attempt dies: once its lease lapses the task is
    marked failed instead of redelivered, and `on_failed` listeners run.

  While a handler runs its lease is renewed at half the lock duration, so only
  crashed workers let a task become redeliverable.
  """

  def __init__(self, broker: TaskBroker, *, default_options: TaskOptions | None = None, lock_seconds: float = 300.0, poll_interval_seconds: float = 1.0) -> None:
    self._broker = broker
    self._default_options = default_options or TaskOptions()
    self._lock_seconds = lock_seconds
    self._poll_interval_seconds = poll_interval_seconds
    self._processors: dict[str, _Processor] = {}
    self._failed_listeners: list[FailedTaskListener] = []
    self._loops: list[asyncio.Task[None]] = []
    self._stopping = asyncio.Event()

  @property
  def broker(self) -> TaskBroker:
    return self._broker

  @property
  def running(self) -> bool:
    return bool(self._loops)

  async def enqueue(self, task_type: str, payload: dict[str, Any], options: TaskOptions | None = None) -> TaskHandle:
    """Store a task for delivery and wake the matching poll loop."""
    record = await self._broker.add(task_type, payload, options or self._default_options)
    logger.info("Enqueued task task_id=%s task_type=%s max_attempts=%s", record.task_id, task_type, record.max_attempts)
    processor = self._processors.get(task_type)
    if processor is not None:
      processor.wakeup.set()
    return TaskHandle(task_id=record.task_id, task_type=task_type)

  def register_processor(self, task_type: str, concurrency: int, handler: TaskHandler) -> None:
    if concurrency < 1:
      raise ValueError("concurrency must be at least 1.")
    if task_type in self._processors:
      raise ValueError(f"A processor is already registered for task type {task_type}.")
    self._processors[task_type] = _Processor(task_type=task_type, concurrency=concurrency, handler=handler, semaphore=asyncio.Semaphore(concurrency), wakeup=asyncio.Event())

  def on_failed(self, listener: FailedTaskListener) -> None:
    """Register a callback for tasks whose final attempt raised."""
    self._failed_listeners.append(listener)

  async def start(self) -> None:
    if self._loops:
      return
    self._stopping.clear()
    for processor in self._processors.values():
      loop_task = asyncio.create_task(self._poll_loop(processor), name=f"task-queue:{processor.task_type}")
      self._loops.append(loop_task)
    logger.info("Task queue started for task types: %s", ", ".join(sorted(self._processors)) or "<none>")

  async def stop(self, *, grace_seconds: float = 10.0) -> None:
    """Stop polling and give in-flight attempts a grace period before cancelling them."""
    self._stopping.set()
    for processor in self._processors.values():
      processor.wakeup.set()
    for loop_task in self._loops:
      loop_task.cancel()
    for loop_task in self._loops:
      with contextlib.suppress(asyncio.CancelledError):
        await loop_task
    self._loops.clear()

    in_flight = [task for processor in self._processors.values() for task in processor.in_flight]
    if not in_flight:
      return
    _, pending = await asyncio.wait(in_flight, timeout=grace_seconds)
    # Cancelled attempts keep their lease and are redelivered once it expires.
    for task in pending:
      task.cancel()
    if pending:
      await asyncio.wait(pending)
      logger.warning("Cancelled %s in-flight task attempts during shutdown.", len(pending))

  async def _poll_loop(self, processor: _Processor) -> None:
    while not self._stopping.is_set():
      await self._reap_stalled(processor)
      await processor.semaphore.acquire()
      claimed: list[TaskRecord] = []
      try:
        claimed = await self._broker.claim(processor.task_type, limit=1, lock_seconds=self._lock_seconds)
      except Exception as exc:  # noqa: BLE001
        logger.error("Task claim failed task_type=%s error=%s", processor.task_type, exc, exc_info=True)

      if not claimed:
        processor.semaphore.release()
        await self._idle(processor)
        continue

      for task in claimed:
        attempt = asyncio.create_task(self._run_attempt(processor, task), name=f"task:{task.task_id}:{task.attempts_made}")
        processor.in_flight.add(attempt)
        attempt.add_done_callback(processor.in_flight.discard)

  async def _idle(self, processor: _Processor) -> None:
    # Sleep until the poll interval elapses or an enqueue wakes this task type.
    try:
      await asyncio.wait_for(processor.wakeup.wait(), timeout=self._poll_interval_seconds)
    except TimeoutError:
      pass
    processor.wakeup.clear()

  async def _run_attempt(self, processor: _Processor, task: TaskRecord) -> None:
    renewal = asyncio.create_task(self._renew_lease(task))
    try:
      logger.info("Processing task task_id=%s task_type=%s attempt=%s/%s", task.task_id, task.task_type, task.attempts_made, task.max_attempts)
      try:
        result = await processor.handler(task)
      except Exception as exc:  # noqa: BLE001
        await self._handle_failure(task, exc)
      else:
        await self._safe_broker_call("complete", self._broker.complete(task.task_id, result))
      finally:
        renewal.cancel()
      await self._safe_broker_call("prune", self._broker.prune(task.task_type, keep_completed=task.keep_completed, keep_failed=task.keep_failed))
    finally:
      processor.semaphore.release()

  async def _handle_failure(self, task: TaskRecord, exc: Exception) -> None:
    error = str(exc) or type(exc).__name__
    if task.is_final_attempt:
      logger.error("Task failed permanently task_id=%s task_type=%s attempts=%s error=%s", task.task_id, task.task_type, task.attempts_made, error)
      await self._safe_broker_call("fail", self._broker.fail(task.task_id, error=error))
      await self._notify_failed(task, exc)
      return

    delay = task.backoff.delay_for(task.attempts_made)
    logger.warning("Task attempt failed; retrying task_id=%s attempt=%s/%s delay=%.1fs error=%s", task.task_id, task.attempts_made, task.max_attempts, delay, error)
    await self._safe_broker_call("retry", self._broker.retry(task.task_id, error=error, delay_seconds=delay))

  async def _reap_stalled(self, processor: _Processor) -> None:
    try:
      reaped = await self._broker.reap_stalled(processor.task_type)
    except Exception as exc:  # noqa: BLE001
      logger.error("Stalled task sweep failed task_type=%s error=%s", processor.task_type, exc, exc_info=True)
      return
    for task in reaped:
      await self._notify_failed(task, TaskStalledError(task.last_error or "Task stalled"))

  async def _notify_failed(self, task: TaskRecord, exc: BaseException) -> None:
    for listener in self._failed_listeners:
      try:
        await listener(task, exc)
      except Exception as listener_exc:  # noqa: BLE001
        logger.error("Failed-task listener raised task_id=%s error=%s", task.task_id, listener_exc, exc_info=True)

  async def _renew_lease(self, task: TaskRecord) -> None:
    interval = max(self._lock_seconds / 2, 0.05)
    while True:
      await asyncio.sleep(interval)
      try:
        renewed = await self._broker.renew(task.task_id, lock_seconds=self._lock_seconds)
      except Exception as exc:  # noqa: BLE001
        logger.error("Lease renewal failed task_id=%s error=%s", task.task_id, exc, exc_info=True)
        continue
      if not renewed:
        logger.warning("Lease lost for task task_id=%s; another worker may redeliver it.", task.task_id)
        return

  @staticmethod
  async def _safe_broker_call(operation: str, call: Any) -> None:
    try:
      await call
    except Exception as exc:  # noqa: BLE001
      logger.error("Task broker %s failed error=%s", operation, exc, exc_info=True)
