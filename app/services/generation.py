"""Client for the external plan Generation Service."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]

# Auth and rate-limit rejections will not succeed on redelivery.
NON_RETRYABLE_STATUS_CODES = frozenset({401, 403, 429})


class GenerationError(Exception):
  """Raised when the Generation Service cannot produce an artifact."""

  def __init__(self, message: str, *, retryable: bool = True, status_code: int | None = None) -> None:
    super().__init__(message)
    self.retryable = retryable
    self.status_code = status_code


@dataclass(frozen=True)
class PlanDay:
  id: int
  day_number: int
  name: str | None
  blocks: tuple[tuple[dict[str, Any], ...], ...]

  @property
  def exercise_count(self) -> int:
    return sum(len(block) for block in self.blocks)

  @property
  def display_name(self) -> str:
    return self.name or f"Day {self.day_number}"


@dataclass(frozen=True)
class PlanArtifact:
  """A generated weekly plan; `previous_id` links regenerations to the plan they replace."""

  id: int
  name: str
  days: tuple[PlanDay, ...]
  previous_id: int | None = None

  @property
  def exercise_count(self) -> int:
    return sum(day.exercise_count for day in self.days)


def parse_plan_day(data: dict[str, Any]) -> PlanDay:
  try:
    blocks = tuple(tuple(block.get("exercises") or ()) for block in data.get("blocks") or ())
    return PlanDay(id=int(data["id"]), day_number=int(data.get("day_number") or 0), name=data.get("name"), blocks=blocks)
  except (KeyError, TypeError, ValueError, AttributeError) as exc:
    raise GenerationError(f"Malformed plan day artifact: {exc}") from exc


def parse_plan_artifact(data: dict[str, Any]) -> PlanArtifact:
  try:
    days = tuple(parse_plan_day(day) for day in data.get("days") or ())
    previous_id = data.get("previous_id")
    return PlanArtifact(id=int(data["id"]), name=str(data.get("name") or ""), days=days, previous_id=int(previous_id) if previous_id is not None else None)
  except (KeyError, TypeError, ValueError) as exc:
    raise GenerationError(f"Malformed plan artifact: {exc}") from exc


class GenerationService(Protocol):
  """Entry points used by the job processors; each raises on failure."""

  async def generate(self, user_id: int, context: dict[str, Any], on_progress: ProgressCallback | None = None) -> PlanArtifact: ...

  async def regenerate_weekly(self, user_id: int, feedback: str | None, on_progress: ProgressCallback | None = None) -> PlanArtifact: ...

  async def regenerate_daily(self, user_id: int, day_id: int, reason: str, styles: tuple[str, ...], on_progress: ProgressCallback | None = None) -> PlanDay: ...


class HttpGenerationService(GenerationService):
  """Calls the generation backend and consumes its NDJSON progress stream.

  Each line is either `{"progress": n}` or the terminal `{"artifact": {...}}`;
  an `{"error": "..."}` line aborts the call.
  """

  def __init__(self, *, base_url: str, timeout_seconds: float = 120.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._base_url = base_url.rstrip("/")
    self._timeout_seconds = timeout_seconds
    self._transport = transport

  def _build_client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout_seconds, transport=self._transport, trust_env=False)

  async def generate(self, user_id: int, context: dict[str, Any], on_progress: ProgressCallback | None = None) -> PlanArtifact:
    artifact = await self._stream("/v1/plans/generate", {"user_id": user_id, "context": context}, on_progress)
    return parse_plan_artifact(artifact)

  async def regenerate_weekly(self, user_id: int, feedback: str | None, on_progress: ProgressCallback | None = None) -> PlanArtifact:
    artifact = await self._stream("/v1/plans/regenerate", {"user_id": user_id, "feedback": feedback}, on_progress)
    return parse_plan_artifact(artifact)

  async def regenerate_daily(self, user_id: int, day_id: int, reason: str, styles: tuple[str, ...], on_progress: ProgressCallback | None = None) -> PlanDay:
    body = {"user_id": user_id, "reason": reason, "styles": list(styles)}
    artifact = await self._stream(f"/v1/plan-days/{day_id}/regenerate", body, on_progress)
    return parse_plan_day(artifact)

  async def _stream(self, path: str, body: dict[str, Any], on_progress: ProgressCallback | None) -> dict[str, Any]:
    try:
      async with self._build_client() as client, client.stream("POST", path, json=body) as response:
        if response.status_code >= 400:
          detail = (await response.aread()).decode("utf-8", errors="replace")[:200]
          raise GenerationError(f"Generation service returned {response.status_code}: {detail}", retryable=response.status_code not in NON_RETRYABLE_STATUS_CODES, status_code=response.status_code)

        async for line in response.aiter_lines():
          if not line.strip():
            continue
          message = json.loads(line)
          if "error" in message:
            raise GenerationError(str(message["error"]))
          if "artifact" in message:
            return dict(message["artifact"])
          if "progress" in message and on_progress is not None:
            await on_progress(int(message["progress"]))
    except httpx.HTTPError as exc:
      raise GenerationError(f"Generation service request failed: {exc}") from exc
    except json.JSONDecodeError as exc:
      raise GenerationError(f"Generation service sent a malformed stream line: {exc}") from exc

    raise GenerationError("Generation service stream ended without an artifact.")


class GenerationServiceRegistry:
  """Explicitly constructed map of named generation providers."""

  def __init__(self, providers: dict[str, GenerationService], *, default: str) -> None:
    if default not in providers:
      raise ValueError(f"Default generation provider {default!r} is not registered.")
    self._providers = dict(providers)
    self._default = default

  def resolve(self, name: str | None = None) -> GenerationService:
    provider = self._providers.get(name or self._default)
    if provider is None:
      raise ValueError(f"Unsupported generation provider: {name}")
    return provider

  @property
  def names(self) -> tuple[str, ...]:
    return tuple(sorted(self._providers))
