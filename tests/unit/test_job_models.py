from __future__ import annotations

import pytest

from app.jobs.models import DailyRegenerationPayload, InvalidJobTransitionError, JobStatus, JobType, WeeklyGenerationPayload, can_transition, ensure_transition, parse_payload

_ALLOWED = {
  (JobStatus.PENDING, JobStatus.PROCESSING),
  (JobStatus.PROCESSING, JobStatus.PROCESSING),
  (JobStatus.PROCESSING, JobStatus.COMPLETED),
  (JobStatus.PROCESSING, JobStatus.FAILED),
}


@pytest.mark.parametrize("current", list(JobStatus))
@pytest.mark.parametrize("target", list(JobStatus))
def test_status_transitions_only_move_forward(current: JobStatus, target: JobStatus) -> None:
  assert can_transition(current, target) is ((current, target) in _ALLOWED)


def test_ensure_transition_rejects_leaving_terminal_state() -> None:
  with pytest.raises(InvalidJobTransitionError):
    ensure_transition(JobStatus.COMPLETED, JobStatus.PROCESSING)


def test_parse_payload_returns_typed_variant() -> None:
  payload = parse_payload(JobType.DAILY_WORKOUT_REGENERATION, {"plan_day_id": "12", "regeneration_reason": "knee pain", "regeneration_styles": ["low impact"]})

  assert payload == DailyRegenerationPayload(plan_day_id=12, regeneration_reason="knee pain", regeneration_styles=("low impact",))
  assert payload.to_dict()["regeneration_styles"] == ["low impact"]


def test_daily_payload_requires_plan_day() -> None:
  with pytest.raises(ValueError, match="plan_day_id"):
    parse_payload(JobType.DAILY_WORKOUT_REGENERATION, {"regeneration_reason": "tired"})


def test_weekly_payload_round_trips_through_storage_dict() -> None:
  payload = WeeklyGenerationPayload(custom_feedback="more legs", timezone="Europe/Berlin", profile_data={"goal": "strength"})
  assert parse_payload(JobType.WORKOUT_GENERATION, payload.to_dict()) == payload
