"""Unit tests for API exception sanitization behavior."""

from __future__ import annotations

from app.core.exceptions import _error_payload, _sanitize_http_detail, _sanitize_validation_errors


def test_sanitize_validation_errors_removes_input_and_serializes_exception_ctx() -> None:
  """Ensure validation errors stay JSON-serializable and redact raw request payloads."""
  errors = [{"type": "value_error", "loc": ("body", "regenerationReason"), "msg": "Value error, regenerationReason must not be blank.", "input": "   ", "ctx": {"error": ValueError("regenerationReason must not be blank."), "input": "   "}}]
  sanitized = _sanitize_validation_errors(errors)
  assert "input" not in sanitized[0]
  assert sanitized[0]["loc"] == ["body", "regenerationReason"]
  assert sanitized[0]["ctx"]["error"] == "ValueError: regenerationReason must not be blank."
  assert "input" not in sanitized[0]["ctx"]


def test_sanitize_http_detail_drops_payload_fields() -> None:
  detail = {"reason": "Token limit exceeded", "payload": {"customFeedback": "secret"}, "nested": [{"body": "x", "keep": 1}]}
  assert _sanitize_http_detail(detail) == {"reason": "Token limit exceeded", "nested": [{"keep": 1}]}


def test_error_payload_includes_request_id_when_known() -> None:
  assert _error_payload("Job not found.", request_id="req-1") == {"detail": "Job not found.", "requestId": "req-1"}
  assert _error_payload("Job not found.") == {"detail": "Job not found."}
