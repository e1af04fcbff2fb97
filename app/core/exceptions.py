import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.usage_gate import UsageLimitExceededError, denial_detail

logger = logging.getLogger("app.core.exceptions")

# Keys that may echo client payloads back into logs.
_REDACTED_DETAIL_KEYS = frozenset({"input", "body", "payload", "content"})


def _json_safe(value: Any) -> Any:
  """Reduce arbitrary error context to JSON primitives."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    message = str(value)
    return f"{type(value).__name__}: {message}" if message else type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None) -> dict[str, Any]:
  payload: dict[str, Any] = {"detail": detail}
  if request_id:
    payload["requestId"] = request_id
  return payload


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


def _sanitize_validation_errors(errors: Any) -> list[dict[str, Any]]:
  """Drop raw `input` values (top level and inside `ctx`) from pydantic errors."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    cleaned = {key: value for key, value in error.items() if key != "input"}
    ctx = cleaned.get("ctx")
    if isinstance(ctx, dict):
      cleaned["ctx"] = {key: value for key, value in ctx.items() if key != "input"}
    sanitized.append(_json_safe(cleaned))
  return sanitized


def _sanitize_http_detail(detail: Any) -> Any:
  if isinstance(detail, dict):
    return {key: _sanitize_http_detail(value) for key, value in detail.items() if key not in _REDACTED_DETAIL_KEYS}
  if isinstance(detail, list):
    return [_sanitize_http_detail(item) for item in detail]
  return detail


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Last-resort handler; the traceback stays server side."""
  request_id = _request_id(request)
  logger.error("Unhandled error request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  request_id = _request_id(request)
  errors = _sanitize_validation_errors(exc.errors())
  logger.warning("Request validation failed request_id=%s method=%s path=%s errors=%s", request_id, request.method, request.url.path, errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(errors, request_id=request_id))


async def usage_limit_exception_handler(request: Request, exc: UsageLimitExceededError) -> JSONResponse:
  """Refused admissions become 403s that tell the client which paywall to show."""
  request_id = _request_id(request)
  logger.info("Usage limit denial request_id=%s path=%s paywall_type=%s", request_id, request.url.path, exc.paywall_type)
  return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=_error_payload(denial_detail(exc.decision), request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Keep 4xx details for the client and replace 5xx details with a generic message."""
  from app.config import get_settings

  request_id = _request_id(request)
  if exc.status_code >= 500:
    logger.error("Server error request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id), headers=exc.headers)

  if get_settings().log_http_4xx:
    logger.warning("Client error request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, _sanitize_http_detail(exc.detail))
  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=exc.headers)
