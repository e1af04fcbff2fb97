import logging
import re
import time
import uuid
from typing import Any

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("app.core.middleware")

REQUEST_ID_HEADER = "x-request-id"
# Client-supplied ids are only trusted when they look like an opaque token.
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{8,64}$")

_STRIPPED_RESPONSE_HEADERS = ("server", "x-powered-by")
_DEFAULT_RESPONSE_HEADERS = {"x-content-type-options": "nosniff", "x-frame-options": "DENY", "referrer-policy": "no-referrer"}


def resolve_request_id(scope: Scope) -> str:
  """Reuse a well-formed incoming x-request-id, otherwise mint a new one."""
  incoming = Headers(scope=scope).get(REQUEST_ID_HEADER)
  if incoming and _REQUEST_ID_PATTERN.match(incoming):
    return incoming
  return uuid.uuid4().hex


def _log_target(scope: Scope) -> str:
  path = scope.get("path", "")
  query_string = scope.get("query_string", b"")
  return f"{path}?{query_string.decode('latin-1')}" if query_string else path


class RequestLoggingMiddleware:
  """Tag each HTTP request with an id and log one line on entry and exit."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    request_id = resolve_request_id(scope)
    scope.setdefault("state", {})["request_id"] = request_id
    method = scope.get("method", "UNKNOWN")
    logger.info("Incoming request request_id=%s %s %s", request_id, method, _log_target(scope))

    started = time.perf_counter()
    status_code = 0

    async def send_with_request_id(message: Message) -> None:
      nonlocal status_code
      if message["type"] == "http.response.start":
        status_code = message.get("status", 0)
        MutableHeaders(scope=message).setdefault(REQUEST_ID_HEADER, request_id)
      await send(message)

    try:
      await self.app(scope, receive, send_with_request_id)
    finally:
      elapsed_ms = (time.perf_counter() - started) * 1000
      logger.info("Response request_id=%s status=%s (took %.2fms)", request_id, status_code, elapsed_ms)


class SecurityHeadersMiddleware:
  """Remove server fingerprint headers and add browser hardening defaults."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    async def send_hardened(message: dict[str, Any]) -> None:
      if message["type"] == "http.response.start":
        headers = MutableHeaders(scope=message)
        for name in _STRIPPED_RESPONSE_HEADERS:
          if name in headers:
            del headers[name]
        for name, value in _DEFAULT_RESPONSE_HEADERS.items():
          headers.setdefault(name, value)
      await send(message)

    await self.app(scope, receive, send_hardened)
