"""Shared FastAPI dependencies for the service graph and caller identity."""

from __future__ import annotations

import logging

from fastapi import Header, HTTPException, Request, status

from app.core.container import ServiceContainer

logger = logging.getLogger(__name__)


def get_container(request: Request) -> ServiceContainer:
  """Return the container the lifespan stored on the application."""
  container = getattr(request.app.state, "container", None)
  if container is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up.")
  return container


def resolve_user_id(x_user_id: str | None) -> int:
  """Parse the identity header an upstream gateway sets after authenticating the caller."""
  if x_user_id is None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity.")
  try:
    user_id = int(x_user_id)
  except ValueError as exc:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity.") from exc
  if user_id <= 0:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity.")
  return user_id


async def get_current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> int:
  return resolve_user_id(x_user_id)
