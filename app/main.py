from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import jobs, progress, webhooks
from app.config import get_settings
from app.core.exceptions import global_exception_handler, http_exception_handler, request_validation_exception_handler, usage_limit_exception_handler
from app.core.lifespan import lifespan
from app.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from app.services.usage_gate import UsageLimitExceededError

APP_VERSION = "0.1.0"


def create_app() -> FastAPI:
  """Build the ASGI application with its middleware, handlers and routers."""
  settings = get_settings()
  application = FastAPI(title="fitplan-engine", version=APP_VERSION, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

  application.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization", "x-user-id"], expose_headers=["content-length", "x-request-id"])

  # Add exception handlers
  application.add_exception_handler(Exception, global_exception_handler)
  application.add_exception_handler(HTTPException, http_exception_handler)
  application.add_exception_handler(RequestValidationError, request_validation_exception_handler)
  application.add_exception_handler(UsageLimitExceededError, usage_limit_exception_handler)

  # Add middleware
  application.add_middleware(RequestLoggingMiddleware)
  application.add_middleware(SecurityHeadersMiddleware)

  @application.get("/health", include_in_schema=False)
  async def health_check() -> dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok", "version": APP_VERSION}

  application.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
  application.include_router(progress.router, prefix="/v1/progress", tags=["progress"])
  application.include_router(webhooks.router, prefix="/v1/webhooks", tags=["webhooks"])
  return application


app = create_app()
