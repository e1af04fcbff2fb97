import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.api.deps import get_container
from app.api.models import BillingWebhookResponse
from app.api.msgspec_utils import decode_billing_webhook
from app.core.container import ServiceContainer

router = APIRouter()
logger = logging.getLogger("app.api.routes.webhooks")


def _authorized(expected: str | None, received: str | None) -> bool:
  if expected is None:
    return True
  if received is None:
    return False
  return secrets.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


@router.post("/billing", response_model=BillingWebhookResponse)
async def billing_webhook(  # noqa: B008
  request: Request,
  authorization: str | None = Header(default=None),
  container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> BillingWebhookResponse | JSONResponse:
  """Apply a subscription billing event; 5xx responses make the sender retry."""
  if not _authorized(container.settings.billing_webhook_auth, authorization):
    logger.warning("Billing webhook rejected: authorization %s", "mismatch" if authorization else "missing")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

  header, envelope = await decode_billing_webhook(request)
  event = header.event

  try:
    result = await container.billing.handle(envelope)
  except Exception as exc:  # noqa: BLE001
    logger.error("Billing webhook processing failed event_id=%s event_type=%s error=%s", event.id, event.type, exc, exc_info=True)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"success": False, "message": "Webhook processing failed"})
  return BillingWebhookResponse(success=result.success, message=result.message)
