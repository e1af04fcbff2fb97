"""msgspec decoding for raw webhook bodies."""

from __future__ import annotations

from typing import Annotated, Any

import msgspec
from fastapi import HTTPException, Request, status

NonEmptyStr = Annotated[str, msgspec.Meta(min_length=1)]


class BillingEventHeader(msgspec.Struct):
  """The fields every billing event must carry; the rest stays untyped."""

  id: NonEmptyStr
  type: NonEmptyStr


class BillingWebhookEnvelope(msgspec.Struct):
  event: BillingEventHeader
  api_version: str | None = None


async def decode_billing_webhook(request: Request) -> tuple[BillingWebhookEnvelope, dict[str, Any]]:
  """Validate the envelope shape and also return the full body as a dict for the ledger."""
  payload_bytes = await request.body()
  try:
    envelope = msgspec.json.decode(payload_bytes, type=BillingWebhookEnvelope)
    raw = msgspec.json.decode(payload_bytes, type=dict[str, Any])
  except msgspec.DecodeError as exc:
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid webhook payload: {exc}") from exc
  return envelope, raw
