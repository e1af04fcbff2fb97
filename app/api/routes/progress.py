import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from app.api.deps import resolve_user_id
from app.core.container import ServiceContainer

router = APIRouter()
logger = logging.getLogger("app.api.routes.progress")


async def _wait_for_disconnect(websocket: WebSocket) -> None:
  # Inbound messages carry no meaning on this channel; reading only detects the close.
  while True:
    await websocket.receive_text()


@router.websocket("/ws")
async def progress_socket(websocket: WebSocket, user_id: int | None = Query(default=None, gt=0)) -> None:  # noqa: B008
  """Stream the caller's job progress events until the client disconnects.

  The caller is identified by the gateway-set X-User-Id header, exactly like the
  REST routes. A `user_id` query parameter is accepted for older clients but must
  name the same user.
  """
  container: ServiceContainer | None = getattr(websocket.app.state, "container", None)
  if container is None:
    await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
    return

  try:
    caller_id = resolve_user_id(websocket.headers.get("x-user-id"))
  except HTTPException as exc:
    logger.warning("Progress socket refused: %s", exc.detail)
    await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail))
    return
  if user_id is not None and user_id != caller_id:
    logger.warning("Progress socket refused: caller %s asked for user_id=%s", caller_id, user_id)
    await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="User mismatch.")
    return

  # Subscribe before the handshake completes so no event slips between accept and subscribe.
  async with container.broadcaster.subscribe(caller_id) as subscription:
    await websocket.accept()
    logger.info("Progress socket connected user_id=%s connections=%s", caller_id, container.broadcaster.connection_count(caller_id))
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
      while True:
        next_event = asyncio.create_task(subscription.next_event())
        done, _ = await asyncio.wait({next_event, receiver}, return_when=asyncio.FIRST_COMPLETED)
        if receiver in done:
          next_event.cancel()
          break
        await websocket.send_json(next_event.result().to_message())
    except WebSocketDisconnect:
      pass
    finally:
      receiver.cancel()
      await asyncio.gather(receiver, return_exceptions=True)
  logger.info("Progress socket closed user_id=%s", caller_id)
