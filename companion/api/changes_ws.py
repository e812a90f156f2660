import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from jose import JWTError

from companion.realtime.notifier import get_notifier, user_channel
from companion.utils.deps import decode_user_id

log = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/changes")
async def websocket_changes(ws: WebSocket):
    """Push change events for the authenticated user. Clients re-query on every event."""
    await ws.accept()
    token = ws.query_params.get("token")
    if not token:
        await ws.close(code=4001)
        return
    try:
        user_id = decode_user_id(token)
    except JWTError:
        await ws.close(code=4002)
        return

    notifier = get_notifier()
    async with notifier.subscribe(user_channel(user_id)) as sub:
        try:
            while True:
                event = await sub.get()
                await ws.send_json(event.model_dump(mode="json"))
        except WebSocketDisconnect:
            log.info("[WS] user %s disconnected from change feed", user_id)
