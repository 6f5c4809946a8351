from __future__ import annotations
import logging
from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from ..deps import decode_bearer
from ..core.broadcast import get_registry

logger = logging.getLogger(__name__)
router = APIRouter(tags=["realtime"])

@router.websocket("/ws")
async def realtime(websocket: WebSocket):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        claims = await decode_bearer(token)
    except HTTPException:
        await websocket.close(code=4401)
        return

    registry = get_registry()
    user_id = claims["sub"]
    await websocket.accept()
    client_id = await registry.register_client(websocket, user_id, claims["role"])
    try:
        await websocket.send_json({"event": "welcome", "userId": user_id, "role": claims["role"]})
        while True:
            msg = await websocket.receive_json()
            if isinstance(msg, dict) and msg.get("action") == "subscribe" and msg.get("attendeeId"):
                ok = await registry.subscribe(client_id, str(msg["attendeeId"]))
                if ok:
                    await websocket.send_json({"event": "subscribed", "entity": "attendee", "id": msg["attendeeId"]})
                else:
                    await websocket.send_json({"event": "error", "message": "Unauthorized subscription request"})
    except WebSocketDisconnect:
        pass
    except ValueError:
        logger.info("closing connection of %s after malformed message", user_id)
        await websocket.close(code=1003)
    finally:
        await registry.unregister_client(client_id)
