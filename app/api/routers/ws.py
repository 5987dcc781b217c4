"""WebSocket router -- AI chat over a persistent connection."""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.auth import user_id_from_token
from app.services.chat_relay import EVENT_ERROR, ChatSession
from app.ws_manager import MAX_MESSAGE_SIZE, WebSocketChannel, manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/chat")
async def chat_endpoint(websocket: WebSocket) -> None:
    """Chat endpoint.

    Auth via query param: /ws/chat?token=<jwt>
    Client sends ``{"type": "chat", "payload": {message, files?, model?}}``;
    the server answers with chat-start / chat-response / chat-complete or
    chat-error frames (see app.services.chat_relay).
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Missing token")
        return

    user_id = user_id_from_token(token)
    if not user_id:
        await websocket.close(code=4001, reason="Invalid token")
        return

    await websocket.accept()
    channel = WebSocketChannel(websocket)
    await manager.connect(user_id, channel)
    session = ChatSession(channel)
    logger.info(
        "WS open  user=%s conn=%s conns=%d",
        user_id[:8], channel.connection_id, manager.connection_count(user_id),
    )

    try:
        while True:
            data = await websocket.receive_text()
            if len(data) > MAX_MESSAGE_SIZE:
                await channel.close(code=1009, reason="Message too large")
                return

            try:
                frame = json.loads(data)
            except ValueError:
                frame = None
            if not isinstance(frame, dict):
                await channel.send_event(EVENT_ERROR, {"message": "Malformed message"})
                continue

            event = frame.get("type")
            if event == "chat":
                await session.submit(frame.get("payload"))
            elif event != "pong":
                logger.debug("Ignoring WS event %r from user=%s", event, user_id[:8])
    except WebSocketDisconnect:
        logger.info("WS close user=%s conn=%s (client disconnect)", user_id[:8], channel.connection_id)
    except Exception:
        logger.exception("WS error user=%s", user_id[:8])
    finally:
        channel.mark_closed()
        await session.close()
        await manager.disconnect(user_id, channel)
        logger.info(
            "WS cleaned up user=%s remaining=%d",
            user_id[:8], manager.connection_count(user_id),
        )
