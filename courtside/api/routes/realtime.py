"""Realtime WebSocket route handler."""

import asyncio
import json
import logging
from datetime import timedelta

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from courtside.models import events
from courtside.models.schemas import PresenceStatus
from courtside.services import auth_service
from courtside.services.event_router import get_event_router
from courtside.services.presence_service import get_presence_registry
from courtside.services.websocket_manager import get_websocket_manager, make_event
from courtside.utils.constants import POLICY_VIOLATION_CLOSE_CODE, SERVER_HEARTBEAT_TIMEOUT_SECONDS
from courtside.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)
router = APIRouter()


async def _announce_status(user_id: str, online: bool) -> None:
    manager = get_websocket_manager()
    await manager.broadcast(
        make_event(
            events.PRESENCE_USER_STATUS_CHANGED,
            {"userId": user_id, "isOnline": online, "timestamp": utcnow().isoformat()},
        ),
        exclude_user=user_id,
    )


@router.websocket("/api/ws")
async def websocket_realtime(websocket: WebSocket):
    """
    WebSocket endpoint for realtime messaging, presence and notifications.

    Requires JWT token in query parameter: ?token=<jwt_token>
    Frames are JSON ``{event, reqId?, payload}``; bare "ping"/"pong" text
    frames are the heartbeat.
    """
    await websocket.accept()

    # Get token from query parameters
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE, reason="Missing authentication token")
        return

    # Verify token
    payload = auth_service.verify_token(token)
    if payload is None:
        await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE, reason="Invalid authentication token")
        return

    user_id = auth_service.get_user_id(payload)
    if user_id is None:
        await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE, reason="Invalid token payload")
        return

    manager = get_websocket_manager()
    presence = get_presence_registry()
    event_router = get_event_router()

    first_connection = await manager.connect(user_id, websocket)
    await presence.set_status(user_id, PresenceStatus.ONLINE)
    await websocket.send_text(json.dumps(make_event(events.CONNECTED, {"userId": user_id})))
    if first_connection:
        await _announce_status(user_id, True)

    try:
        # Keep connection alive and handle ping/pong with timeout
        timeout_seconds = SERVER_HEARTBEAT_TIMEOUT_SECONDS
        last_activity = utcnow()

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=timeout_seconds)

                last_activity = utcnow()
                await manager.update_activity(websocket)
                await presence.touch(user_id)

                if data == events.PING:
                    await websocket.send_text(events.PONG)
                    continue
                if data == events.PONG:
                    continue

                await event_router.handle_frame(user_id, websocket, data, claims=payload)
            except asyncio.TimeoutError:
                # Check if connection has been inactive too long
                if utcnow() - last_activity > timedelta(seconds=timeout_seconds * 2):
                    logger.info(f"WebSocket timeout for user {user_id}, closing connection")
                    await websocket.close(code=1000, reason="Connection timeout")
                    break
                # Send ping to check if connection is still alive
                try:
                    await websocket.send_text(events.PING)
                except Exception:
                    break
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user_id}")
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}")
    finally:
        # Clean up connection
        last_connection = await manager.disconnect(user_id, websocket)
        if last_connection:
            await presence.set_status(user_id, PresenceStatus.OFFLINE)
            await _announce_status(user_id, False)
