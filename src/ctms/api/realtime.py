"""
WebSocket endpoint for live updates.

Connect to /ws (optionally with ?token=<jwt>), then send
{"event": "join", "user_id": "<own id>"} to subscribe to personal events.
Only the caller's own id may be joined, and only while that user is active.
"""

import json
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from ctms.api.deps import insecure_dev_enabled, resolve_user_actor
from ctms.auth.token import InvalidToken, decode_access_token
from ctms.db import base as db_base
from ctms.realtime.broadcaster import connection_manager

logger = logging.getLogger("ctms.api.realtime")

ws_router = APIRouter()


async def _is_active_user(user_id: UUID) -> bool:
    async with db_base.async_session_factory() as session:
        try:
            await resolve_user_actor(session, user_id)
        except HTTPException as e:
            logger.info(f"Realtime identity {user_id} refused: {e.detail}")
            return False
    return True


def _parse_frame(raw: str) -> Optional[dict]:
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return message if isinstance(message, dict) else None


def _resolve_join(message: dict, authenticated: Optional[UUID]) -> Optional[UUID]:
    """Return the user id to join, or None when the request is not acceptable."""
    raw = message.get("user_id") or message.get("userId")
    if raw is None:
        return authenticated
    try:
        requested = UUID(str(raw))
    except ValueError:
        return None
    if authenticated is not None:
        return requested if requested == authenticated else None
    return requested if insecure_dev_enabled() else None


@ws_router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = None):
    authenticated: Optional[UUID] = None
    if token:
        try:
            authenticated = decode_access_token(token)
        except InvalidToken as e:
            logger.info(f"Rejecting realtime connection: {e}")
            await websocket.close(code=1008)
            return
        if not await _is_active_user(authenticated):
            await websocket.close(code=1008)
            return

    await connection_manager.connect(websocket)
    if authenticated is not None:
        connection_manager.join(websocket, authenticated)

    try:
        while True:
            message = _parse_frame(await websocket.receive_text())
            if message is None or message.get("event") != "join":
                continue
            user_id = _resolve_join(message, authenticated)
            # Token users were checked on connect; bare ids are checked per join
            if user_id is not None and authenticated is None and not await _is_active_user(user_id):
                user_id = None
            if user_id is None:
                await websocket.send_json({"event": "error", "data": {"message": "join not permitted"}})
                continue
            connection_manager.join(websocket, user_id)
            await websocket.send_json({"event": "joined", "data": {"user_id": str(user_id)}})
    except WebSocketDisconnect:
        pass
    finally:
        connection_manager.disconnect(websocket)
        logger.info(f"Realtime client disconnected. Total connections: {len(connection_manager.connections)}")
