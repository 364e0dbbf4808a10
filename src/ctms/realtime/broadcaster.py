"""
Realtime broadcaster over WebSockets.

Every connected socket is on the global topic. A socket additionally joins
its personal topic by presenting its user id. Delivery is best-effort and
at-most-once: no buffering, no replay, broken sockets are dropped.
"""

import asyncio
import json
import logging
from typing import Any, Iterable, Optional, Protocol
from uuid import UUID

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from ctms.config import settings
from ctms.models import RealtimeEvent
from ctms.observability.metrics import metrics
from ctms.utils.time import utc_now

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    """Capability handed to the engine for emitting realtime events."""

    async def publish(
        self,
        event: RealtimeEvent,
        payload: Any,
        targets: Optional[Iterable[UUID]] = None,
    ) -> None: ...


class ConnectionManager:
    """Tracks live sockets and their personal topics, and fans events out to them."""

    def __init__(self, send_timeout: float | None = None):
        self.send_timeout = send_timeout or settings.broadcast_send_timeout_seconds
        self.connections: set[WebSocket] = set()
        self.topics: dict[str, set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.add(websocket)
        metrics.set_gauge("realtime.connections", len(self.connections))
        logger.info(f"Realtime client connected. Total connections: {len(self.connections)}")

    def join(self, websocket: WebSocket, user_id: UUID | str) -> None:
        """Subscribe a connected socket to the personal topic for user_id."""
        topic = str(user_id)
        self.topics.setdefault(topic, set()).add(websocket)
        logger.info(f"User {topic} joined their topic")

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.discard(websocket)
        for topic in list(self.topics):
            sockets = self.topics[topic]
            sockets.discard(websocket)
            if not sockets:
                del self.topics[topic]
        metrics.set_gauge("realtime.connections", len(self.connections))

    def subscribers(self, user_id: UUID | str) -> int:
        return len(self.topics.get(str(user_id), ()))

    async def publish(
        self,
        event: RealtimeEvent,
        payload: Any,
        targets: Optional[Iterable[UUID]] = None,
    ) -> None:
        """
        Emit event to the global topic, or to the personal topics of targets.

        Personal events without targets are not delivered anywhere.
        """
        if event.is_personal():
            recipients: set[WebSocket] = set()
            for user_id in targets or ():
                recipients |= self.topics.get(str(user_id), set())
        else:
            recipients = set(self.connections)

        if not recipients:
            return
        sockets = list(recipients)

        message = json.dumps(
            {
                "event": event.value,
                "data": jsonable_encoder(payload),
                "timestamp": utc_now().isoformat(),
            }
        )
        results = await asyncio.gather(
            *(self._send(ws, message) for ws in sockets),
            return_exceptions=True,
        )
        delivered = sum(1 for r in results if r is True)
        metrics.inc_counter("realtime.delivered", delivered)
        for ws, result in zip(sockets, results):
            if result is not True:
                metrics.inc_counter("realtime.dropped")
                self.disconnect(ws)

    async def _send(self, websocket: WebSocket, message: str) -> bool:
        try:
            await asyncio.wait_for(websocket.send_text(message), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.warning(f"Dropping realtime connection after send failure: {e}")
            return False


connection_manager = ConnectionManager()
