"""WebSocket feedback handler: turns client events into registry mutations.

``EventCoordinator`` is shared by every connection. It owns the per-sender
feedback throttle and decides who hears about each change. The main entry
point is ``websocket_feedback()``, which server.py mounts as ``/ws/feedback``.
"""

import json
import logging
import os
import time
from typing import Callable
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from .connection_hub import ConnectionHub
from .session_registry import ROLE_STUDENT, SessionRegistry, SocketEntry, normalize_code
from .ws_constants import (
    MSG_CREATE_SESSION,
    MSG_JOIN_SESSION,
    MSG_FEEDBACK,
    MSG_END_SESSION,
    MSG_SESSION_CREATED,
    MSG_JOINED_SESSION,
    MSG_JOIN_ERROR,
    MSG_AGGREGATE_UPDATE,
    MSG_SESSION_ENDED,
    MSG_ERROR,
    JOIN_ERR_INVALID_CODE,
    JOIN_ERR_COULD_NOT_JOIN,
)

logger = logging.getLogger(__name__)

FEEDBACK_THROTTLE_SECONDS = int(os.environ.get("CLASSPULSE_FEEDBACK_THROTTLE_MS", "500")) / 1000


# --- Inbound payloads ---

class JoinSessionPayload(BaseModel):
    code: str = Field("", max_length=64)


class FeedbackPayload(BaseModel):
    code: str = Field("", max_length=64)
    level: str = Field("", max_length=32)


class EndSessionPayload(BaseModel):
    code: str = Field("", max_length=64)


def _parse(model: type[BaseModel], msg: dict) -> BaseModel | None:
    try:
        return model.model_validate(msg)
    except ValidationError:
        return None


class EventCoordinator:
    """Applies client events to the registry and fans out the results.

    Each ``handle_<type>`` method runs its registry mutation without awaiting,
    so no other handler can observe a half-applied change.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        hub: ConnectionHub,
        *,
        throttle_seconds: float = FEEDBACK_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.hub = hub
        self.throttle_seconds = throttle_seconds
        self._clock = clock
        # conn_id -> monotonic time of the last accepted feedback event
        self.last_feedback_time: dict[str, float] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _broadcast_aggregate(self, code: str) -> None:
        aggregate = self.registry.get_aggregate(code)
        if aggregate is None:
            return
        await self.hub.broadcast(code, {"type": MSG_AGGREGATE_UPDATE, **aggregate})

    async def _leave_previous(self, conn_id: str, previous: SocketEntry | None, code: str) -> None:
        """Move *conn_id* out of the group it belonged to before joining *code*."""
        if previous is None or previous.code == code:
            return
        self.hub.leave_group(conn_id, previous.code)
        if previous.role == ROLE_STUDENT:
            await self._broadcast_aggregate(previous.code)

    def _is_throttled(self, conn_id: str) -> bool:
        now = self._clock()
        last = self.last_feedback_time.get(conn_id)
        if last is not None and now - last < self.throttle_seconds:
            return True
        self.last_feedback_time[conn_id] = now
        return False

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def handle_create_session(self, conn_id: str, msg: dict) -> None:
        previous = self.registry.lookup(conn_id)
        code = self.registry.create_session(conn_id)
        self.hub.join_group(conn_id, code)
        await self.hub.send(conn_id, {"type": MSG_SESSION_CREATED, "code": code})
        logger.info("Session created: %s by %s", code, conn_id)
        await self._leave_previous(conn_id, previous, code)

    async def handle_join_session(self, conn_id: str, msg: dict) -> None:
        payload = _parse(JoinSessionPayload, msg)
        code = normalize_code(payload.code) if payload else ""

        if not self.registry.session_exists(code):
            await self.hub.send(conn_id, {"type": MSG_JOIN_ERROR, "message": JOIN_ERR_INVALID_CODE})
            return

        previous = self.registry.lookup(conn_id)
        if not self.registry.add_student(code, conn_id):
            await self.hub.send(conn_id, {"type": MSG_JOIN_ERROR, "message": JOIN_ERR_COULD_NOT_JOIN})
            return

        self.hub.join_group(conn_id, code)
        await self.hub.send(conn_id, {"type": MSG_JOINED_SESSION, "code": code})
        await self._broadcast_aggregate(code)
        logger.info("Student %s joined session %s", conn_id, code)
        await self._leave_previous(conn_id, previous, code)

    async def handle_feedback(self, conn_id: str, msg: dict) -> None:
        if self._is_throttled(conn_id):
            logger.debug("Throttled feedback from %s", conn_id)
            return

        payload = _parse(FeedbackPayload, msg)
        code = normalize_code(payload.code) if payload else ""
        level = payload.level if payload else ""
        if not self.registry.update_feedback(code, conn_id, level):
            # Stale client state after an ended session lands here too
            logger.debug("Ignoring feedback from %s for session %r (level=%r)", conn_id, code, level)
            return

        await self._broadcast_aggregate(code)

    async def handle_end_session(self, conn_id: str, msg: dict) -> None:
        payload = _parse(EndSessionPayload, msg)
        code = normalize_code(payload.code) if payload else ""

        # Everyone in the group right now is told, whether or not the code is live
        recipients = self.hub.members(code)
        ended = self.registry.end_session(code)
        self.hub.discard_group(code)
        await self.hub.send_many(recipients, {"type": MSG_SESSION_ENDED})

        if ended:
            logger.info("Session ended: %s by %s", code, conn_id)

    async def handle_disconnect(self, conn_id: str) -> None:
        self.last_feedback_time.pop(conn_id, None)
        self.hub.unregister(conn_id)

        entry = self.registry.remove_socket(conn_id)
        if entry is None:
            return
        if entry.role == ROLE_STUDENT:
            await self._broadcast_aggregate(entry.code)
        logger.info("Socket %s (%s) left session %s", conn_id, entry.role, entry.code)

    # Dispatch table: message type -> handler method name
    _HANDLERS = {
        MSG_CREATE_SESSION: "handle_create_session",
        MSG_JOIN_SESSION: "handle_join_session",
        MSG_FEEDBACK: "handle_feedback",
        MSG_END_SESSION: "handle_end_session",
    }

    def handler_for(self, msg_type: str):
        handler_name = self._HANDLERS.get(msg_type)
        if not handler_name:
            return None
        return getattr(self, handler_name)


class WebSocketConnection:
    """Receive loop for a single client connection."""

    def __init__(self, websocket: WebSocket, *, coordinator: EventCoordinator, conn_id: str | None = None):
        self.ws = websocket
        self.coordinator = coordinator
        self.conn_id = conn_id or uuid4().hex

    async def send_error(self, content: str) -> None:
        await self.coordinator.hub.send(self.conn_id, {"type": MSG_ERROR, "content": content})

    async def run(self) -> None:
        """Main message loop — dispatches to coordinator handlers."""
        try:
            while True:
                data = await self.ws.receive_text()

                try:
                    msg = json.loads(data)
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning("Malformed JSON from client %s: %s", self.conn_id, e)
                    await self.send_error("Invalid message format.")
                    continue

                msg_type = msg.get("type") if isinstance(msg, dict) else None
                if not msg_type or not isinstance(msg_type, str):
                    await self.send_error("Missing message type.")
                    continue

                handler = self.coordinator.handler_for(msg_type)
                if handler is None:
                    await self.send_error(f"Unknown message type: {msg_type}")
                    continue

                try:
                    await handler(self.conn_id, msg)
                except Exception:
                    logger.exception("Unexpected error handling message type=%s", msg_type)
                    await self.send_error("An internal error occurred.")
        except (WebSocketDisconnect, RuntimeError):
            pass

    async def cleanup(self) -> None:
        try:
            await self.coordinator.handle_disconnect(self.conn_id)
        except Exception:
            logger.exception("Disconnect cleanup failed for %s", self.conn_id)


# ------------------------------------------------------------------
# FastAPI endpoint — this is what server.py mounts at /ws/feedback
# ------------------------------------------------------------------

async def websocket_feedback(websocket: WebSocket, *, coordinator: EventCoordinator) -> None:
    """WebSocket endpoint handler for /ws/feedback."""
    await websocket.accept()

    connection = WebSocketConnection(websocket, coordinator=coordinator)
    coordinator.hub.register(connection.conn_id, websocket)
    logger.info("Socket connected: %s", connection.conn_id)
    try:
        await connection.run()
    finally:
        await connection.cleanup()
