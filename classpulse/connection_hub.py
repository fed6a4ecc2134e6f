"""Live WebSocket connections and the broadcast groups they belong to.

A group is named by a session code. The hub knows nothing about sessions
themselves; the coordinator decides who joins and leaves which group.
"""

import logging
from collections import defaultdict

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class ConnectionHub:
    def __init__(self):
        self._sockets: dict[str, WebSocket] = {}
        self._groups: dict[str, set[str]] = defaultdict(set)
        self._memberships: dict[str, set[str]] = defaultdict(set)

    def register(self, conn_id: str, websocket: WebSocket) -> None:
        self._sockets[conn_id] = websocket

    def unregister(self, conn_id: str) -> None:
        """Forget a connection and drop it from every group."""
        self._sockets.pop(conn_id, None)
        for group in self._memberships.pop(conn_id, set()):
            self._remove_member(group, conn_id)

    def join_group(self, conn_id: str, group: str) -> None:
        self._groups[group].add(conn_id)
        self._memberships[conn_id].add(group)

    def leave_group(self, conn_id: str, group: str) -> None:
        self._remove_member(group, conn_id)
        groups = self._memberships.get(conn_id)
        if groups is not None:
            groups.discard(group)
            if not groups:
                del self._memberships[conn_id]

    def discard_group(self, group: str) -> None:
        for conn_id in list(self._groups.pop(group, ())):
            groups = self._memberships.get(conn_id)
            if groups is not None:
                groups.discard(group)
                if not groups:
                    del self._memberships[conn_id]

    def members(self, group: str) -> list[str]:
        return list(self._groups.get(group, ()))

    def _remove_member(self, group: str, conn_id: str) -> None:
        members = self._groups.get(group)
        if members is None:
            return
        members.discard(conn_id)
        if not members:
            del self._groups[group]

    async def send(self, conn_id: str, message: dict) -> bool:
        """Send JSON to one connection, return False if it is gone."""
        websocket = self._sockets.get(conn_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
            return True
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("Send to %s failed, connection is closing", conn_id)
            return False

    async def send_many(self, conn_ids: list[str], message: dict) -> int:
        delivered = 0
        for conn_id in conn_ids:
            if await self.send(conn_id, message):
                delivered += 1
        return delivered

    async def broadcast(self, group: str, message: dict) -> int:
        """Send JSON to everyone in *group* right now. Returns the delivery count."""
        return await self.send_many(self.members(group), message)
