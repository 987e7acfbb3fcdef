from typing import Dict, Set

from fastapi import WebSocket


class ConnectionManager:
    """Live sockets per external id; online status follows the first and last socket."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, Set[WebSocket]] = {}

    async def connect(self, external_id: str, websocket: WebSocket) -> bool:
        """Accept the socket; returns True when it is the user's first live connection."""
        await websocket.accept()
        sockets = self.active_connections.setdefault(external_id, set())
        sockets.add(websocket)
        return len(sockets) == 1

    def disconnect(self, external_id: str, websocket: WebSocket) -> bool:
        """Forget the socket; returns True when the user has no live connection left."""
        sockets = self.active_connections.get(external_id)
        if sockets is None:
            return False
        sockets.discard(websocket)
        if sockets:
            return False
        del self.active_connections[external_id]
        return True
