from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import WebSocket


LOGGER = logging.getLogger("waworker.live")


class LiveHub:
    """Pushes per-tenant session events to subscribed WebSocket clients."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, set[WebSocket]] = {}

    def subscribe(self, client_id: str, websocket: WebSocket) -> None:
        self._subscribers.setdefault(client_id, set()).add(websocket)

    def unsubscribe(self, websocket: WebSocket, client_id: str | None = None) -> None:
        targets = [client_id] if client_id is not None else list(self._subscribers)
        for identity in targets:
            sockets = self._subscribers.get(identity)
            if not sockets:
                continue
            sockets.discard(websocket)
            if not sockets:
                self._subscribers.pop(identity, None)

    def subscriber_count(self, client_id: str | None = None) -> int:
        if client_id is not None:
            return len(self._subscribers.get(client_id, ()))
        return sum(len(sockets) for sockets in self._subscribers.values())

    @staticmethod
    async def send(websocket: WebSocket, event: str, data: Dict[str, Any]) -> None:
        await websocket.send_json({"event": event, "data": data})

    async def publish(self, client_id: str, event: str, data: Dict[str, Any]) -> int:
        sockets = self._subscribers.get(client_id)
        if not sockets:
            return 0
        frame = {"event": event, "data": {"clientId": client_id, **data}}
        dead = set()
        delivered = 0
        for websocket in list(sockets):
            try:
                await websocket.send_json(frame)
                delivered += 1
            except Exception as exc:
                LOGGER.info(
                    "stage=live_drop client_id=%s event=%s error=%s", client_id, event, exc
                )
                dead.add(websocket)
        for websocket in dead:
            self.unsubscribe(websocket, client_id)
        return delivered


__all__ = ["LiveHub"]
