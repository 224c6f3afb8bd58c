"""HTTP bridge to the headless-browser sidecar that speaks the protocol.

The sidecar owns the browser session for each tenant. Commands go out as
plain HTTP calls; events come back through ``POST /internal/bridge/events``
and are fed into :meth:`BridgeConnection.receive`.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import httpx

from config import WorkerConfig

from .capability import (
    EVENT_AUTH_FAILURE,
    EVENT_AUTHENTICATED,
    EVENT_CHANGE_STATE,
    EVENT_DISCONNECTED,
    EVENT_LOADING_SCREEN,
    EVENT_MESSAGE,
    EVENT_QR,
    EVENT_READY,
    EventEmitter,
    IncomingMessage,
    Presence,
    SentMessage,
)


LOGGER = logging.getLogger("waworker.bridge")


class BridgeError(RuntimeError):
    pass


def _presence_from(payload: Mapping[str, Any]) -> Optional[Presence]:
    info = payload.get("info")
    if isinstance(info, Mapping):
        wid = info.get("wid")
        if isinstance(wid, Mapping) and wid.get("user"):
            user = str(wid["user"])
            return Presence(user=user, serialized=str(wid.get("_serialized") or f"{user}@c.us"))
        phone = info.get("phoneNumber") or info.get("user")
        if phone:
            return Presence.from_user(str(phone))
    phone = payload.get("phoneNumber")
    if phone:
        return Presence.from_user(str(phone))
    return None


class BridgeConnection(EventEmitter):
    def __init__(
        self,
        client_id: str,
        session_dir: Path,
        *,
        base_url: str,
        token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__()
        self.client_id = client_id
        self.session_dir = session_dir
        self.info: Optional[Presence] = None
        self._base_url = base_url.rstrip("/")
        self._headers = {"X-Bridge-Token": token} if token else {}
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None
        self._closed = False

    def _url(self, suffix: str) -> str:
        return f"{self._base_url}/sessions/{self.client_id}{suffix}"

    async def _call(self, method: str, suffix: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._http.request(
                method, self._url(suffix), json=payload, headers=self._headers
            )
        except httpx.HTTPError as exc:
            raise BridgeError(f"bridge unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise BridgeError(f"bridge {method} {suffix or '/'} failed: {response.status_code}")
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def initialize(self) -> None:
        await self._call("POST", "/start", {"sessionDir": str(self.session_dir)})
        LOGGER.info("stage=bridge_start client_id=%s", self.client_id)

    async def send_message(self, chat_id: str, body: str) -> SentMessage:
        data = await self._call("POST", "/messages", {"chatId": chat_id, "body": body})
        raw_id = data.get("id") or data.get("messageId")
        if isinstance(raw_id, Mapping):
            raw_id = raw_id.get("_serialized")
        if not raw_id:
            raise BridgeError("bridge returned no message id")
        timestamp = data.get("timestamp")
        return SentMessage(message_id=str(raw_id), timestamp=int(timestamp) if timestamp else None)

    async def get_state(self) -> Optional[str]:
        data = await self._call("GET", "/state")
        state = data.get("state")
        return str(state) if state else None

    async def destroy(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.info = None
        try:
            await self._call("POST", "/stop")
        finally:
            self.remove_all_listeners()
            if self._owns_http:
                await self._http.aclose()

    def receive(self, event: str, payload: Mapping[str, Any]) -> List[Any]:
        """Translate one sidecar event into the connection event vocabulary."""
        if self._closed:
            LOGGER.info("stage=bridge_event_after_close client_id=%s event=%s", self.client_id, event)
            return []
        presence = _presence_from(payload)
        if presence is not None:
            self.info = presence

        if event == EVENT_QR:
            return self.emit(EVENT_QR, payload.get("qr"))
        if event == EVENT_AUTHENTICATED:
            return self.emit(EVENT_AUTHENTICATED)
        if event == EVENT_READY:
            return self.emit(EVENT_READY)
        if event == EVENT_CHANGE_STATE:
            return self.emit(EVENT_CHANGE_STATE, payload.get("state"))
        if event == EVENT_DISCONNECTED:
            self.info = None
            return self.emit(EVENT_DISCONNECTED, payload.get("reason"))
        if event == EVENT_AUTH_FAILURE:
            return self.emit(EVENT_AUTH_FAILURE, payload.get("message"))
        if event == EVENT_MESSAGE:
            return self.emit(EVENT_MESSAGE, IncomingMessage.from_payload(dict(payload)))
        if event == EVENT_LOADING_SCREEN:
            return self.emit(EVENT_LOADING_SCREEN, payload.get("percent"))
        LOGGER.info("stage=bridge_event_unknown client_id=%s event=%s", self.client_id, event)
        return []


def bridge_connection_factory(config: WorkerConfig):
    def _factory(client_id: str, session_dir: Path) -> BridgeConnection:
        return BridgeConnection(
            client_id,
            session_dir,
            base_url=config.bridge_url,
            token=config.bridge_token,
        )

    return _factory


__all__ = ["BridgeConnection", "BridgeError", "bridge_connection_factory"]
