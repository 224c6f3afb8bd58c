from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from config import WorkerConfig

from .bridge import BridgeConnection, bridge_connection_factory
from .capability import ConnectionFactory
from .live import LiveHub
from .manager import (
    ClientNotFoundError,
    ClientNotReadyError,
    InvalidClientIdError,
    SendError,
    SendFailedError,
    SessionState,
    StartResult,
    WhatsAppSessionManager,
)
from .models import WebhookSubscription, _iso
from .store import SessionStore, build_store


@dataclass(slots=True)
class SessionSnapshot:
    """Public view of one tenant session."""

    client_id: str
    status: str
    phone_number: Optional[str]
    connected: bool
    last_activity: Optional[str]
    message_count: int
    qr_code: Optional[str]
    is_initializing: bool
    client_state: str
    has_client_info: bool

    @classmethod
    def from_state(cls, state: SessionState) -> "SessionSnapshot":
        return cls(
            client_id=state.client_id,
            status=state.status,
            phone_number=state.phone_number if state.status == "connected" else None,
            connected=bool(state.connected),
            last_activity=_iso(state.last_activity),
            message_count=int(state.message_count or 0),
            qr_code=state.qr_code if state.status == "qr_required" else None,
            is_initializing=bool(state.is_initializing),
            client_state=state.client_state or "unknown",
            has_client_info=bool(state.has_client_info),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "status": self.status,
            "phoneNumber": self.phone_number,
            "connected": self.connected,
            "lastActivity": self.last_activity,
            "messageCount": self.message_count,
            "qrCode": self.qr_code,
            "isInitializing": self.is_initializing,
            "clientState": self.client_state,
            "hasClientInfo": self.has_client_info,
        }


class SessionManager:
    """Thin wrapper above ``WhatsAppSessionManager`` that exposes snapshots."""

    def __init__(
        self,
        config: WorkerConfig,
        *,
        store: Optional[SessionStore] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        live: Optional[LiveHub] = None,
    ) -> None:
        self._config = config
        self._store = store or build_store(config.database_url)
        self._manager = WhatsAppSessionManager(
            config,
            self._store,
            connection_factory=connection_factory or bridge_connection_factory(config),
            live=live,
        )

    @property
    def live(self) -> LiveHub:
        return self._manager.live

    async def start(self) -> None:
        await self._store.connect()
        await self._manager.start()

    async def shutdown(self) -> None:
        try:
            await self._manager.shutdown()
        finally:
            await self._store.close()

    def stats_snapshot(self) -> dict[str, Any]:
        return self._manager.stats_snapshot()

    async def start_session(
        self, client_id: str, *, webhook_url: Optional[str] = None
    ) -> StartResult:
        if webhook_url:
            self._manager.session_path(client_id)
            await self._manager.dispatcher.configure(client_id, webhook_url)
        return await self._manager.start_session(client_id)

    async def restart_session(self, client_id: str) -> Dict[str, Any]:
        return await self._manager.restart_session(client_id)

    async def check_ready(self, client_id: str) -> Dict[str, Any]:
        return await self._manager.check_ready(client_id)

    async def delete_session(self, client_id: str) -> Dict[str, Any]:
        return await self._manager.delete_session(client_id)

    async def get_status(self, client_id: str) -> SessionSnapshot:
        state = await self._manager.get_status(client_id)
        return SessionSnapshot.from_state(state)

    async def list_sessions(self) -> List[SessionSnapshot]:
        states = await self._manager.list_sessions()
        return [SessionSnapshot.from_state(state) for state in states]

    async def send_message(
        self, client_id: str, to: str, body: str, type: str = "text"
    ) -> dict[str, Any]:
        message = await self._manager.send_message(client_id, to, body, type)
        return message.to_payload()

    async def list_messages(
        self, client_id: str, *, limit: int = 50, offset: int = 0
    ) -> list[dict[str, Any]]:
        messages = await self._manager.list_messages(client_id, limit=limit, offset=offset)
        return [message.to_payload() for message in messages]

    async def configure_webhook(
        self,
        client_id: str,
        url: str,
        *,
        events: Iterable[str] = (),
        secret: Optional[str] = None,
        enabled: bool = True,
    ) -> WebhookSubscription:
        self._manager.session_path(client_id)
        return await self._manager.dispatcher.configure(
            client_id, url, events=events, secret=secret, enabled=enabled
        )

    async def get_webhook(self, client_id: str) -> Optional[WebhookSubscription]:
        return await self._manager.dispatcher.get(client_id)

    async def delete_webhook(self, client_id: str) -> bool:
        return await self._manager.dispatcher.delete(client_id)

    def bridge_event(self, client_id: str, event: str, payload: Mapping[str, Any]) -> bool:
        """Feed a sidecar event into the live connection for ``client_id``."""
        handle = self._manager.registry.acquire(client_id)
        connection = handle.connection if handle is not None else None
        if not isinstance(connection, BridgeConnection):
            return False
        connection.receive(event, payload)
        return True


__all__ = [
    "SessionManager",
    "SessionSnapshot",
    "StartResult",
    "SendError",
    "ClientNotFoundError",
    "ClientNotReadyError",
    "SendFailedError",
    "InvalidClientIdError",
]
