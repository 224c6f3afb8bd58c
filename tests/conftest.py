from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import prometheus_client
from prometheus_client import CollectorRegistry

prometheus_client.REGISTRY = CollectorRegistry()
prometheus_client.registry.REGISTRY = prometheus_client.REGISTRY
try:
    prometheus_client.metrics.REGISTRY = prometheus_client.REGISTRY
except AttributeError:  # pragma: no cover - metrics module may not be loaded yet
    pass

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

import waworker.api as wa_api
from waworker.live import LiveHub
from waworker.models import WebhookSubscription
from waworker.session_manager import (
    ClientNotFoundError,
    SessionSnapshot,
    StartResult,
)


def _snapshot(client_id: str, status: str = "disconnected", **extra: Any) -> SessionSnapshot:
    values: Dict[str, Any] = dict(
        client_id=client_id,
        status=status,
        phone_number=None,
        connected=status == "connected",
        last_activity=None,
        message_count=0,
        qr_code=None,
        is_initializing=False,
        client_state="unknown",
        has_client_info=False,
    )
    values.update(extra)
    return SessionSnapshot(**values)


class StubSessionManager:
    def __init__(self) -> None:
        self.live = LiveHub()
        self.stats: Dict[str, int] = {"live": 1, "initializing": 0, "with_presence": 1}
        self.raise_stats = False
        self.snapshots: Dict[str, SessionSnapshot] = {}
        self.start_result = StartResult(True, "connecting", "Session initialization started")
        self.start_calls: list[tuple[str, Optional[str]]] = []
        self.restart_calls: list[str] = []
        self.sent: list[tuple[str, str, str, str]] = []
        self.send_error: Optional[Exception] = None
        self.messages: Dict[str, List[dict[str, Any]]] = {}
        self.webhooks: Dict[str, WebhookSubscription] = {}
        self.bridge_events: list[tuple[str, str, dict[str, Any]]] = []
        self.ready = {"success": True, "message": "Client is ready"}

    async def start(self) -> None:  # pragma: no cover - lifecycle
        return None

    async def shutdown(self) -> None:  # pragma: no cover - lifecycle
        return None

    def stats_snapshot(self) -> Dict[str, int]:
        if self.raise_stats:
            raise RuntimeError("stats error")
        return dict(self.stats)

    async def start_session(self, client_id: str, *, webhook_url: Optional[str] = None):
        self.start_calls.append((client_id, webhook_url))
        return self.start_result

    async def restart_session(self, client_id: str):
        self.restart_calls.append(client_id)
        return {"success": True, "message": "Session restart initiated"}

    async def check_ready(self, client_id: str):
        return dict(self.ready)

    async def delete_session(self, client_id: str):
        self.snapshots.pop(client_id, None)
        return {"success": True, "message": "Session deleted successfully"}

    async def get_status(self, client_id: str) -> SessionSnapshot:
        return self.snapshots.get(client_id) or _snapshot(client_id)

    async def list_sessions(self) -> List[SessionSnapshot]:
        return list(self.snapshots.values())

    async def send_message(self, client_id: str, to: str, body: str, type: str = "text"):
        if self.send_error is not None:
            raise self.send_error
        if client_id not in self.snapshots:
            raise ClientNotFoundError()
        self.sent.append((client_id, to, body, type))
        return {
            "clientId": client_id,
            "messageId": f"true_{to}_{len(self.sent)}",
            "to": to,
            "body": body,
            "type": type,
        }

    async def list_messages(self, client_id: str, *, limit: int = 50, offset: int = 0):
        return self.messages.get(client_id, [])[offset : offset + limit]

    async def configure_webhook(self, client_id: str, url: str, *, events=(), secret=None, enabled=True):
        subscription = WebhookSubscription(
            client_id=client_id,
            url=url.strip(),
            enabled=enabled,
            events=tuple(events),
            secret=secret or None,
        )
        self.webhooks[client_id] = subscription
        return subscription

    async def get_webhook(self, client_id: str):
        return self.webhooks.get(client_id)

    async def delete_webhook(self, client_id: str) -> bool:
        return self.webhooks.pop(client_id, None) is not None

    def bridge_event(self, client_id: str, event: str, payload) -> bool:
        if client_id not in self.snapshots:
            return False
        self.bridge_events.append((client_id, event, dict(payload)))
        return True


@pytest.fixture
def make_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    clients: list[TestClient] = []

    def _build(**env: str):
        monkeypatch.setenv("WA_SESSIONS_DIR", str(tmp_path / "wa-sessions"))
        for name in ("ADMIN_TOKEN", "BRIDGE_TOKEN", "DATABASE_URL"):
            monkeypatch.delenv(name, raising=False)
        for name, value in env.items():
            monkeypatch.setenv(name, value)
        stub = StubSessionManager()
        monkeypatch.setattr(wa_api, "SessionManager", lambda *args, **kwargs: stub)
        client = TestClient(wa_api.create_app())
        client.__enter__()
        clients.append(client)
        return client, stub

    yield _build
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def waworker_client(make_client):
    return make_client()


@pytest.fixture
def snapshot_factory():
    return _snapshot
