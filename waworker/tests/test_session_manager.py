from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from waworker.bridge import BridgeConnection
from waworker.capability import Presence
from waworker.manager import SessionState
from waworker.session_manager import InvalidClientIdError, SessionManager, SessionSnapshot


@pytest.fixture
async def facade(worker_cfg, store, factory):
    instance = SessionManager(worker_cfg, store=store, connection_factory=factory)
    try:
        yield instance
    finally:
        await instance.shutdown()


@pytest.mark.anyio
async def test_start_session_with_webhook_url_stores_subscription(facade, store):
    result = await facade.start_session("acme", webhook_url="http://hooks.test/wa")

    assert result.success is True
    subscription = await store.get_webhook("acme")
    assert subscription is not None
    assert subscription.url == "http://hooks.test/wa"
    assert subscription.enabled is True
    assert tuple(subscription.events) == ()
    assert subscription.secret is None


@pytest.mark.anyio
async def test_start_session_rejects_bad_id_before_storing_webhook(facade, store):
    with pytest.raises(InvalidClientIdError):
        await facade.start_session("../etc", webhook_url="http://hooks.test/wa")

    assert await store.get_webhook("../etc") is None
    assert await facade.list_sessions() == []


@pytest.mark.anyio
async def test_snapshot_follows_qr_then_ready(facade, factory):
    await facade.start_session("acme")
    connection = factory.last

    await connection.fire("qr", "2@abc")
    waiting = (await facade.get_status("acme")).to_payload()

    assert waiting["status"] == "qr_required"
    assert waiting["qrCode"].startswith("data:image/png;base64,")
    assert waiting["phoneNumber"] is None
    assert waiting["connected"] is False

    connection.info = Presence.from_user("15550001")
    await connection.fire("ready")
    ready = (await facade.get_status("acme")).to_payload()

    assert ready["status"] == "connected"
    assert ready["connected"] is True
    assert ready["phoneNumber"] == "15550001"
    assert ready["qrCode"] is None
    assert ready["hasClientInfo"] is True
    assert ready["clientState"] == "CONNECTED"
    assert [item.client_id for item in await facade.list_sessions()] == ["acme"]


def test_snapshot_masks_fields_outside_their_status():
    state = SessionState(
        client_id="acme",
        status="disconnected",
        phone_number="15550001",
        connected=True,
        last_activity=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        message_count=None,
        qr_code="data:stale",
        client_state="",
    )

    payload = SessionSnapshot.from_state(state).to_payload()

    assert payload["phoneNumber"] is None
    assert payload["qrCode"] is None
    assert payload["connected"] is True
    assert payload["messageCount"] == 0
    assert payload["clientState"] == "unknown"
    assert payload["lastActivity"].startswith("2024-01-02T03:04:05")


@pytest.mark.anyio
async def test_bridge_event_ignores_unknown_and_foreign_connections(facade):
    assert facade.bridge_event("acme", "qr", {"qr": "2@abc"}) is False

    await facade.start_session("acme")

    assert facade.bridge_event("acme", "qr", {"qr": "2@abc"}) is False


@pytest.mark.anyio
async def test_bridge_event_drives_session_lifecycle(worker_cfg, store):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))

    def bridge_factory(client_id, session_dir):
        return BridgeConnection(client_id, session_dir, base_url="http://bridge.test", http=http)

    facade = SessionManager(worker_cfg, store=store, connection_factory=bridge_factory)
    statuses: dict[str, str] = {}

    async def refresh():
        statuses["acme"] = (await facade.get_status("acme")).status

    try:
        await facade.start_session("acme")

        assert facade.bridge_event("acme", "qr", {"qr": "2@abc"}) is True
        for _ in range(100):
            await refresh()
            if statuses["acme"] == "qr_required":
                break
            await asyncio.sleep(0.01)
        assert statuses["acme"] == "qr_required"

        assert facade.bridge_event("acme", "ready", {"info": {"wid": {"user": "15550001"}}}) is True
        for _ in range(100):
            await refresh()
            if statuses["acme"] == "connected":
                break
            await asyncio.sleep(0.01)
        assert statuses["acme"] == "connected"

        snapshot = await facade.get_status("acme")
        assert snapshot.phone_number == "15550001"
        assert snapshot.connected is True
    finally:
        await facade.shutdown()
        await http.aclose()
