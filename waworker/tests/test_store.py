from __future__ import annotations

from datetime import timedelta

import pytest

from waworker.models import Message, WebhookSubscription, utcnow
from waworker.store import MemoryStore, PostgresStore, build_store


def _message(message_id: str, offset: int = 0) -> Message:
    return Message(
        client_id="acme",
        message_id=message_id,
        from_="15550001@c.us",
        to="15550002@c.us",
        body=message_id,
        created_at=utcnow() + timedelta(seconds=offset),
    )


@pytest.mark.anyio
async def test_upsert_session_merges_fields(store: MemoryStore):
    await store.upsert_session("acme", status="connecting")
    await store.upsert_session("acme", status="connected", phone_number="15550001")

    session = await store.get_session("acme")
    assert session.status == "connected"
    assert session.phone_number == "15550001"
    assert session.message_count == 0


@pytest.mark.anyio
async def test_upsert_session_rejects_unknown_fields(store: MemoryStore):
    with pytest.raises(ValueError):
        await store.upsert_session("acme", webhook_url="http://x")


@pytest.mark.anyio
async def test_sessions_are_listed_by_activity(store: MemoryStore):
    now = utcnow()
    await store.upsert_session("old", status="connected", last_activity=now - timedelta(hours=1))
    await store.upsert_session("new", status="disconnected", last_activity=now)
    await store.upsert_session("never", status="connected")

    assert [item.client_id for item in await store.list_sessions()] == ["new", "old", "never"]
    assert [item.client_id for item in await store.find_sessions("connected")] == ["old", "never"]


@pytest.mark.anyio
async def test_messages_are_idempotent_and_paged_newest_first(store: MemoryStore):
    assert await store.insert_message(_message("a", 0)) is True
    assert await store.insert_message(_message("b", 1)) is True
    assert await store.insert_message(_message("c", 2)) is True
    assert await store.insert_message(_message("b", 5)) is False

    assert await store.count_messages("acme") == 3
    page = await store.list_messages("acme", 2, 0)
    assert [item.message_id for item in page] == ["c", "b"]
    rest = await store.list_messages("acme", 2, 2)
    assert [item.message_id for item in rest] == ["a"]

    assert await store.delete_messages("acme") == 3
    assert await store.count_messages("acme") == 0


@pytest.mark.anyio
async def test_returned_records_are_copies(store: MemoryStore):
    await store.upsert_session("acme", status="connecting")
    session = await store.get_session("acme")
    session.status = "connected"

    assert (await store.get_session("acme")).status == "connecting"


@pytest.mark.anyio
async def test_webhook_roundtrip(store: MemoryStore):
    await store.upsert_webhook(WebhookSubscription(client_id="acme", url="http://a"))
    await store.upsert_webhook(
        WebhookSubscription(client_id="acme", url="http://b", events=("ready",))
    )

    stored = await store.get_webhook("acme")
    assert stored.url == "http://b"
    assert stored.accepts("ready") is True
    assert stored.accepts("message") is False
    assert await store.delete_webhook("acme") is True
    assert await store.get_webhook("acme") is None


def test_build_store_selects_backend():
    assert isinstance(build_store(""), MemoryStore)
    assert isinstance(build_store("postgresql://u:p@db/wa"), PostgresStore)
