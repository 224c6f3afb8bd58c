from __future__ import annotations

import pytest

from waworker.capability import Presence
from waworker.registry import (
    BEGIN_CONNECTED,
    BEGIN_INITIALIZING,
    BEGIN_STARTED,
    RuntimeHandle,
    SessionRegistry,
)

from fakes import FakeConnection


@pytest.mark.anyio
async def test_begin_attempt_is_check_and_set(tmp_path):
    registry = SessionRegistry()

    first = registry.begin_attempt("acme")
    assert first.started is True
    assert first.stale is None
    assert registry.is_initializing("acme") is True

    second = registry.begin_attempt("acme")
    assert second.outcome == BEGIN_INITIALIZING
    assert second.handle is first.handle
    assert len(registry) == 1


@pytest.mark.anyio
async def test_begin_attempt_short_circuits_on_presence(tmp_path):
    registry = SessionRegistry()
    handle = registry.begin_attempt("acme").handle
    handle.connection = FakeConnection("acme", tmp_path)
    handle.connection.info = Presence.from_user("15550001")
    registry.clear_initializing("acme")

    result = registry.begin_attempt("acme")

    assert result.outcome == BEGIN_CONNECTED
    assert registry.acquire("acme") is handle


@pytest.mark.anyio
async def test_begin_attempt_replaces_handle_without_presence(tmp_path):
    registry = SessionRegistry()
    stale = registry.begin_attempt("acme").handle
    registry.clear_initializing("acme", stale)

    result = registry.begin_attempt("acme")

    assert result.outcome == BEGIN_STARTED
    assert result.stale is stale
    assert registry.is_current("acme", result.handle)
    assert not registry.is_current("acme", stale)


@pytest.mark.anyio
async def test_remove_only_drops_matching_handle():
    registry = SessionRegistry()
    current = registry.begin_attempt("acme").handle
    other = RuntimeHandle(client_id="acme")

    assert registry.remove("acme", other) is None
    assert registry.acquire("acme") is current
    assert registry.remove("acme", current) is current
    assert registry.acquire("acme") is None
    assert registry.remove("acme") is None


@pytest.mark.anyio
async def test_initializing_flags_and_stats(tmp_path):
    registry = SessionRegistry()
    assert registry.mark_initializing("acme") is False

    handle = registry.begin_attempt("acme").handle
    assert registry.mark_initializing("acme") is False
    registry.clear_initializing("acme", RuntimeHandle(client_id="acme"))
    assert handle.initializing is True
    registry.clear_initializing("acme", handle)
    assert registry.mark_initializing("acme") is True

    registry.put("beta", RuntimeHandle(client_id="beta", connection=FakeConnection("beta", tmp_path)))
    registry.acquire("beta").connection.info = Presence.from_user("1")

    assert registry.stats() == {"live": 2, "initializing": 1, "with_presence": 1}
    assert sorted(registry.identities()) == ["acme", "beta"]
