from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, List, Optional

import httpx

from config import WorkerConfig
from waworker.capability import EventEmitter, SentMessage


class FakeConnection(EventEmitter):
    """In-process stand-in for the protocol client."""

    def __init__(self, client_id: str, session_dir: Path) -> None:
        super().__init__()
        self.client_id = client_id
        self.session_dir = session_dir
        self.info = None
        self.state: Any = "CONNECTED"
        self.init_gate: Optional[asyncio.Event] = None
        self.destroy_gate: Optional[asyncio.Event] = None
        self.init_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.initialized = False
        self.destroyed = 0
        self.sent: list[tuple[str, str]] = []

    async def initialize(self) -> None:
        self.initialized = True
        if self.init_gate is not None:
            await self.init_gate.wait()
        if self.init_error is not None:
            raise self.init_error

    async def send_message(self, chat_id: str, body: str) -> SentMessage:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((chat_id, body))
        return SentMessage(message_id=f"true_{chat_id}_{len(self.sent)}", timestamp=1700000000)

    async def get_state(self) -> Optional[str]:
        if isinstance(self.state, Exception):
            raise self.state
        return self.state

    async def destroy(self) -> None:
        self.destroyed += 1
        if self.destroy_gate is not None:
            await self.destroy_gate.wait()

    async def fire(self, event: str, *args: Any) -> None:
        await self.emit_and_wait(event, *args)


class FakeFactory:
    def __init__(self) -> None:
        self.connections: List[FakeConnection] = []
        self.prepare: Optional[Callable[[FakeConnection], None]] = None

    def __call__(self, client_id: str, session_dir: Path) -> FakeConnection:
        connection = FakeConnection(client_id, session_dir)
        if self.prepare is not None:
            self.prepare(connection)
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class WebhookSink:
    """Records every webhook POST delivered through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": True})

    @property
    def events(self) -> list[str]:
        return [json.loads(request.content)["event"] for request in self.requests]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        bodies = [json.loads(request.content) for request in self.requests]
        return [body for body in bodies if body["event"] == event]


def make_config(tmp_path: Path, **overrides: Any) -> WorkerConfig:
    values: dict[str, Any] = dict(
        sessions_dir=tmp_path / "wa-sessions",
        database_url="",
        bridge_url="http://bridge.test",
        bridge_token=None,
        admin_token=None,
        port=0,
        max_qr_attempts=5,
        init_timeout=5.0,
        ready_timeout=0.05,
        followup_delay=0.05,
        settle_delay=0.0,
        state_check_delay=0.01,
        send_grace=0.0,
        restart_backoff=0.01,
        restore_interval=0.0,
        webhook_timeout=1.0,
        restart_on_stale_connection=True,
    )
    values.update(overrides)
    values["sessions_dir"].mkdir(parents=True, exist_ok=True)
    return WorkerConfig(**values)


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
