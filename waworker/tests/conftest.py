from __future__ import annotations

import sys
from pathlib import Path

import httpx
import pytest

TESTS_DIR = Path(__file__).resolve().parent
ROOT_DIR = TESTS_DIR.parents[1]
for _path in (ROOT_DIR, TESTS_DIR):
    if str(_path) not in sys.path:  # pragma: no cover - path setup
        sys.path.insert(0, str(_path))

from config import WorkerConfig
from fakes import FakeFactory, WebhookSink, eventually, make_config
from waworker.live import LiveHub
from waworker.manager import WhatsAppSessionManager
from waworker.store import MemoryStore
from waworker.webhooks import WebhookDispatcher


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def sink() -> WebhookSink:
    return WebhookSink()


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def worker_cfg(tmp_path: Path) -> WorkerConfig:
    return make_config(tmp_path)


@pytest.fixture
async def manager(worker_cfg, store, sink, factory):
    http = httpx.AsyncClient(transport=httpx.MockTransport(sink.handler))
    dispatcher = WebhookDispatcher(store, http=http)
    await dispatcher.configure("acme", "http://hooks.test/wa")
    instance = WhatsAppSessionManager(
        worker_cfg,
        store,
        connection_factory=factory,
        dispatcher=dispatcher,
        live=LiveHub(),
    )
    try:
        yield instance
    finally:
        await instance.shutdown()
        await http.aclose()


@pytest.fixture
def wait_until():
    return eventually
