"""In-memory registry of live connections, one aggregate per identity."""
from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from .capability import Connection
from .models import STATUS_CONNECTING


_generation = itertools.count(1)


@dataclass(slots=True, eq=False)
class RuntimeHandle:
    """Everything the worker knows about one live connection attempt."""

    client_id: str
    connection: Optional[Connection] = None
    initializing: bool = False
    deleted: bool = False
    status: str = STATUS_CONNECTING
    qr_code: Optional[str] = None
    qr_count: int = 0
    ready_timer: Optional[asyncio.Task[Any]] = None
    followup_timer: Optional[asyncio.Task[Any]] = None
    state_checks: set[asyncio.Task[Any]] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    generation: int = field(default_factory=lambda: next(_generation))
    created_at: float = field(default_factory=time.time)

    @property
    def presence(self):
        connection = self.connection
        if connection is None:
            return None
        return getattr(connection, "info", None)

    @property
    def has_presence(self) -> bool:
        return self.presence is not None

    @property
    def ready_timeout_pending(self) -> bool:
        timer = self.ready_timer
        return timer is not None and not timer.done()

    def timers(self) -> list[asyncio.Task[Any]]:
        tasks = [task for task in (self.ready_timer, self.followup_timer) if task is not None]
        tasks.extend(self.state_checks)
        return tasks


@dataclass(frozen=True, slots=True)
class BeginResult:
    outcome: str
    handle: Optional[RuntimeHandle] = None
    stale: Optional[RuntimeHandle] = None

    @property
    def started(self) -> bool:
        return self.outcome == BEGIN_STARTED


BEGIN_STARTED = "started"
BEGIN_INITIALIZING = "initializing"
BEGIN_CONNECTED = "connected"


class SessionRegistry:
    """Identity -> :class:`RuntimeHandle` map.

    Every method is synchronous: callers on the event loop get check-and-set
    semantics for free because nothing here suspends. A threaded runtime
    would need a per-identity mutex around :meth:`begin_attempt`.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, RuntimeHandle] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[RuntimeHandle]:
        return iter(list(self._handles.values()))

    def identities(self) -> list[str]:
        return list(self._handles)

    def acquire(self, client_id: str) -> Optional[RuntimeHandle]:
        return self._handles.get(client_id)

    def put(self, client_id: str, handle: RuntimeHandle) -> Optional[RuntimeHandle]:
        previous = self._handles.get(client_id)
        self._handles[client_id] = handle
        return previous if previous is not handle else None

    def remove(
        self, client_id: str, handle: Optional[RuntimeHandle] = None
    ) -> Optional[RuntimeHandle]:
        current = self._handles.get(client_id)
        if current is None:
            return None
        if handle is not None and current is not handle:
            return None
        return self._handles.pop(client_id)

    def is_current(self, client_id: str, handle: RuntimeHandle) -> bool:
        return self._handles.get(client_id) is handle

    def is_initializing(self, client_id: str) -> bool:
        handle = self._handles.get(client_id)
        return bool(handle and handle.initializing)

    def mark_initializing(self, client_id: str) -> bool:
        handle = self._handles.get(client_id)
        if handle is None or handle.initializing:
            return False
        handle.initializing = True
        return True

    def clear_initializing(self, client_id: str, handle: Optional[RuntimeHandle] = None) -> None:
        current = self._handles.get(client_id)
        if current is None:
            return
        if handle is not None and current is not handle:
            return
        current.initializing = False

    def begin_attempt(self, client_id: str) -> BeginResult:
        existing = self._handles.get(client_id)
        if existing is not None:
            if existing.initializing:
                return BeginResult(BEGIN_INITIALIZING, handle=existing)
            if existing.has_presence:
                return BeginResult(BEGIN_CONNECTED, handle=existing)
        handle = RuntimeHandle(client_id=client_id, initializing=True)
        self._handles[client_id] = handle
        return BeginResult(BEGIN_STARTED, handle=handle, stale=existing)

    def stats(self) -> dict[str, int]:
        snapshot = {"live": 0, "initializing": 0, "with_presence": 0}
        for handle in self._handles.values():
            snapshot["live"] += 1
            if handle.initializing:
                snapshot["initializing"] += 1
            if handle.has_presence:
                snapshot["with_presence"] += 1
        return snapshot


__all__ = [
    "RuntimeHandle",
    "SessionRegistry",
    "BeginResult",
    "BEGIN_STARTED",
    "BEGIN_INITIALIZING",
    "BEGIN_CONNECTED",
]
