"""Connection capability used by the session manager.

A connection is an opaque, event-driven protocol client. The worker only
relies on ``initialize``, ``send_message``, ``get_state``, ``destroy``, the
``info`` presence attribute and the fixed event vocabulary below.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol


EVENT_QR = "qr"
EVENT_AUTHENTICATED = "authenticated"
EVENT_READY = "ready"
EVENT_CHANGE_STATE = "change_state"
EVENT_MESSAGE = "message"
EVENT_DISCONNECTED = "disconnected"
EVENT_AUTH_FAILURE = "auth_failure"
EVENT_LOADING_SCREEN = "loading_screen"

CONNECTION_EVENTS = frozenset(
    {
        EVENT_QR,
        EVENT_AUTHENTICATED,
        EVENT_READY,
        EVENT_CHANGE_STATE,
        EVENT_MESSAGE,
        EVENT_DISCONNECTED,
        EVENT_AUTH_FAILURE,
        EVENT_LOADING_SCREEN,
    }
)

STATE_CONNECTED = "CONNECTED"
STATE_OPENING = "OPENING"
CONNECTED_LIKE_STATES = frozenset({STATE_CONNECTED, STATE_OPENING})


@dataclass(frozen=True, slots=True)
class Presence:
    """Who-am-I information reported once the remote session is addressable."""

    user: str
    serialized: str

    @classmethod
    def from_user(cls, user: str) -> "Presence":
        return cls(user=user, serialized=f"{user}@c.us")


@dataclass(frozen=True, slots=True)
class SentMessage:
    message_id: str
    timestamp: Optional[int] = None


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    message_id: str
    from_: str
    to: Optional[str]
    body: str
    type: str = "chat"
    timestamp: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "IncomingMessage":
        raw_id = payload.get("id")
        if isinstance(raw_id, dict):
            raw_id = raw_id.get("_serialized") or raw_id.get("id")
        timestamp = payload.get("timestamp")
        try:
            timestamp = int(timestamp) if timestamp is not None else None
        except (TypeError, ValueError):
            timestamp = None
        return cls(
            message_id=str(raw_id or ""),
            from_=str(payload.get("from") or ""),
            to=payload.get("to") or None,
            body=str(payload.get("body") or ""),
            type=str(payload.get("type") or "chat"),
            timestamp=timestamp,
        )


Listener = Callable[..., Any]


class Connection(Protocol):
    info: Optional[Presence]

    def on(self, event: str, listener: Listener) -> None: ...

    async def initialize(self) -> None: ...

    async def send_message(self, chat_id: str, body: str) -> SentMessage: ...

    async def get_state(self) -> Optional[str]: ...

    async def destroy(self) -> None: ...


ConnectionFactory = Callable[[str, Path], Connection]


class EventEmitter:
    """Minimal listener registry shared by connection implementations.

    Coroutine listeners are scheduled as tasks so ``emit`` never blocks the
    caller on a slow handler; the tasks are returned for callers that need
    to wait for them.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def emit(self, event: str, *args: Any) -> List[asyncio.Task[Any]]:
        tasks: List[asyncio.Task[Any]] = []
        for listener in list(self._listeners.get(event, ())):
            result = listener(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
                tasks.append(task)
        return tasks

    async def emit_and_wait(self, event: str, *args: Any) -> None:
        tasks = self.emit(event, *args)
        if tasks:
            await asyncio.gather(*tasks)


__all__ = [
    "Connection",
    "ConnectionFactory",
    "EventEmitter",
    "IncomingMessage",
    "Presence",
    "SentMessage",
    "CONNECTION_EVENTS",
    "CONNECTED_LIKE_STATES",
    "STATE_CONNECTED",
    "STATE_OPENING",
    "EVENT_QR",
    "EVENT_AUTHENTICATED",
    "EVENT_READY",
    "EVENT_CHANGE_STATE",
    "EVENT_MESSAGE",
    "EVENT_DISCONNECTED",
    "EVENT_AUTH_FAILURE",
    "EVENT_LOADING_SCREEN",
]
