"""Inbound and outbound message handling for live sessions."""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from .capability import IncomingMessage
from .metrics import WA_MESSAGES_TOTAL, WA_SEND_FAIL_TOTAL, WA_STORE_ERRORS_TOTAL
from .models import DIRECTION_INCOMING, DIRECTION_OUTGOING, Message, utcnow
from .registry import RuntimeHandle, SessionRegistry
from .store import SessionStore
from .webhooks import WebhookDispatcher


LOGGER = logging.getLogger("waworker.messages")

CHAT_SUFFIX = "@c.us"


class SendError(Exception):
    """Base class for outbound message failures."""

    reason = "send_failed"


class ClientNotFoundError(SendError):
    reason = "not_found"

    def __init__(self, message: str = "Client not found") -> None:
        super().__init__(message)


class ClientNotReadyError(SendError):
    reason = "not_ready"

    def __init__(self, message: str = "Client not ready") -> None:
        super().__init__(message)


class SendFailedError(SendError):
    reason = "send_failed"


def normalize_chat_id(to: str) -> str:
    to = to.strip()
    if "@" in to:
        return to
    return f"{to}{CHAT_SUFFIX}"


class MessageIntake:
    def __init__(
        self,
        store: SessionStore,
        dispatcher: WebhookDispatcher,
        registry: SessionRegistry,
        *,
        send_grace: float = 2.0,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._registry = registry
        self._send_grace = send_grace

    async def _record(self, message: Message) -> bool:
        """Persist ``message`` and refresh the session counters.

        Returns ``False`` only when the message was already stored.
        """
        inserted = await self._store.insert_message(message)
        count = await self._store.count_messages(message.client_id)
        await self._store.upsert_session(
            message.client_id, message_count=count, last_activity=utcnow()
        )
        return inserted

    async def record_incoming(self, client_id: str, incoming: IncomingMessage) -> Optional[Message]:
        message = Message(
            client_id=client_id,
            message_id=incoming.message_id or uuid.uuid4().hex,
            from_=incoming.from_,
            to=incoming.to or "",
            body=incoming.body,
            type=incoming.type,
            direction=DIRECTION_INCOMING,
            status="delivered",
        )
        try:
            inserted = await self._record(message)
        except Exception:
            WA_STORE_ERRORS_TOTAL.labels("record_incoming").inc()
            LOGGER.exception(
                "stage=message_store_fail client_id=%s message_id=%s", client_id, message.message_id
            )
            inserted = True
        if not inserted:
            LOGGER.info(
                "stage=message_duplicate client_id=%s message_id=%s", client_id, message.message_id
            )
            return None

        WA_MESSAGES_TOTAL.labels(DIRECTION_INCOMING).inc()
        LOGGER.info("stage=incoming client_id=%s from=%s", client_id, message.from_)
        payload: Dict[str, Any] = {
            "id": message.message_id,
            "from": incoming.from_,
            "to": incoming.to,
            "body": incoming.body,
            "type": incoming.type,
            "timestamp": incoming.timestamp,
        }
        await self._dispatcher.send(client_id, "message", payload)
        return message

    async def _ready_handle(self, client_id: str) -> RuntimeHandle:
        handle = self._registry.acquire(client_id)
        if handle is None or handle.connection is None:
            raise ClientNotFoundError()
        if handle.has_presence:
            return handle
        LOGGER.info("stage=send_wait client_id=%s grace=%s", client_id, self._send_grace)
        await asyncio.sleep(self._send_grace)
        handle = self._registry.acquire(client_id)
        if handle is None or handle.connection is None:
            raise ClientNotFoundError()
        if not handle.has_presence:
            raise ClientNotReadyError()
        return handle

    async def send(self, client_id: str, to: str, body: str, type: str = "text") -> Message:
        try:
            handle = await self._ready_handle(client_id)
        except SendError as exc:
            WA_SEND_FAIL_TOTAL.labels(exc.reason).inc()
            LOGGER.warning("stage=send_fail client_id=%s error=%s", client_id, exc)
            raise

        chat_id = normalize_chat_id(to)
        presence = handle.presence
        try:
            sent = await handle.connection.send_message(chat_id, body)
        except Exception as exc:
            WA_SEND_FAIL_TOTAL.labels(SendFailedError.reason).inc()
            LOGGER.error("stage=send_fail client_id=%s to=%s error=%s", client_id, chat_id, exc)
            raise SendFailedError(str(exc) or exc.__class__.__name__) from exc

        message = Message(
            client_id=client_id,
            message_id=sent.message_id,
            from_=presence.serialized if presence is not None else "",
            to=chat_id,
            body=body,
            type=type,
            direction=DIRECTION_OUTGOING,
            status="sent",
        )
        WA_MESSAGES_TOTAL.labels(DIRECTION_OUTGOING).inc()
        LOGGER.info("stage=send_ok client_id=%s to=%s message_id=%s", client_id, chat_id, sent.message_id)
        try:
            await self._record(message)
        except Exception:
            WA_STORE_ERRORS_TOTAL.labels("record_outgoing").inc()
            LOGGER.exception(
                "stage=message_persist_gap client_id=%s message_id=%s", client_id, sent.message_id
            )
        return message


__all__ = [
    "MessageIntake",
    "SendError",
    "ClientNotFoundError",
    "ClientNotReadyError",
    "SendFailedError",
    "normalize_chat_id",
]
