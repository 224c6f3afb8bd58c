"""Session, message and webhook persistence.

Two backends share the :class:`SessionStore` protocol: :class:`PostgresStore`
talks to PostgreSQL through an asyncpg pool, :class:`MemoryStore` keeps
everything in process and backs tests and database-less deployments.
"""
from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

import asyncpg

from .models import (
    Message,
    Session,
    WebhookSubscription,
    STATUS_DISCONNECTED,
    utcnow,
)


_log = logging.getLogger("waworker.store")

_SESSION_FIELDS = ("status", "phone_number", "last_activity", "qr_code", "message_count")


class DatabaseUnavailableError(RuntimeError):
    """Raised when PostgreSQL is configured but cannot be reached."""


class SessionStore(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def upsert_session(self, client_id: str, **fields: Any) -> None: ...

    async def get_session(self, client_id: str) -> Optional[Session]: ...

    async def list_sessions(self) -> List[Session]: ...

    async def find_sessions(self, status: str) -> List[Session]: ...

    async def delete_session(self, client_id: str) -> bool: ...

    async def insert_message(self, message: Message) -> bool: ...

    async def count_messages(self, client_id: str) -> int: ...

    async def list_messages(self, client_id: str, limit: int, offset: int) -> List[Message]: ...

    async def delete_messages(self, client_id: str) -> int: ...

    async def upsert_webhook(self, subscription: WebhookSubscription) -> WebhookSubscription: ...

    async def get_webhook(self, client_id: str) -> Optional[WebhookSubscription]: ...

    async def delete_webhook(self, client_id: str) -> bool: ...


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - set(_SESSION_FIELDS)
    if unknown:
        raise ValueError(f"unknown session fields: {sorted(unknown)}")


def _activity_key(session: Session) -> float:
    if session.last_activity is None:
        return float("-inf")
    return session.last_activity.timestamp()


class MemoryStore:
    """In-process store with the same semantics as the SQL backend."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._webhooks: Dict[str, WebhookSubscription] = {}

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def upsert_session(self, client_id: str, **fields: Any) -> None:
        _check_fields(fields)
        session = self._sessions.get(client_id)
        if session is None:
            session = Session(client_id=client_id)
            self._sessions[client_id] = session
        for name, value in fields.items():
            setattr(session, name, value)

    async def get_session(self, client_id: str) -> Optional[Session]:
        session = self._sessions.get(client_id)
        return dataclasses.replace(session) if session is not None else None

    async def list_sessions(self) -> List[Session]:
        ordered = sorted(self._sessions.values(), key=_activity_key, reverse=True)
        return [dataclasses.replace(item) for item in ordered]

    async def find_sessions(self, status: str) -> List[Session]:
        return [item for item in await self.list_sessions() if item.status == status]

    async def delete_session(self, client_id: str) -> bool:
        return self._sessions.pop(client_id, None) is not None

    async def insert_message(self, message: Message) -> bool:
        bucket = self._messages.setdefault(message.client_id, [])
        if any(item.message_id == message.message_id for item in bucket):
            return False
        bucket.append(dataclasses.replace(message))
        return True

    async def count_messages(self, client_id: str) -> int:
        return len(self._messages.get(client_id, ()))

    async def list_messages(self, client_id: str, limit: int, offset: int) -> List[Message]:
        bucket = self._messages.get(client_id, [])
        # reversed() keeps insertion order stable for equal timestamps
        ordered = sorted(reversed(bucket), key=lambda item: item.created_at, reverse=True)
        return [dataclasses.replace(item) for item in ordered[offset : offset + limit]]

    async def delete_messages(self, client_id: str) -> int:
        return len(self._messages.pop(client_id, []))

    async def upsert_webhook(self, subscription: WebhookSubscription) -> WebhookSubscription:
        stored = dataclasses.replace(subscription, updated_at=utcnow())
        self._webhooks[subscription.client_id] = stored
        return dataclasses.replace(stored)

    async def get_webhook(self, client_id: str) -> Optional[WebhookSubscription]:
        subscription = self._webhooks.get(client_id)
        return dataclasses.replace(subscription) if subscription is not None else None

    async def delete_webhook(self, client_id: str) -> bool:
        return self._webhooks.pop(client_id, None) is not None


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS wa_sessions (
    client_id      TEXT PRIMARY KEY,
    status         TEXT NOT NULL DEFAULT 'disconnected',
    phone_number   TEXT,
    last_activity  TIMESTAMPTZ,
    qr_code        TEXT,
    message_count  INTEGER NOT NULL DEFAULT 0,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS wa_messages (
    id          BIGSERIAL PRIMARY KEY,
    client_id   TEXT NOT NULL,
    message_id  TEXT NOT NULL,
    from_jid    TEXT NOT NULL,
    to_jid      TEXT NOT NULL,
    body        TEXT NOT NULL DEFAULT '',
    type        TEXT NOT NULL DEFAULT 'text',
    direction   TEXT NOT NULL DEFAULT 'outgoing',
    status      TEXT NOT NULL DEFAULT 'sent',
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (client_id, message_id)
);
CREATE INDEX IF NOT EXISTS wa_messages_client_created_idx
    ON wa_messages (client_id, created_at DESC);
CREATE TABLE IF NOT EXISTS wa_webhooks (
    client_id   TEXT PRIMARY KEY,
    url         TEXT NOT NULL,
    enabled     BOOLEAN NOT NULL DEFAULT TRUE,
    events      TEXT[] NOT NULL DEFAULT '{}',
    secret      TEXT,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


def _row_to_session(row: Mapping[str, Any]) -> Session:
    data = dict(row)
    return Session(
        client_id=str(data["client_id"]),
        status=str(data.get("status") or STATUS_DISCONNECTED),
        phone_number=data.get("phone_number"),
        last_activity=data.get("last_activity"),
        qr_code=data.get("qr_code"),
        message_count=int(data.get("message_count") or 0),
    )


def _row_to_message(row: Mapping[str, Any]) -> Message:
    data = dict(row)
    created_at = data.get("created_at")
    if not isinstance(created_at, datetime):
        created_at = utcnow()
    return Message(
        client_id=str(data["client_id"]),
        message_id=str(data["message_id"]),
        from_=str(data.get("from_jid") or ""),
        to=str(data.get("to_jid") or ""),
        body=str(data.get("body") or ""),
        type=str(data.get("type") or "text"),
        direction=str(data.get("direction") or "outgoing"),
        status=str(data.get("status") or "sent"),
        created_at=created_at,
    )


def _row_to_webhook(row: Mapping[str, Any]) -> WebhookSubscription:
    data = dict(row)
    return WebhookSubscription(
        client_id=str(data["client_id"]),
        url=str(data["url"]),
        enabled=bool(data.get("enabled", True)),
        events=tuple(data.get("events") or ()),
        secret=data.get("secret") or None,
        updated_at=data.get("updated_at") or utcnow(),
    )


class PostgresStore:
    """asyncpg-backed store; the schema is created on :meth:`connect`."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Any = None

    async def connect(self) -> None:
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
        except (OSError, asyncpg.PostgresError) as exc:
            raise DatabaseUnavailableError(str(exc)) from exc
        await self.ensure_schema()
        _log.info("stage=store_ready backend=postgres")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        async with self._acquire() as con:
            await con.execute(_SCHEMA_SQL)

    def _acquire(self):
        if self._pool is None:
            raise DatabaseUnavailableError("pool_not_initialized")
        return self._pool.acquire()

    async def _execute(self, sql: str, *args: Any) -> str:
        async with self._acquire() as con:
            return await con.execute(sql, *args)

    async def _fetchrow(self, sql: str, *args: Any):
        async with self._acquire() as con:
            return await con.fetchrow(sql, *args)

    async def _fetch(self, sql: str, *args: Any):
        async with self._acquire() as con:
            return await con.fetch(sql, *args)

    async def upsert_session(self, client_id: str, **fields: Any) -> None:
        _check_fields(fields)
        columns = list(fields)
        placeholders = ", ".join(f"${index + 2}" for index in range(len(columns)))
        if columns:
            insert_cols = ", ".join(["client_id", *columns])
            updates = ", ".join(f"{name} = EXCLUDED.{name}" for name in columns)
            sql = (
                f"INSERT INTO wa_sessions ({insert_cols}) VALUES ($1, {placeholders}) "
                f"ON CONFLICT (client_id) DO UPDATE SET {updates}"
            )
        else:
            sql = "INSERT INTO wa_sessions (client_id) VALUES ($1) ON CONFLICT (client_id) DO NOTHING"
        await self._execute(sql, client_id, *(fields[name] for name in columns))

    async def get_session(self, client_id: str) -> Optional[Session]:
        row = await self._fetchrow("SELECT * FROM wa_sessions WHERE client_id = $1", client_id)
        return _row_to_session(row) if row else None

    async def list_sessions(self) -> List[Session]:
        rows = await self._fetch(
            "SELECT * FROM wa_sessions ORDER BY last_activity DESC NULLS LAST"
        )
        return [_row_to_session(row) for row in rows]

    async def find_sessions(self, status: str) -> List[Session]:
        rows = await self._fetch(
            "SELECT * FROM wa_sessions WHERE status = $1 ORDER BY last_activity DESC NULLS LAST",
            status,
        )
        return [_row_to_session(row) for row in rows]

    async def delete_session(self, client_id: str) -> bool:
        result = await self._execute("DELETE FROM wa_sessions WHERE client_id = $1", client_id)
        return not result.endswith(" 0")

    async def insert_message(self, message: Message) -> bool:
        result = await self._execute(
            """
            INSERT INTO wa_messages
                (client_id, message_id, from_jid, to_jid, body, type, direction, status, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (client_id, message_id) DO NOTHING
            """,
            message.client_id,
            message.message_id,
            message.from_,
            message.to,
            message.body,
            message.type,
            message.direction,
            message.status,
            message.created_at,
        )
        return result.endswith(" 1")

    async def count_messages(self, client_id: str) -> int:
        row = await self._fetchrow(
            "SELECT COUNT(*) AS total FROM wa_messages WHERE client_id = $1", client_id
        )
        return int(row["total"]) if row else 0

    async def list_messages(self, client_id: str, limit: int, offset: int) -> List[Message]:
        rows = await self._fetch(
            """
            SELECT * FROM wa_messages WHERE client_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2 OFFSET $3
            """,
            client_id,
            int(limit),
            int(offset),
        )
        return [_row_to_message(row) for row in rows]

    async def delete_messages(self, client_id: str) -> int:
        result = await self._execute("DELETE FROM wa_messages WHERE client_id = $1", client_id)
        try:
            return int(result.rsplit(" ", 1)[-1])
        except ValueError:
            return 0

    async def upsert_webhook(self, subscription: WebhookSubscription) -> WebhookSubscription:
        row = await self._fetchrow(
            """
            INSERT INTO wa_webhooks (client_id, url, enabled, events, secret, updated_at)
            VALUES ($1, $2, $3, $4, $5, now())
            ON CONFLICT (client_id) DO UPDATE SET
                url = EXCLUDED.url,
                enabled = EXCLUDED.enabled,
                events = EXCLUDED.events,
                secret = EXCLUDED.secret,
                updated_at = now()
            RETURNING *
            """,
            subscription.client_id,
            subscription.url,
            subscription.enabled,
            list(subscription.events),
            subscription.secret,
        )
        return _row_to_webhook(row)

    async def get_webhook(self, client_id: str) -> Optional[WebhookSubscription]:
        row = await self._fetchrow("SELECT * FROM wa_webhooks WHERE client_id = $1", client_id)
        return _row_to_webhook(row) if row else None

    async def delete_webhook(self, client_id: str) -> bool:
        result = await self._execute("DELETE FROM wa_webhooks WHERE client_id = $1", client_id)
        return not result.endswith(" 0")


def build_store(database_url: str) -> SessionStore:
    if database_url:
        return PostgresStore(database_url)
    _log.warning("stage=store_fallback backend=memory reason=database_url_missing")
    return MemoryStore()


__all__ = [
    "SessionStore",
    "MemoryStore",
    "PostgresStore",
    "DatabaseUnavailableError",
    "build_store",
]
