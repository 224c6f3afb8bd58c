from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


STATUS_CONNECTING = "connecting"
STATUS_QR_REQUIRED = "qr_required"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"

SESSION_STATUSES = frozenset(
    {STATUS_CONNECTING, STATUS_QR_REQUIRED, STATUS_CONNECTED, STATUS_DISCONNECTED}
)

DIRECTION_INCOMING = "incoming"
DIRECTION_OUTGOING = "outgoing"

# also used as a directory name under the sessions dir
CLIENT_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_client_id(client_id: str) -> bool:
    return re.fullmatch(CLIENT_ID_PATTERN, client_id or "") is not None


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


@dataclass(slots=True)
class Session:
    """Persisted view of one tenant session."""

    client_id: str
    status: str = STATUS_DISCONNECTED
    phone_number: Optional[str] = None
    last_activity: Optional[datetime] = None
    qr_code: Optional[str] = None
    message_count: int = 0


@dataclass(slots=True)
class Message:
    client_id: str
    message_id: str
    from_: str
    to: str
    body: str
    type: str = "text"
    direction: str = DIRECTION_OUTGOING
    status: str = "sent"
    created_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "messageId": self.message_id,
            "from": self.from_,
            "to": self.to,
            "body": self.body,
            "type": self.type,
            "direction": self.direction,
            "status": self.status,
            "createdAt": _iso(self.created_at),
        }


@dataclass(slots=True)
class WebhookSubscription:
    client_id: str
    url: str
    enabled: bool = True
    events: tuple[str, ...] = ()
    secret: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def accepts(self, event: str) -> bool:
        if not self.enabled:
            return False
        return not self.events or event in self.events

    def to_payload(self) -> dict[str, Any]:
        # the secret is write-only
        return {
            "clientId": self.client_id,
            "url": self.url,
            "enabled": self.enabled,
            "events": list(self.events),
            "hasSecret": bool(self.secret),
            "updatedAt": _iso(self.updated_at),
        }


__all__ = [
    "Session",
    "Message",
    "WebhookSubscription",
    "SESSION_STATUSES",
    "STATUS_CONNECTING",
    "STATUS_QR_REQUIRED",
    "STATUS_CONNECTED",
    "STATUS_DISCONNECTED",
    "DIRECTION_INCOMING",
    "DIRECTION_OUTGOING",
    "CLIENT_ID_PATTERN",
    "is_valid_client_id",
    "utcnow",
]
