"""Per-tenant webhook subscriptions and signed best-effort delivery."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Iterable, Optional

import httpx

from .metrics import WA_WEBHOOK_DELIVERIES_TOTAL
from .models import WebhookSubscription, utcnow
from .store import SessionStore


LOGGER = logging.getLogger("waworker.webhooks")

SIGNATURE_HEADER = "X-Webhook-Signature"
USER_AGENT = "waworker-webhook/1.0"


def sign_payload(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` signature for ``body``."""
    mac = hmac.new(key=secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256)
    return f"sha256={mac.hexdigest()}"


def verify_signature(body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Check a received ``X-Webhook-Signature`` header against ``body``.

    Receivers must verify against the raw request bytes, not a re-serialized
    copy of the parsed JSON.
    """
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature_header)


def _timestamp() -> str:
    return utcnow().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_envelope(client_id: str, event: str, data: Dict[str, Any]) -> bytes:
    envelope = {
        "event": event,
        "clientId": client_id,
        "timestamp": _timestamp(),
        "data": data,
    }
    return json.dumps(envelope, ensure_ascii=False, default=str).encode("utf-8")


class WebhookDispatcher:
    """Delivers lifecycle events to the tenant's subscription, if any.

    Delivery is a single POST with no retries. Every failure is logged and
    counted; :meth:`send` never raises.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._store = store
        self._timeout = timeout
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def configure(
        self,
        client_id: str,
        url: str,
        *,
        events: Iterable[str] = (),
        secret: Optional[str] = None,
        enabled: bool = True,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            client_id=client_id,
            url=url.strip(),
            enabled=enabled,
            events=tuple(dict.fromkeys(item for item in events if item)),
            secret=(secret or "").strip() or None,
        )
        stored = await self._store.upsert_webhook(subscription)
        LOGGER.info(
            "stage=webhook_configured client_id=%s enabled=%s events=%s",
            client_id,
            stored.enabled,
            ",".join(stored.events) or "*",
        )
        return stored

    async def get(self, client_id: str) -> Optional[WebhookSubscription]:
        return await self._store.get_webhook(client_id)

    async def delete(self, client_id: str) -> bool:
        removed = await self._store.delete_webhook(client_id)
        if removed:
            LOGGER.info("stage=webhook_deleted client_id=%s", client_id)
        return removed

    async def send(self, client_id: str, event: str, data: Dict[str, Any]) -> bool:
        try:
            subscription = await self._store.get_webhook(client_id)
        except Exception as exc:
            WA_WEBHOOK_DELIVERIES_TOTAL.labels(event, "lookup_error").inc()
            LOGGER.error(
                "stage=webhook_lookup_fail client_id=%s event=%s error=%s", client_id, event, exc
            )
            return False
        if subscription is None or not subscription.accepts(event):
            return False

        body = build_envelope(client_id, event, data)
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if subscription.secret:
            headers[SIGNATURE_HEADER] = sign_payload(subscription.secret, body)

        try:
            response = await self._http.post(
                subscription.url, content=body, headers=headers, timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            WA_WEBHOOK_DELIVERIES_TOTAL.labels(event, "transport_error").inc()
            LOGGER.error(
                "stage=webhook_fail client_id=%s event=%s error=%s", client_id, event, exc
            )
            return False

        if response.status_code >= 300:
            WA_WEBHOOK_DELIVERIES_TOTAL.labels(event, "http_error").inc()
            LOGGER.warning(
                "stage=webhook_rejected client_id=%s event=%s status=%s",
                client_id,
                event,
                response.status_code,
            )
            return False

        WA_WEBHOOK_DELIVERIES_TOTAL.labels(event, "ok").inc()
        LOGGER.info("stage=webhook_sent client_id=%s event=%s", client_id, event)
        return True


__all__ = [
    "WebhookDispatcher",
    "SIGNATURE_HEADER",
    "USER_AGENT",
    "build_envelope",
    "sign_payload",
    "verify_signature",
]
