from __future__ import annotations

from prometheus_client import Counter, Gauge


WA_QR_ISSUED_TOTAL = Counter(
    "wa_qr_issued_total", "Total number of QR codes issued to tenants"
)
WA_READY_TOTAL = Counter(
    "wa_ready_total",
    "Total number of sessions reconciled to connected",
    ["source"],
)
WA_INIT_FAIL_TOTAL = Counter(
    "wa_init_fail_total",
    "Total number of failed session initializations",
    ["reason"],
)
WA_RESTART_TOTAL = Counter(
    "wa_restart_total", "Total number of scheduled session restarts", ["reason"]
)
WA_STALE_EVENTS_TOTAL = Counter(
    "wa_stale_events_total",
    "Connection events dropped because their handle was replaced",
    ["event"],
)
WA_MESSAGES_TOTAL = Counter(
    "wa_messages_total", "Messages recorded per direction", ["direction"]
)
WA_SEND_FAIL_TOTAL = Counter(
    "wa_send_fail_total", "Outbound message failures", ["reason"]
)
WA_WEBHOOK_DELIVERIES_TOTAL = Counter(
    "wa_webhook_deliveries_total",
    "Webhook delivery attempts grouped by event and result",
    ["event", "result"],
)
WA_STORE_ERRORS_TOTAL = Counter(
    "wa_store_errors_total", "Storage failures swallowed by event handlers", ["op"]
)

WA_SESSIONS_LIVE = Gauge(
    "wa_sessions_live", "Number of live connection handles"
)
WA_SESSIONS_INITIALIZING = Gauge(
    "wa_sessions_initializing", "Number of connection handles still initializing"
)
WA_SESSIONS_CONNECTED = Gauge(
    "wa_sessions_connected", "Number of connection handles with presence"
)

__all__ = [
    "WA_QR_ISSUED_TOTAL",
    "WA_READY_TOTAL",
    "WA_INIT_FAIL_TOTAL",
    "WA_RESTART_TOTAL",
    "WA_STALE_EVENTS_TOTAL",
    "WA_MESSAGES_TOTAL",
    "WA_SEND_FAIL_TOTAL",
    "WA_WEBHOOK_DELIVERIES_TOTAL",
    "WA_STORE_ERRORS_TOTAL",
    "WA_SESSIONS_LIVE",
    "WA_SESSIONS_INITIALIZING",
    "WA_SESSIONS_CONNECTED",
]
