from __future__ import annotations

import json
import logging
import os
from logging import StreamHandler
from typing import Any, Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from config import worker_config

from .models import CLIENT_ID_PATTERN, is_valid_client_id
from .session_manager import (
    InvalidClientIdError,
    SendError,
    SessionManager,
)


logger = logging.getLogger("waworker.api")

API_PREFIX = "/api/whatsapp"

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    lg = logging.getLogger("waworker")
    lg.setLevel(level)
    if not any(isinstance(h, StreamHandler) for h in lg.handlers):
        h = StreamHandler()
        h.setFormatter(logging.Formatter(fmt))
        lg.addHandler(h)
        lg.propagate = False


class StartSessionRequest(BaseModel):
    clientId: str = Field(..., pattern=CLIENT_ID_PATTERN)
    webhook: Optional[str] = None


class SendMessageRequest(BaseModel):
    to: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    type: str = "text"


class WebhookRequest(BaseModel):
    url: str = Field(..., min_length=1)
    events: list[str] = Field(default_factory=list)
    secret: Optional[str] = None
    enabled: bool = True


class BridgeEventRequest(BaseModel):
    clientId: str = Field(..., pattern=CLIENT_ID_PATTERN)
    event: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


def _json(body: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))


def _failure(error: str, status_code: int = 400) -> JSONResponse:
    return _json({"success": False, "error": error}, status_code=status_code)


def create_app() -> FastAPI:
    _init_logging()
    cfg = worker_config()
    manager = SessionManager(cfg)
    logger.info(
        "stage=config_resolved sessions_dir=%s bridge_url=%s database=%s admin_token=%s",
        cfg.sessions_dir,
        cfg.bridge_url,
        "postgres" if cfg.database_url else "memory",
        "true" if cfg.admin_token else "false",
    )

    app = FastAPI(title="waworker")
    app.state.session_manager = manager

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        await manager.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg") or "invalid request"
        return _failure(f"{location}: {message}" if location else message)

    @app.exception_handler(InvalidClientIdError)
    async def _invalid_client(request: Request, exc: InvalidClientIdError):
        return _failure(str(exc))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("stage=request_failed path=%s", request.url.path)
        return _failure("internal_error", status_code=500)

    def _enforce_admin(request: Request, route: str, *, client_id: str | None = None) -> JSONResponse | None:
        if not cfg.admin_token:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != cfg.admin_token:
            logger.warning("event=admin_token_invalid route=%s client_id=%s", route, client_id)
            return _json({"success": False, "error": "not_authorized"}, status_code=401)
        return None

    def _guard(request: Request, route: str, client_id: str | None = None) -> JSONResponse | None:
        unauthorized = _enforce_admin(request, route, client_id=client_id)
        if unauthorized is not None:
            return unauthorized
        if client_id is not None and not is_valid_client_id(client_id):
            return _failure(f"invalid clientId: {client_id!r}")
        return None

    def _safe_stats_snapshot() -> dict[str, int]:
        try:
            snapshot = manager.stats_snapshot()
            if isinstance(snapshot, dict):
                return snapshot
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
        return {"live": 0, "initializing": 0, "with_presence": 0}

    @app.post(f"{API_PREFIX}/sessions")
    async def start_session(request: Request, payload: StartSessionRequest):
        blocked = _guard(request, "/sessions", payload.clientId)
        if blocked is not None:
            return blocked
        result = await manager.start_session(payload.clientId, webhook_url=payload.webhook)
        body: dict[str, Any] = {"success": result.success, "status": result.status}
        if result.message:
            body["message"] = result.message
        return _json(body)

    @app.get(f"{API_PREFIX}/sessions")
    async def list_sessions(request: Request):
        blocked = _guard(request, "/sessions")
        if blocked is not None:
            return blocked
        snapshots = await manager.list_sessions()
        return _json([snapshot.to_payload() for snapshot in snapshots])

    @app.get(f"{API_PREFIX}/sessions/{{client_id}}")
    async def session_status(request: Request, client_id: str):
        blocked = _guard(request, "/sessions/status", client_id)
        if blocked is not None:
            return blocked
        snapshot = await manager.get_status(client_id)
        return _json(snapshot.to_payload())

    @app.post(f"{API_PREFIX}/sessions/{{client_id}}/restart")
    @app.post(f"{API_PREFIX}/{{client_id}}/restart")
    async def restart_session(request: Request, client_id: str):
        blocked = _guard(request, "/sessions/restart", client_id)
        if blocked is not None:
            return blocked
        return _json(await manager.restart_session(client_id))

    @app.post(f"{API_PREFIX}/sessions/{{client_id}}/check-ready")
    async def check_ready(request: Request, client_id: str):
        blocked = _guard(request, "/sessions/check-ready", client_id)
        if blocked is not None:
            return blocked
        return _json(await manager.check_ready(client_id))

    @app.delete(f"{API_PREFIX}/sessions/{{client_id}}")
    async def delete_session(request: Request, client_id: str):
        blocked = _guard(request, "/sessions/delete", client_id)
        if blocked is not None:
            return blocked
        return _json(await manager.delete_session(client_id))

    @app.post(f"{API_PREFIX}/sessions/{{client_id}}/messages")
    async def send_message(request: Request, client_id: str, payload: SendMessageRequest):
        blocked = _guard(request, "/sessions/messages", client_id)
        if blocked is not None:
            return blocked
        try:
            sent = await manager.send_message(client_id, payload.to, payload.message, payload.type)
        except SendError as exc:
            return _failure(str(exc))
        return _json(
            {
                "success": True,
                "messageId": sent.get("messageId"),
                "message": "Message sent successfully",
            }
        )

    @app.get(f"{API_PREFIX}/sessions/{{client_id}}/messages")
    async def list_messages(
        request: Request,
        client_id: str,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ):
        blocked = _guard(request, "/sessions/messages", client_id)
        if blocked is not None:
            return blocked
        items = await manager.list_messages(client_id, limit=limit, offset=offset)
        return _json({"messages": items, "limit": limit, "offset": offset})

    @app.post(f"{API_PREFIX}/sessions/{{client_id}}/webhook")
    async def configure_webhook(request: Request, client_id: str, payload: WebhookRequest):
        blocked = _guard(request, "/sessions/webhook", client_id)
        if blocked is not None:
            return blocked
        subscription = await manager.configure_webhook(
            client_id,
            payload.url,
            events=payload.events,
            secret=payload.secret,
            enabled=payload.enabled,
        )
        return _json({"success": True, "webhook": subscription.to_payload()})

    @app.get(f"{API_PREFIX}/sessions/{{client_id}}/webhook")
    async def get_webhook(request: Request, client_id: str):
        blocked = _guard(request, "/sessions/webhook", client_id)
        if blocked is not None:
            return blocked
        subscription = await manager.get_webhook(client_id)
        if subscription is None:
            return _failure("Webhook not configured", status_code=404)
        return _json({"success": True, "webhook": subscription.to_payload()})

    @app.delete(f"{API_PREFIX}/sessions/{{client_id}}/webhook")
    async def delete_webhook(request: Request, client_id: str):
        blocked = _guard(request, "/sessions/webhook", client_id)
        if blocked is not None:
            return blocked
        removed = await manager.delete_webhook(client_id)
        if not removed:
            return _failure("Webhook not configured", status_code=404)
        return _json({"success": True, "message": "Webhook deleted"})

    @app.post("/internal/bridge/events")
    async def bridge_events(request: Request, payload: BridgeEventRequest):
        if cfg.bridge_token:
            header = request.headers.get("X-Bridge-Token", "").strip()
            if header != cfg.bridge_token:
                logger.warning("event=bridge_token_invalid client_id=%s", payload.clientId)
                return _json({"success": False, "error": "not_authorized"}, status_code=401)
        accepted = manager.bridge_event(payload.clientId, payload.event, payload.data)
        if not accepted:
            logger.info(
                "stage=bridge_event_dropped client_id=%s event=%s", payload.clientId, payload.event
            )
            return _failure("Client not found", status_code=404)
        return _json({"success": True})

    async def _ws_frame(websocket: WebSocket, frame: dict[str, Any]) -> None:
        hub = manager.live
        kind = str(frame.get("type") or "")
        client_id = str(frame.get("clientId") or "")
        if not is_valid_client_id(client_id):
            await hub.send(websocket, "error", {"message": "clientId is required", "type": kind})
            return

        if kind == "subscribe":
            hub.subscribe(client_id, websocket)
            snapshot = await manager.get_status(client_id)
            await hub.send(websocket, "session-status", snapshot.to_payload())
        elif kind == "start-session":
            hub.subscribe(client_id, websocket)
            result = await manager.start_session(client_id)
            await hub.send(
                websocket,
                "session-status",
                {
                    "clientId": client_id,
                    "success": result.success,
                    "status": result.status,
                    "message": result.message,
                },
            )
        elif kind == "get-status":
            snapshot = await manager.get_status(client_id)
            await hub.send(websocket, "session-status", snapshot.to_payload())
        elif kind == "send-message":
            to = str(frame.get("to") or "")
            body = str(frame.get("message") or "")
            if not to or not body:
                await hub.send(
                    websocket, "error", {"clientId": client_id, "message": "to and message are required"}
                )
                return
            try:
                sent = await manager.send_message(
                    client_id, to, body, str(frame.get("messageType") or "text")
                )
            except SendError as exc:
                await hub.send(websocket, "error", {"clientId": client_id, "message": str(exc)})
                return
            await hub.send(websocket, "message-sent", sent)
        else:
            await hub.send(
                websocket, "error", {"clientId": client_id, "message": f"unknown type: {kind}"}
            )

    @app.websocket("/ws")
    async def live_socket(websocket: WebSocket):
        if cfg.admin_token:
            token = websocket.headers.get("X-Admin-Token") or websocket.query_params.get("token")
            if (token or "").strip() != cfg.admin_token:
                logger.warning("event=admin_token_invalid route=/ws")
                await websocket.close(code=4401)
                return
        await websocket.accept()
        hub = manager.live
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    await hub.send(websocket, "error", {"message": "invalid JSON frame"})
                    continue
                if not isinstance(frame, dict):
                    await hub.send(websocket, "error", {"message": "frame must be an object"})
                    continue
                await _ws_frame(websocket, frame)
        except WebSocketDisconnect:
            pass
        finally:
            hub.unsubscribe(websocket)

    @app.get("/health")
    async def health():
        stats = _safe_stats_snapshot()
        return {
            "ok": True,
            "live": int(stats.get("live", 0) or 0),
            "initializing": int(stats.get("initializing", 0) or 0),
            "connected": int(stats.get("with_presence", 0) or 0),
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
