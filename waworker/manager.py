from __future__ import annotations

import asyncio
import base64
import contextlib
import io
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import qrcode

from config import WorkerConfig

from .capability import (
    CONNECTED_LIKE_STATES,
    EVENT_AUTH_FAILURE,
    EVENT_AUTHENTICATED,
    EVENT_CHANGE_STATE,
    EVENT_DISCONNECTED,
    EVENT_LOADING_SCREEN,
    EVENT_MESSAGE,
    EVENT_QR,
    EVENT_READY,
    Connection,
    ConnectionFactory,
    IncomingMessage,
)
from .live import LiveHub
from .messages import (
    ClientNotFoundError,
    ClientNotReadyError,
    MessageIntake,
    SendError,
    SendFailedError,
)
from .metrics import (
    WA_INIT_FAIL_TOTAL,
    WA_QR_ISSUED_TOTAL,
    WA_READY_TOTAL,
    WA_RESTART_TOTAL,
    WA_SESSIONS_CONNECTED,
    WA_SESSIONS_INITIALIZING,
    WA_SESSIONS_LIVE,
    WA_STALE_EVENTS_TOTAL,
    WA_STORE_ERRORS_TOTAL,
)
from .models import (
    Message,
    Session,
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_DISCONNECTED,
    STATUS_QR_REQUIRED,
    is_valid_client_id,
    utcnow,
)
from .registry import RuntimeHandle, SessionRegistry
from .state_machine import (
    ALREADY_INITIALIZING,
    ArmFollowUp,
    ArmReadyTimeout,
    AuthFailure,
    Authenticated,
    BeginConnect,
    Cleanup,
    ClearQr,
    DelegateMessage,
    DestroyHandle,
    DisarmTimers,
    Disconnected,
    Event,
    Fail,
    ManualCheck,
    MessageReceived,
    Notify,
    Persist,
    Publish,
    QrIssued,
    Ready,
    ReadyTimeout,
    Reject,
    Restart,
    ShortCircuit,
    StartRequested,
    StateChanged,
    StoreQr,
    Transition,
    TOO_MANY_QR,
    transition,
)
from .store import SessionStore
from .webhooks import WebhookDispatcher


LOGGER = logging.getLogger("waworker")

_BOUND_EVENTS = (
    EVENT_QR,
    EVENT_AUTHENTICATED,
    EVENT_READY,
    EVENT_CHANGE_STATE,
    EVENT_MESSAGE,
    EVENT_DISCONNECTED,
    EVENT_AUTH_FAILURE,
    EVENT_LOADING_SCREEN,
)

EventSource = Union[Event, Callable[[], Awaitable[Event]]]


class InvalidClientIdError(ValueError):
    pass


@dataclass(slots=True)
class StartResult:
    success: bool
    status: str
    message: Optional[str] = None


@dataclass(slots=True)
class SessionState:
    client_id: str
    status: str = STATUS_DISCONNECTED
    phone_number: Optional[str] = None
    connected: bool = False
    last_activity: Optional[datetime] = None
    message_count: int = 0
    qr_code: Optional[str] = None
    is_initializing: bool = False
    client_state: str = "unknown"
    has_client_info: bool = False


def _failure_label(reason: str) -> str:
    if reason == TOO_MANY_QR:
        return "qr_attempts"
    if reason.startswith("Auth failure"):
        return "auth_failure"
    if reason.startswith("Client not ready"):
        return "ready_timeout"
    if reason.startswith("Initialization timed out"):
        return "init_timeout"
    return "initialize_error"


class WhatsAppSessionManager:
    """Own every tenant connection and reconcile its lifecycle.

    Raw connection events are turned into state machine events, the
    resulting effects are executed here in order. Each handle's lock keeps
    one identity's listeners and timers from interleaving.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: SessionStore,
        *,
        connection_factory: ConnectionFactory,
        dispatcher: Optional[WebhookDispatcher] = None,
        live: Optional[LiveHub] = None,
        registry: Optional[SessionRegistry] = None,
    ) -> None:
        self._config = config
        self._sessions_dir = Path(config.sessions_dir)
        self._store = store
        self._connection_factory = connection_factory
        self._registry = registry or SessionRegistry()
        self._dispatcher = dispatcher or WebhookDispatcher(store, timeout=config.webhook_timeout)
        self._live = live or LiveHub()
        self._intake = MessageIntake(
            store, self._dispatcher, self._registry, send_grace=config.send_grace
        )
        self._restarts: Dict[str, asyncio.Task[Any]] = {}
        self._held: Dict[str, set[RuntimeHandle]] = {}
        self._recover_task: Optional[asyncio.Task[Any]] = None
        self._started = False

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def dispatcher(self) -> WebhookDispatcher:
        return self._dispatcher

    @property
    def live(self) -> LiveHub:
        return self._live

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._recover_task = asyncio.create_task(self.recover(), name="wa-recover")

    async def shutdown(self) -> None:
        tasks = [task for task in self._restarts.values() if not task.done()]
        if self._recover_task is not None and not self._recover_task.done():
            tasks.append(self._recover_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                LOGGER.exception("stage=shutdown_task_failed")
        self._restarts.clear()
        for handle in list(self._registry):
            await self._dispose(handle)
        await self._dispatcher.close()
        self._update_metrics()
        LOGGER.info("stage=shutdown_complete")

    # --- paths --------------------------------------------------------------

    def session_path(self, client_id: str) -> Path:
        if not is_valid_client_id(client_id):
            raise InvalidClientIdError(f"invalid clientId: {client_id!r}")
        return self._sessions_dir / f"session-{client_id}"

    def _ensure_session_dir(self, path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("event=session_dir_prepare_failed path=%s error=%s", path, exc)
            return
        try:
            os.chmod(path, 0o700)
        except OSError as exc:
            LOGGER.warning("event=session_dir_chmod_failed path=%s error=%s", path, exc)

    # --- supervisor operations ---------------------------------------------

    async def start_session(self, client_id: str) -> StartResult:
        path = self.session_path(client_id)
        attempt = self._registry.begin_attempt(client_id)
        handle = attempt.handle
        step = transition(
            handle.status if handle is not None else None,
            StartRequested(attempt.outcome, stale=attempt.stale is not None),
        )
        if step.has(Reject):
            LOGGER.info("stage=start_rejected client_id=%s reason=already_initializing", client_id)
            return StartResult(False, handle.status, ALREADY_INITIALIZING)
        if step.has(ShortCircuit):
            LOGGER.info("stage=start_skipped client_id=%s reason=connected", client_id)
            return StartResult(True, STATUS_CONNECTED, "Client already connected")

        LOGGER.info("stage=start client_id=%s generation=%s", client_id, handle.generation)
        for effect in step.effects:
            if isinstance(effect, Cleanup) and attempt.stale is not None:
                LOGGER.info("stage=stale_cleanup client_id=%s", client_id)
                await self._dispose(attempt.stale)
            elif isinstance(effect, Persist):
                await self._persist(handle, effect)
            elif isinstance(effect, BeginConnect):
                return await self._begin_connect(handle, path)
        return StartResult(True, handle.status)

    async def _begin_connect(self, handle: RuntimeHandle, path: Path) -> StartResult:
        client_id = handle.client_id
        self._ensure_session_dir(path)
        try:
            connection = self._connection_factory(client_id, path)
            handle.connection = connection
            self._bind(handle, connection)
            self._update_metrics()
            await asyncio.wait_for(connection.initialize(), timeout=self._config.init_timeout)
        except asyncio.TimeoutError:
            reason = f"Initialization timed out after {self._config.init_timeout:g}s"
            await self._fail_from_start(handle, reason)
            return StartResult(False, STATUS_DISCONNECTED, reason)
        except Exception as exc:
            LOGGER.exception("stage=initialize_failed client_id=%s", client_id)
            reason = str(exc) or exc.__class__.__name__
            await self._fail_from_start(handle, reason)
            return StartResult(False, STATUS_DISCONNECTED, reason)
        finally:
            self._registry.clear_initializing(client_id, handle)
            self._update_metrics()

        if not self._registry.is_current(client_id, handle):
            return StartResult(False, handle.status, "Initialization aborted")
        return StartResult(True, handle.status, "Session initialization started")

    async def _fail_from_start(self, handle: RuntimeHandle, reason: str) -> None:
        async with self._hold(handle):
            if not self._registry.is_current(handle.client_id, handle):
                return
            await self._handle_initialization_failure(handle, reason)

    @contextlib.asynccontextmanager
    async def _hold(self, handle: RuntimeHandle) -> AsyncIterator[None]:
        """Take ``handle.lock`` and keep the handle findable while held.

        A teardown unregisters its handle before awaiting ``destroy``;
        ``delete_session`` finds it here and waits for the lock.
        """
        async with handle.lock:
            held = self._held.setdefault(handle.client_id, set())
            held.add(handle)
            try:
                yield
            finally:
                held.discard(handle)
                if not held:
                    self._held.pop(handle.client_id, None)

    async def restart_session(self, client_id: str) -> Dict[str, Any]:
        self.session_path(client_id)
        pending = self._restarts.get(client_id)
        if pending is not None and not pending.done():
            return {"success": True, "message": "Restart already scheduled"}
        handle = self._registry.acquire(client_id)
        if handle is not None:
            async with self._hold(handle):
                await self._restart_cleanup(handle, "manual")
            if handle.deleted:
                return {"success": False, "message": "Session deleted"}
        else:
            WA_RESTART_TOTAL.labels("manual").inc()
            await self._persist_status(client_id, STATUS_DISCONNECTED)
        self._schedule_restart(client_id)
        return {"success": True, "message": "Session restart initiated"}

    async def delete_session(self, client_id: str) -> Dict[str, Any]:
        path = self.session_path(client_id)
        pending = self._restarts.pop(client_id, None)
        if pending is not None and not pending.done():
            pending.cancel()
        handles = set(self._held.get(client_id, ()))
        current = self._registry.remove(client_id)
        if current is not None:
            handles.add(current)
        for handle in handles:
            handle.deleted = True
        # wait out teardowns that already unregistered their handle
        for handle in handles:
            async with handle.lock:
                await self._dispose(handle)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        removed_messages = await self._store.delete_messages(client_id)
        await self._store.delete_session(client_id)
        self._update_metrics()
        LOGGER.info(
            "stage=session_deleted client_id=%s messages=%s", client_id, removed_messages
        )
        return {"success": True, "message": "Session deleted successfully"}

    async def get_status(self, client_id: str) -> SessionState:
        session = await self._store.get_session(client_id)
        return await self._state_for(client_id, session)

    async def list_sessions(self) -> List[SessionState]:
        sessions = await self._store.list_sessions()
        return [await self._state_for(item.client_id, item) for item in sessions]

    async def _state_for(self, client_id: str, session: Optional[Session]) -> SessionState:
        handle = self._registry.acquire(client_id)
        client_state = "unknown"
        has_info = False
        if handle is not None and handle.connection is not None:
            client_state = await self._safe_state(handle) or "unknown"
            has_info = handle.has_presence
        state = SessionState(
            client_id=client_id,
            is_initializing=self._registry.is_initializing(client_id),
            client_state=client_state,
            has_client_info=has_info,
        )
        if session is not None:
            state.status = session.status
            state.phone_number = session.phone_number
            state.last_activity = session.last_activity
            state.message_count = session.message_count
            if session.status == STATUS_QR_REQUIRED:
                state.qr_code = session.qr_code
        state.connected = state.status == STATUS_CONNECTED and has_info
        return state

    async def check_ready(self, client_id: str) -> Dict[str, Any]:
        """Run the readiness reconciliation on demand."""
        handle = self._registry.acquire(client_id)
        if handle is None or handle.connection is None:
            return {"success": False, "message": "Client not found"}

        async def build() -> Event:
            state = await self._safe_state(handle)
            return ManualCheck(handle.presence, state, handle.ready_timeout_pending)

        step = await self._apply(handle, "manual_check", build)
        if step is None:
            return {"success": False, "message": "Client not found"}
        if handle.status == STATUS_CONNECTED and handle.has_presence:
            return {"success": True, "message": "Client is ready"}
        return {"success": False, "message": step.note or "Client not ready"}

    async def recover(self) -> int:
        try:
            sessions = await self._store.find_sessions(STATUS_CONNECTED)
        except Exception:
            WA_STORE_ERRORS_TOTAL.labels("recover").inc()
            LOGGER.exception("stage=restore_failed reason=store")
            return 0
        LOGGER.info("stage=restore_start sessions=%s", len(sessions))
        restored = 0
        for index, session in enumerate(sessions):
            if index:
                await asyncio.sleep(self._config.restore_interval)
            try:
                result = await self.start_session(session.client_id)
            except Exception as exc:
                LOGGER.exception(
                    "stage=restore_failed client_id=%s error=%s", session.client_id, exc
                )
                continue
            if result.success:
                restored += 1
            LOGGER.info(
                "stage=restore client_id=%s success=%s status=%s",
                session.client_id,
                result.success,
                result.status,
            )
        return restored

    async def send_message(
        self, client_id: str, to: str, body: str, type: str = "text"
    ) -> Message:
        return await self._intake.send(client_id, to, body, type)

    async def list_messages(self, client_id: str, *, limit: int = 50, offset: int = 0) -> List[Message]:
        return await self._store.list_messages(client_id, limit, offset)

    # --- event intake -------------------------------------------------------

    def _bind(self, handle: RuntimeHandle, connection: Connection) -> None:
        for event in _BOUND_EVENTS:
            connection.on(event, self._listener(handle, event))

    def _listener(self, handle: RuntimeHandle, event: str) -> Callable[..., Awaitable[None]]:
        async def _on_event(*args: Any) -> None:
            await self._on_connection_event(handle, event, args)

        return _on_event

    def _is_current(self, handle: RuntimeHandle, event: str) -> bool:
        if self._registry.is_current(handle.client_id, handle):
            return True
        WA_STALE_EVENTS_TOTAL.labels(event).inc()
        LOGGER.info(
            "stage=stale_event client_id=%s event=%s generation=%s",
            handle.client_id,
            event,
            handle.generation,
        )
        return False

    async def _on_connection_event(self, handle: RuntimeHandle, event: str, args: tuple) -> None:
        client_id = handle.client_id
        first = args[0] if args else None

        if event == EVENT_QR:
            await self._apply(handle, event, lambda: self._qr_event(handle, first))
        elif event == EVENT_AUTHENTICATED:
            LOGGER.info("stage=authenticated client_id=%s", client_id)
            await self._apply(handle, event, Authenticated())
        elif event == EVENT_READY:
            async with handle.lock:
                if not self._is_current(handle, event):
                    return
                self._cancel(handle.ready_timer)
                handle.ready_timer = None
            LOGGER.info("stage=ready_event client_id=%s", client_id)
            await asyncio.sleep(self._config.settle_delay)
            await self._apply(handle, event, lambda: self._ready_event(handle))
        elif event == EVENT_CHANGE_STATE:
            LOGGER.info("stage=change_state client_id=%s state=%s", client_id, first)
            if first in CONNECTED_LIKE_STATES and self._is_current(handle, event):
                self._schedule_state_check(handle, first)
        elif event == EVENT_DISCONNECTED:
            LOGGER.warning("stage=disconnected client_id=%s reason=%s", client_id, first)
            await self._apply(handle, event, Disconnected(first))
        elif event == EVENT_AUTH_FAILURE:
            LOGGER.warning("stage=auth_failure client_id=%s message=%s", client_id, first)
            await self._apply(handle, event, AuthFailure(first))
        elif event == EVENT_MESSAGE:
            await self._apply(handle, event, lambda: self._message_event(first))
        elif event == EVENT_LOADING_SCREEN:
            LOGGER.debug("stage=loading client_id=%s percent=%s", client_id, first)

    async def _qr_event(self, handle: RuntimeHandle, raw: Any) -> Event:
        handle.qr_count += 1
        attempt = handle.qr_count
        limit = self._config.max_qr_attempts
        if attempt > limit:
            return QrIssued("", attempt, limit)
        return QrIssued(self._build_qr_data_url(str(raw or "")), attempt, limit)

    async def _ready_event(self, handle: RuntimeHandle) -> Event:
        presence = handle.presence
        if presence is None:
            LOGGER.warning("stage=ready_without_presence client_id=%s", handle.client_id)
        return Ready(presence)

    async def _message_event(self, raw: Any) -> Event:
        if isinstance(raw, IncomingMessage):
            return MessageReceived(raw)
        if not isinstance(raw, Mapping):
            raise TypeError(f"message payload must be a mapping, got {type(raw).__name__}")
        return MessageReceived(IncomingMessage.from_payload(dict(raw)))

    async def _apply(
        self, handle: RuntimeHandle, label: str, source: EventSource
    ) -> Optional[Transition]:
        async with self._hold(handle):
            if not self._is_current(handle, label):
                return None
            try:
                event = await source() if callable(source) else source
                step = transition(handle.status, event)
                await self._execute(handle, step, label)
            except Exception:
                LOGGER.exception(
                    "stage=event_handler_failed client_id=%s event=%s", handle.client_id, label
                )
                return None
            return step

    # --- effects ------------------------------------------------------------

    async def _execute(self, handle: RuntimeHandle, step: Transition, source: str) -> None:
        client_id = handle.client_id
        if step.changed and step.status != handle.status:
            LOGGER.info(
                "stage=state_transition client_id=%s from=%s to=%s reason=%s",
                client_id,
                handle.status,
                step.status,
                step.note or source,
            )
        if step.changed:
            handle.status = step.status
        for effect in step.effects:
            if handle.deleted:
                LOGGER.info("stage=deleted_skip client_id=%s event=%s", client_id, source)
                break
            if isinstance(effect, Persist):
                await self._persist(handle, effect)
            elif isinstance(effect, Notify):
                data = dict(effect.data)
                if effect.event == "ready":
                    data.setdefault("clientId", client_id)
                await self._dispatcher.send(client_id, effect.event, data)
            elif isinstance(effect, Publish):
                await self._live.publish(client_id, effect.event, dict(effect.data))
            elif isinstance(effect, StoreQr):
                handle.qr_code = effect.qr
                WA_QR_ISSUED_TOTAL.inc()
            elif isinstance(effect, ClearQr):
                handle.qr_code = None
            elif isinstance(effect, ArmReadyTimeout):
                self._arm_ready_timeout(handle)
            elif isinstance(effect, ArmFollowUp):
                self._arm_follow_up(handle)
            elif isinstance(effect, DisarmTimers):
                self._disarm(handle)
            elif isinstance(effect, DestroyHandle):
                await self._dispose(handle)
            elif isinstance(effect, Fail):
                await self._handle_initialization_failure(handle, effect.reason)
            elif isinstance(effect, Restart):
                await self._restart_cleanup(handle, "stale_connection")
                if not handle.deleted:
                    self._schedule_restart(client_id)
            elif isinstance(effect, DelegateMessage):
                await self._intake.record_incoming(client_id, effect.message)
        if step.status == STATUS_CONNECTED:
            WA_READY_TOTAL.labels(step.note or source).inc()
            LOGGER.info(
                "stage=ready client_id=%s phone=%s source=%s",
                client_id,
                getattr(handle.presence, "user", None),
                step.note or source,
            )
        self._update_metrics()

    async def _persist(self, handle: RuntimeHandle, effect: Persist) -> None:
        await self._persist_status(
            handle.client_id,
            effect.status,
            qr_code=effect.qr_code,
            phone_number=effect.phone_number,
        )

    async def _persist_status(
        self,
        client_id: str,
        status: str,
        *,
        qr_code: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> None:
        fields = {
            "status": status,
            "last_activity": utcnow(),
            "qr_code": qr_code if status == STATUS_QR_REQUIRED else None,
            "phone_number": phone_number if status == STATUS_CONNECTED else None,
        }
        try:
            await self._store.upsert_session(client_id, **fields)
        except Exception:
            WA_STORE_ERRORS_TOTAL.labels("persist_status").inc()
            LOGGER.exception("stage=persist_failed client_id=%s status=%s", client_id, status)
        await self._live.publish(
            client_id,
            "session-status",
            {"status": status, "phoneNumber": fields["phone_number"]},
        )

    async def _handle_initialization_failure(self, handle: RuntimeHandle, reason: str) -> None:
        client_id = handle.client_id
        WA_INIT_FAIL_TOTAL.labels(_failure_label(reason)).inc()
        LOGGER.warning("stage=init_failed client_id=%s reason=%s", client_id, reason)
        if handle.status != STATUS_DISCONNECTED:
            LOGGER.info(
                "stage=state_transition client_id=%s from=%s to=%s reason=init_failed",
                client_id,
                handle.status,
                STATUS_DISCONNECTED,
            )
        handle.status = STATUS_DISCONNECTED
        await self._dispose(handle)
        if handle.deleted:
            return
        await self._persist_status(client_id, STATUS_DISCONNECTED)
        await self._live.publish(client_id, "error", {"message": reason})

    async def _restart_cleanup(self, handle: RuntimeHandle, reason: str) -> None:
        WA_RESTART_TOTAL.labels(reason).inc()
        LOGGER.info("stage=restart client_id=%s reason=%s", handle.client_id, reason)
        handle.status = STATUS_DISCONNECTED
        await self._dispose(handle)
        if handle.deleted:
            return
        await self._persist_status(handle.client_id, STATUS_DISCONNECTED)

    def _schedule_restart(self, client_id: str) -> asyncio.Task[Any]:
        pending = self._restarts.get(client_id)
        if pending is not None and not pending.done():
            return pending
        task = asyncio.create_task(self._delayed_start(client_id), name=f"wa-restart-{client_id}")
        self._restarts[client_id] = task

        def _forget(done: asyncio.Task[Any]) -> None:
            if self._restarts.get(client_id) is done:
                self._restarts.pop(client_id, None)

        task.add_done_callback(_forget)
        return task

    async def _delayed_start(self, client_id: str) -> None:
        await asyncio.sleep(self._config.restart_backoff)
        try:
            result = await self.start_session(client_id)
        except Exception:
            LOGGER.exception("stage=restart_failed client_id=%s", client_id)
            return
        LOGGER.info(
            "stage=restart_attempt client_id=%s success=%s status=%s message=%s",
            client_id,
            result.success,
            result.status,
            result.message,
        )

    async def _dispose(self, handle: RuntimeHandle) -> None:
        """Disarm, unregister and destroy ``handle``; safe to call twice."""
        self._disarm(handle)
        self._registry.remove(handle.client_id, handle)
        handle.initializing = False
        handle.qr_code = None
        connection = handle.connection
        handle.connection = None
        if connection is not None:
            try:
                await connection.destroy()
            except Exception as exc:
                LOGGER.warning(
                    "stage=destroy_failed client_id=%s error=%s", handle.client_id, exc
                )
        self._update_metrics()

    # --- timers -------------------------------------------------------------

    @staticmethod
    def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()

    def _disarm(self, handle: RuntimeHandle) -> None:
        for task in handle.timers():
            self._cancel(task)
        handle.ready_timer = None
        handle.followup_timer = None
        handle.state_checks.clear()

    def _arm_ready_timeout(self, handle: RuntimeHandle) -> None:
        self._cancel(handle.ready_timer)
        handle.ready_timer = asyncio.create_task(
            self._ready_timeout(handle, follow_up=False),
            name=f"wa-ready-{handle.client_id}",
        )

    def _arm_follow_up(self, handle: RuntimeHandle) -> None:
        self._cancel(handle.followup_timer)
        handle.followup_timer = asyncio.create_task(
            self._ready_timeout(handle, follow_up=True),
            name=f"wa-followup-{handle.client_id}",
        )

    async def _ready_timeout(self, handle: RuntimeHandle, *, follow_up: bool) -> None:
        delay = self._config.followup_delay if follow_up else self._config.ready_timeout
        await asyncio.sleep(delay)

        async def build() -> Event:
            current = asyncio.current_task()
            if handle.ready_timer is current:
                handle.ready_timer = None
            if handle.followup_timer is current:
                handle.followup_timer = None
            state = await self._safe_state(handle)
            LOGGER.warning(
                "stage=ready_timeout client_id=%s follow_up=%s state=%s has_info=%s",
                handle.client_id,
                follow_up,
                state,
                handle.has_presence,
            )
            return ReadyTimeout(
                handle.presence,
                state,
                follow_up=follow_up,
                restart_on_stale=self._config.restart_on_stale_connection,
            )

        await self._apply(handle, "ready_timeout", build)

    def _schedule_state_check(self, handle: RuntimeHandle, state: str) -> None:
        task = asyncio.create_task(
            self._state_check(handle, state), name=f"wa-state-{handle.client_id}"
        )
        handle.state_checks.add(task)
        task.add_done_callback(handle.state_checks.discard)

    async def _state_check(self, handle: RuntimeHandle, state: str) -> None:
        await asyncio.sleep(self._config.state_check_delay)

        async def build() -> Event:
            return StateChanged(state, handle.presence, handle.ready_timeout_pending)

        await self._apply(handle, "state_check", build)

    async def _safe_state(self, handle: RuntimeHandle) -> Optional[str]:
        connection = handle.connection
        if connection is None:
            return None
        try:
            return await connection.get_state()
        except Exception as exc:
            LOGGER.warning("stage=get_state_failed client_id=%s error=%s", handle.client_id, exc)
            return None

    # --- rendering & stats --------------------------------------------------

    def _build_qr_data_url(self, raw: str) -> str:
        if raw.startswith("data:image/"):
            return raw
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=8,
            border=4,
        )
        qr.add_data(raw)
        qr.make(fit=True)
        img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")

    def stats_snapshot(self) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = dict(self._registry.stats())
        snapshot["qr_required"] = sum(
            1 for handle in self._registry if handle.status == STATUS_QR_REQUIRED
        )
        snapshot["connecting"] = sum(
            1 for handle in self._registry if handle.status == STATUS_CONNECTING
        )
        snapshot["restarts_pending"] = sum(1 for task in self._restarts.values() if not task.done())
        return snapshot

    def _update_metrics(self) -> None:
        snapshot = self._registry.stats()
        WA_SESSIONS_LIVE.set(snapshot["live"])
        WA_SESSIONS_INITIALIZING.set(snapshot["initializing"])
        WA_SESSIONS_CONNECTED.set(snapshot["with_presence"])


__all__ = [
    "WhatsAppSessionManager",
    "SessionState",
    "StartResult",
    "InvalidClientIdError",
    "SendError",
    "ClientNotFoundError",
    "ClientNotReadyError",
    "SendFailedError",
]
