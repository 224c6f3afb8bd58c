"""Pure session lifecycle transitions.

``transition(status, event)`` maps the last reconciled status and one
connection event to the next status plus the side effects the runtime must
execute, in order. Nothing in this module touches the network, storage or
the clock, so every branch can be exercised without a live connection.

Statuses: ``connecting -> qr_required -> connecting -> connected ->
disconnected``; ``disconnected`` stays put until an explicit start.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional, Union

from .capability import CONNECTED_LIKE_STATES, STATE_CONNECTED, IncomingMessage, Presence
from .models import (
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_DISCONNECTED,
    STATUS_QR_REQUIRED,
)
from .registry import BEGIN_CONNECTED, BEGIN_INITIALIZING, BEGIN_STARTED


MAX_QR_ATTEMPTS = 5

ALREADY_INITIALIZING = "already initializing"
TOO_MANY_QR = "Too many QR attempts"


# --- events -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StartRequested:
    outcome: str
    stale: bool = False


@dataclass(frozen=True, slots=True)
class QrIssued:
    qr: str
    attempt: int
    max_attempts: int = MAX_QR_ATTEMPTS


@dataclass(frozen=True, slots=True)
class Authenticated:
    pass


@dataclass(frozen=True, slots=True)
class Ready:
    """``ready`` fired; ``presence`` is read after the settle delay."""

    presence: Optional[Presence]


@dataclass(frozen=True, slots=True)
class ReadyTimeout:
    presence: Optional[Presence]
    capability_state: Optional[str]
    follow_up: bool = False
    restart_on_stale: bool = True


@dataclass(frozen=True, slots=True)
class StateChanged:
    state: Optional[str]
    presence: Optional[Presence]
    ready_timeout_pending: bool


@dataclass(frozen=True, slots=True)
class ManualCheck:
    presence: Optional[Presence]
    capability_state: Optional[str]
    ready_timeout_pending: bool


@dataclass(frozen=True, slots=True)
class Disconnected:
    reason: Any = None


@dataclass(frozen=True, slots=True)
class AuthFailure:
    message: Any = None


@dataclass(frozen=True, slots=True)
class MessageReceived:
    message: IncomingMessage


Event = Union[
    StartRequested,
    QrIssued,
    Authenticated,
    Ready,
    ReadyTimeout,
    StateChanged,
    ManualCheck,
    Disconnected,
    AuthFailure,
    MessageReceived,
]


# --- effects ----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Persist:
    status: str
    qr_code: Optional[str] = None
    phone_number: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Notify:
    event: str
    data: dict


@dataclass(frozen=True, slots=True)
class Publish:
    event: str
    data: dict


@dataclass(frozen=True, slots=True)
class StoreQr:
    qr: str


@dataclass(frozen=True, slots=True)
class ClearQr:
    pass


@dataclass(frozen=True, slots=True)
class ArmReadyTimeout:
    pass


@dataclass(frozen=True, slots=True)
class ArmFollowUp:
    pass


@dataclass(frozen=True, slots=True)
class DisarmTimers:
    pass


@dataclass(frozen=True, slots=True)
class DestroyHandle:
    pass


@dataclass(frozen=True, slots=True)
class Fail:
    reason: str


@dataclass(frozen=True, slots=True)
class Restart:
    reason: str


@dataclass(frozen=True, slots=True)
class DelegateMessage:
    message: IncomingMessage


@dataclass(frozen=True, slots=True)
class Reject:
    message: str


@dataclass(frozen=True, slots=True)
class ShortCircuit:
    pass


@dataclass(frozen=True, slots=True)
class Cleanup:
    pass


@dataclass(frozen=True, slots=True)
class BeginConnect:
    pass


Effect = Union[
    Persist,
    Notify,
    Publish,
    StoreQr,
    ClearQr,
    ArmReadyTimeout,
    ArmFollowUp,
    DisarmTimers,
    DestroyHandle,
    Fail,
    Restart,
    DelegateMessage,
    Reject,
    ShortCircuit,
    Cleanup,
    BeginConnect,
]


@dataclass(frozen=True, slots=True)
class Transition:
    status: Optional[str]
    effects: tuple = ()
    note: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.status is not None

    def has(self, effect_type: type) -> bool:
        return any(isinstance(effect, effect_type) for effect in self.effects)


UNCHANGED = Transition(None)


# --- readiness reconciliation ----------------------------------------------


class Readiness(str, enum.Enum):
    READY = "ready"
    RECHECK = "recheck"
    RESTART = "restart"
    FAIL = "fail"


def reconcile(
    presence: Optional[Presence],
    capability_state: Optional[str],
    *,
    follow_up: bool,
    restart_on_stale: bool = True,
) -> Readiness:
    """Decide whether a session is actually ready.

    Presence wins. Without presence a ``CONNECTED`` capability earns one
    shorter follow-up check; if presence is still missing after it, the
    stale connection is restarted (or failed when that policy is off).
    """
    if presence is not None:
        return Readiness.READY
    if capability_state == STATE_CONNECTED:
        if not follow_up:
            return Readiness.RECHECK
        return Readiness.RESTART if restart_on_stale else Readiness.FAIL
    return Readiness.FAIL


def _ready(status: Optional[str], presence: Presence, *, note: str) -> Transition:
    if status == STATUS_CONNECTED:
        return Transition(None, (DisarmTimers(),), note="already connected")
    return Transition(
        STATUS_CONNECTED,
        (
            DisarmTimers(),
            ClearQr(),
            Persist(STATUS_CONNECTED, phone_number=presence.user),
            Notify("ready", {"phoneNumber": presence.user}),
        ),
        note=note,
    )


def _from_readiness(
    status: Optional[str],
    readiness: Readiness,
    presence: Optional[Presence],
    capability_state: Optional[str],
) -> Transition:
    if readiness is Readiness.READY and presence is not None:
        return _ready(status, presence, note="manual_ready")
    if readiness is Readiness.RECHECK:
        return Transition(None, (ArmFollowUp(),), note="recheck")
    if readiness is Readiness.RESTART:
        return Transition(
            STATUS_DISCONNECTED,
            (Restart("connected without presence"),),
            note="restart",
        )
    return Transition(
        STATUS_DISCONNECTED,
        (Fail(f"Client not ready after timeout, state: {capability_state}"),),
        note="fail",
    )


def transition(status: Optional[str], event: Event) -> Transition:
    if isinstance(event, StartRequested):
        if event.outcome == BEGIN_INITIALIZING:
            return Transition(None, (Reject(ALREADY_INITIALIZING),), note=ALREADY_INITIALIZING)
        if event.outcome == BEGIN_CONNECTED:
            return Transition(None, (ShortCircuit(),), note="connected")
        if event.outcome != BEGIN_STARTED:
            raise ValueError(f"unknown start outcome: {event.outcome}")
        effects: tuple = (Persist(STATUS_CONNECTING), BeginConnect())
        if event.stale:
            effects = (Cleanup(),) + effects
        return Transition(STATUS_CONNECTING, effects)

    if isinstance(event, QrIssued):
        if event.attempt > event.max_attempts:
            return Transition(STATUS_DISCONNECTED, (Fail(TOO_MANY_QR),), note=TOO_MANY_QR)
        data = {"qr": event.qr, "attempt": event.attempt}
        return Transition(
            STATUS_QR_REQUIRED,
            (
                StoreQr(event.qr),
                Persist(STATUS_QR_REQUIRED, qr_code=event.qr),
                Notify("qr_code", dict(data)),
                Publish("qr", dict(data)),
            ),
        )

    if isinstance(event, Authenticated):
        return Transition(
            STATUS_CONNECTING,
            (ClearQr(), Persist(STATUS_CONNECTING), ArmReadyTimeout()),
        )

    if isinstance(event, Ready):
        if event.presence is None:
            # ready without presence degrades to the follow-up reconciliation
            return Transition(None, (ArmFollowUp(),), note="ready_without_presence")
        return _ready(status, event.presence, note="ready")

    if isinstance(event, ReadyTimeout):
        readiness = reconcile(
            event.presence,
            event.capability_state,
            follow_up=event.follow_up,
            restart_on_stale=event.restart_on_stale,
        )
        return _from_readiness(status, readiness, event.presence, event.capability_state)

    if isinstance(event, StateChanged):
        if (
            event.state in CONNECTED_LIKE_STATES
            and event.presence is not None
            and not event.ready_timeout_pending
        ):
            return _ready(status, event.presence, note="state_change")
        return UNCHANGED

    if isinstance(event, ManualCheck):
        if event.ready_timeout_pending:
            return Transition(None, note="ready timeout pending")
        if event.presence is not None:
            return _ready(status, event.presence, note="manual_ready")
        return Transition(None, note=f"Client state: {event.capability_state}, has info: False")

    if isinstance(event, Disconnected):
        return Transition(
            STATUS_DISCONNECTED,
            (
                DisarmTimers(),
                DestroyHandle(),
                ClearQr(),
                Persist(STATUS_DISCONNECTED),
                Notify("disconnected", {"reason": event.reason}),
            ),
        )

    if isinstance(event, AuthFailure):
        return Transition(
            STATUS_DISCONNECTED,
            (
                Fail(f"Auth failure: {event.message}"),
                Notify("auth_failure", {"message": event.message}),
            ),
        )

    if isinstance(event, MessageReceived):
        return Transition(None, (DelegateMessage(event.message),))

    raise TypeError(f"unsupported event: {event!r}")


__all__ = [
    "MAX_QR_ATTEMPTS",
    "ALREADY_INITIALIZING",
    "TOO_MANY_QR",
    "Readiness",
    "Transition",
    "reconcile",
    "transition",
    # events
    "StartRequested",
    "QrIssued",
    "Authenticated",
    "Ready",
    "ReadyTimeout",
    "StateChanged",
    "ManualCheck",
    "Disconnected",
    "AuthFailure",
    "MessageReceived",
    # effects
    "Persist",
    "Notify",
    "Publish",
    "StoreQr",
    "ClearQr",
    "ArmReadyTimeout",
    "ArmFollowUp",
    "DisarmTimers",
    "DestroyHandle",
    "Fail",
    "Restart",
    "DelegateMessage",
    "Reject",
    "ShortCircuit",
    "Cleanup",
    "BeginConnect",
]
