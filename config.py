"""Lightweight configuration helpers for the session worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


DEFAULT_BRIDGE_URL = "http://wabridge:9001"
DEFAULT_SESSIONS_DIR = "/app/wa-sessions"
DEFAULT_WORKER_PORT = 8086

_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _coerce_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    cleaned = value.strip().lower()
    if not cleaned:
        return default
    return cleaned not in _FALSE_VALUES


def _normalize_bridge_url(raw: str | None) -> str:
    if not raw:
        return DEFAULT_BRIDGE_URL
    cleaned = raw.strip()
    if not cleaned:
        return DEFAULT_BRIDGE_URL
    return cleaned.rstrip("/") or DEFAULT_BRIDGE_URL


def _normalize_database_url(raw: str | None) -> str:
    # asyncpg does not understand the SQLAlchemy driver suffix
    cleaned = (raw or "").strip()
    return cleaned.replace("postgresql+asyncpg://", "postgresql://")


@lru_cache(maxsize=32)
def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    multiplier = 1.0
    if cleaned.endswith("ms"):
        cleaned = cleaned[:-2]
        multiplier = 0.001
    elif cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        value = float(cleaned) * multiplier
    except ValueError:
        return default
    return value if value >= 0 else default


def _resolve_sessions_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_SESSIONS_DIR)
    try:
        candidate.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wa-sessions")
        alt.mkdir(mode=0o700, parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    sessions_dir: Path
    database_url: str
    bridge_url: str
    bridge_token: str | None
    admin_token: str | None
    port: int
    max_qr_attempts: int
    init_timeout: float
    ready_timeout: float
    followup_delay: float
    settle_delay: float
    state_check_delay: float
    send_grace: float
    restart_backoff: float
    restore_interval: float
    webhook_timeout: float
    restart_on_stale_connection: bool


def worker_config() -> WorkerConfig:
    env = os.getenv
    admin_token = (env("ADMIN_TOKEN") or "").strip() or None
    bridge_token = (env("BRIDGE_TOKEN") or "").strip() or None
    return WorkerConfig(
        sessions_dir=_resolve_sessions_dir(env("WA_SESSIONS_DIR")),
        database_url=_normalize_database_url(env("DATABASE_URL")),
        bridge_url=_normalize_bridge_url(env("WA_BRIDGE_URL")),
        bridge_token=bridge_token,
        admin_token=admin_token,
        port=_coerce_int(env("WAWORKER_PORT"), DEFAULT_WORKER_PORT),
        max_qr_attempts=_coerce_int(env("WA_MAX_QR_ATTEMPTS"), 5) or 5,
        init_timeout=_parse_duration(env("WA_INIT_TIMEOUT"), default=240.0),
        ready_timeout=_parse_duration(env("WA_READY_TIMEOUT"), default=60.0),
        followup_delay=_parse_duration(env("WA_READY_FOLLOWUP"), default=5.0),
        settle_delay=_parse_duration(env("WA_READY_SETTLE"), default=1.0),
        state_check_delay=_parse_duration(env("WA_STATE_CHECK_DELAY"), default=3.0),
        send_grace=_parse_duration(env("WA_SEND_GRACE"), default=2.0),
        restart_backoff=_parse_duration(env("WA_RESTART_BACKOFF"), default=3.0),
        restore_interval=_parse_duration(env("WA_RESTORE_INTERVAL"), default=3.0),
        webhook_timeout=_parse_duration(env("WEBHOOK_TIMEOUT"), default=10.0),
        restart_on_stale_connection=_coerce_bool(
            env("WA_RESTART_ON_STALE_CONNECTION"), True
        ),
    )


__all__ = [
    "WorkerConfig",
    "DEFAULT_BRIDGE_URL",
    "DEFAULT_SESSIONS_DIR",
    "DEFAULT_WORKER_PORT",
    "worker_config",
]
