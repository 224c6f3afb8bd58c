"""Executable entrypoint for the session worker service."""

from __future__ import annotations

import os

import uvicorn

from config import DEFAULT_WORKER_PORT, _coerce_int


def main() -> None:
    uvicorn.run(
        "waworker.api:create_app",
        host="0.0.0.0",
        port=_coerce_int(os.getenv("WAWORKER_PORT"), DEFAULT_WORKER_PORT),
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
