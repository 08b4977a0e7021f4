"""Graceful shutdown handling via SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import signal

import structlog

logger = structlog.get_logger()


def install_signal_handlers(shutdown_event: asyncio.Event, *, service: str) -> None:
    """Register SIGTERM and SIGINT handlers that set *shutdown_event*.

    Call this once from the running event loop.  Consumer loops check the
    event between records; health servers await it before exiting.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name, service=service)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle, sig)
