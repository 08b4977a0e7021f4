"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog


def setup_logging(*, service: str | None = None, json: bool = True, level: str = "INFO") -> None:
    """Configure structlog for a Carebridge process.

    Parameters
    ----------
    service:
        Service name bound into every log line (e.g. ``"pipeline"``).
    json:
        If *True* (the default, suitable for production / K8s), output
        JSON lines.  If *False*, use a human-friendly console renderer.
    level:
        Root log level name (e.g. ``"DEBUG"``, ``"INFO"``).
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # aiokafka logs every rebalance at INFO
    logging.getLogger("aiokafka").setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    if service:
        structlog.contextvars.bind_contextvars(service=service)


@contextmanager
def execution_context(execution_id: str, document_key: str) -> Iterator[None]:
    """Bind execution identifiers to every log line emitted inside the block.

    Contextvars are task-local, so concurrent executions do not leak
    identifiers into each other's logs.
    """
    with structlog.contextvars.bound_contextvars(
        execution_id=execution_id,
        document_key=document_key,
    ):
        yield
