"""Access Gateway — issue presigned, create-only upload URLs.

A grant names exactly one key.  The key must sit in the triggering zone
and match the trigger pattern, so an upload through a grant always starts
exactly one pipeline run and can never land in a non-triggering zone.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import structlog

from carebridge_framework import GrantRefused, ObjectStore, install_signal_handlers, serve_until
from carebridge_schema import AccessGrant

from .app import create_gateway_app
from .config import GatewayConfig

logger = structlog.get_logger()


class AccessGateway:
    def __init__(self, config: GatewayConfig, *, store: ObjectStore | None = None) -> None:
        self._config = config
        self._store = store or ObjectStore(config.storage)
        self._shutdown_event = asyncio.Event()
        self._started = False
        self._grants_issued: int = 0
        self._grants_refused: int = 0

    @property
    def grants_issued(self) -> int:
        return self._grants_issued

    @property
    def grants_refused(self) -> int:
        return self._grants_refused

    @property
    def is_ready(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._store.start()
        self._started = True
        logger.info("access_gateway_started", ttl_seconds=self._config.grant_ttl_seconds)

    async def stop(self) -> None:
        self._started = False
        await self._store.stop()
        logger.info("access_gateway_stopped")

    async def run(self) -> None:
        """Serve the grant API until SIGTERM / SIGINT."""
        install_signal_handlers(self._shutdown_event, service="access-gateway")
        await self.start()
        try:
            await serve_until(
                create_gateway_app(self),
                port=self._config.api_port,
                shutdown_event=self._shutdown_event,
            )
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def _refuse(self, object_key: str, reason: str) -> GrantRefused:
        self._grants_refused += 1
        logger.warning("grant_refused", object_key=object_key, reason=reason)
        return GrantRefused(f"{reason}: {object_key!r}")

    def check_key(self, object_key: str) -> None:
        """Raise :class:`GrantRefused` unless *object_key* may be granted."""
        segments = object_key.split("/")
        if object_key.startswith("/") or "\\" in object_key or any(
            seg in ("", ".", "..") for seg in segments
        ):
            raise self._refuse(object_key, "malformed object key")

        zones = self._store.zones
        zone = zones.zone_for_key(object_key)
        if zone is None or not zone.triggers_pipeline:
            raise self._refuse(object_key, "object key is outside the triggering zone")
        if not zones.matches_trigger(object_key):
            raise self._refuse(object_key, "object key does not match the trigger pattern")

    async def issue_grant(self, object_key: str, *, content_type: str | None = None) -> AccessGrant:
        self.check_key(object_key)

        ttl = self._config.grant_ttl_seconds
        url = await self._store.presign_create(object_key, expires_in=ttl, content_type=content_type)
        grant = AccessGrant(
            object_key=object_key,
            url=url,
            expiry_timestamp=datetime.now(UTC) + timedelta(seconds=ttl),
        )
        self._grants_issued += 1
        logger.info(
            "grant_issued",
            object_key=object_key,
            expiry_timestamp=grant.expiry_timestamp.isoformat(),
        )
        return grant
