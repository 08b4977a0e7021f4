"""Email Intake Adapter — validate the recipient, persist the raw MIME blob
to the raw-email zone, and publish an extraction request.

The raw-email zone never triggers the pipeline: a raw artifact only
reaches a pipeline run after extraction writes document objects into the
triggering zone.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import FastAPI, Query, Request, status
from fastapi.responses import JSONResponse

from carebridge_framework import (
    AlertPublisher,
    EventPublisher,
    ObjectStore,
    RecipientRejected,
    create_health_app,
    install_signal_handlers,
    serve_until,
    with_retry,
)
from carebridge_schema import ExtractionRequest, InboundEmail, IntakeAck, RawEmailArtifact

from .artifacts import ArtifactStore
from .config import IntakeConfig
from .envelope import message_id_from_headers, normalize_address

logger = structlog.get_logger()

RAW_CONTENT_TYPE = "message/rfc822"


class EmailIntakeAdapter:
    """Accepts inbound messages for the configured recipients.

    Idempotent per message id: redelivery overwrites the same blob and
    artifact keys.  A message whose artifact already reached a terminal
    status is acknowledged without re-publishing.
    """

    def __init__(
        self,
        config: IntakeConfig,
        *,
        store: ObjectStore | None = None,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._config = config
        self._store = store or ObjectStore(config.storage)
        self._publisher = publisher or EventPublisher(config.kafka)
        self._alerts = AlertPublisher(self._publisher, "email-intake")
        self._artifacts = ArtifactStore(self._store, config.storage.raw_email_zone)
        self._recipients = set(config.recipients)
        self._shutdown_event = asyncio.Event()
        self._started = False

        self._messages_accepted: int = 0
        self._messages_rejected: int = 0

    @property
    def messages_accepted(self) -> int:
        return self._messages_accepted

    @property
    def messages_rejected(self) -> int:
        return self._messages_rejected

    @property
    def is_ready(self) -> bool:
        return self._started

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._store.start()
        await self._publisher.start()
        self._started = True
        logger.info("email_intake_started", recipients=sorted(self._recipients))

    async def stop(self) -> None:
        self._started = False
        await self._publisher.stop()
        await self._store.stop()
        logger.info("email_intake_stopped")

    async def run(self) -> None:
        """Serve the receipt API until SIGTERM / SIGINT."""
        install_signal_handlers(self._shutdown_event, service="email-intake")
        await self.start()
        try:
            await serve_until(
                create_intake_app(self),
                port=self._config.api_port,
                shutdown_event=self._shutdown_event,
            )
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Receipt
    # ------------------------------------------------------------------

    def _check_recipient(self, recipient: str) -> str:
        address = normalize_address(recipient)
        if address not in self._recipients:
            self._messages_rejected += 1
            logger.warning("email_recipient_rejected", recipient=address)
            raise RecipientRejected(f"unrecognised recipient: {address}")
        return address

    async def receive(self, message: InboundEmail) -> IntakeAck:
        """Accept a message whose raw blob already sits at ``raw_blob_ref``."""
        recipient = self._check_recipient(message.recipient)

        blob_key = self._artifacts.blob_key(message.message_id)
        if message.raw_blob_ref == self._store.uri(blob_key):
            blob_ref = message.raw_blob_ref
        else:
            blob_ref = await self._store.copy(
                message.raw_blob_ref,
                blob_key,
                content_type=RAW_CONTENT_TYPE,
            )
        return await self._record_and_publish(message.message_id, recipient, blob_ref)

    async def receive_raw(self, recipient: str, raw_bytes: bytes) -> IntakeAck:
        """Accept a message handed over as bytes.

        The message id comes from the ``Message-ID`` header; messages
        without one are identified by a digest of their content.
        """
        address = self._check_recipient(recipient)

        message_id = message_id_from_headers(raw_bytes)

        blob_ref = await self._store.put_bytes(
            self._artifacts.blob_key(message_id),
            raw_bytes,
            content_type=RAW_CONTENT_TYPE,
        )
        return await self._record_and_publish(message_id, address, blob_ref)

    async def _record_and_publish(self, message_id: str, recipient: str, blob_ref: str) -> IntakeAck:
        existing = await self._artifacts.load(message_id)
        if existing is not None and existing.is_terminal:
            logger.info(
                "email_redelivery_ignored",
                message_id=message_id,
                status=existing.status.value,
            )
            return IntakeAck(message_id=message_id, raw_blob_ref=blob_ref)

        artifact = RawEmailArtifact(message_id=message_id, recipient=recipient, blob_ref=blob_ref)
        if existing is not None:
            artifact.received_at = existing.received_at
        await self._artifacts.save(artifact)

        await self._publish(ExtractionRequest(message_id=message_id, raw_blob_ref=blob_ref))

        self._messages_accepted += 1
        logger.info("email_accepted", message_id=message_id, blob_ref=blob_ref)
        return IntakeAck(message_id=message_id, raw_blob_ref=blob_ref)

    async def _publish(self, request: ExtractionRequest) -> None:
        """Publish with retry; alert and re-raise once the budget is spent.

        Re-raising fails the receipt so the transport redelivers; the raw
        blob and pending artifact are already durable.
        """

        @with_retry(self._config.retry)
        async def _send() -> None:
            await self._publisher.send_extraction_request(request)

        try:
            await _send()
        except Exception as exc:
            await self._alerts.raise_alert(
                request.message_id,
                cause=f"extraction request not published: {exc}",
                attempts=self._config.retry.max_attempts,
            )
            raise


def create_intake_app(adapter: EmailIntakeAdapter) -> FastAPI:
    """Receipt API plus ``/health`` and ``/ready`` probes."""
    app = FastAPI(title="email-intake", docs_url=None, redoc_url=None)

    @app.exception_handler(RecipientRejected)
    async def _recipient_rejected(request: Request, exc: RecipientRejected) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_403_FORBIDDEN)

    @app.post("/v1/inbound-email", status_code=status.HTTP_202_ACCEPTED)
    async def inbound_email(message: InboundEmail) -> IntakeAck:
        return await adapter.receive(message)

    @app.post("/v1/inbound-email/raw", status_code=status.HTTP_202_ACCEPTED)
    async def inbound_email_raw(request: Request, recipient: str = Query(...)) -> IntakeAck:
        return await adapter.receive_raw(recipient, await request.body())

    return create_health_app(
        "email-intake",
        details=lambda: {
            "messages_accepted": adapter.messages_accepted,
            "messages_rejected": adapter.messages_rejected,
        },
        is_ready=lambda: adapter.is_ready,
        app=app,
    )
