"""MIME Extraction Stage — consume extraction requests, parse the raw blob,
and write each body/attachment as a document object into the triggering zone.

Document keys derive from ``message_id + part_index`` only, so a retried
extraction rewrites identical keys instead of producing new triggers.
"""

from __future__ import annotations

import asyncio
import hashlib
import time

import structlog
from aiokafka import AIOKafkaConsumer
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from carebridge_framework import (
    AlertPublisher,
    EventPublisher,
    ExtractionError,
    ObjectStore,
    create_health_app,
    install_signal_handlers,
    sanitize_filename,
    serve_until,
    with_retry,
)
from carebridge_schema import (
    DocumentObject,
    ExtractionRequest,
    ExtractionStatus,
    Provenance,
    RawEmailArtifact,
)

from .artifacts import ArtifactStore
from .config import ExtractorConfig
from .envelope import message_key
from .parser import ExtractedPart, MimeParser

logger = structlog.get_logger()

_STORAGE_ERRORS = (BotoCoreError, ClientError, OSError)


class MimeExtractor:
    """``extract(message_id, raw_blob_ref) -> [DocumentObject]``."""

    def __init__(self, store: ObjectStore, parser: MimeParser, *, subpath: str = "email") -> None:
        self._store = store
        self._parser = parser
        self._subpath = subpath.strip("/")

    def document_key(self, message_id: str, part: ExtractedPart) -> str:
        zone = self._store.zones.triggering_zone
        filename = sanitize_filename(part.filename)
        return (
            f"{zone.prefix}{self._subpath}/{message_key(message_id)}/"
            f"{part.part_index:02d}-{filename}"
        )

    async def extract(self, message_id: str, raw_blob_ref: str) -> list[DocumentObject]:
        """Parse the raw blob and write one document object per part.

        Raises :class:`ExtractionError` for malformed content before any
        object is written.
        """
        raw_bytes = await self._store.get_bytes(raw_blob_ref)
        parsed = self._parser.parse(raw_bytes)
        zone = self._store.zones.triggering_zone

        documents: list[DocumentObject] = []
        for part in parsed.parts:
            key = self.document_key(message_id, part)
            if not self._store.zones.matches_trigger(key):
                logger.warning("extracted_key_outside_trigger_pattern", key=key)

            content_hash = hashlib.sha256(part.payload).hexdigest()
            await self._store.put_bytes(
                key,
                part.payload,
                content_type=part.content_type,
                metadata={
                    "provenance": Provenance.EMAIL_EXTRACTED.value,
                    "source-message-key": message_key(message_id),
                    "part-index": str(part.part_index),
                    "content-sha256": content_hash,
                },
            )
            documents.append(
                DocumentObject(
                    key=key,
                    zone=zone.name,
                    content_type=part.content_type,
                    size=len(part.payload),
                    content_hash=content_hash,
                    provenance=Provenance.EMAIL_EXTRACTED,
                    source_message_id=message_id,
                    part_index=part.part_index,
                )
            )

        logger.info("email_extracted", message_id=message_id, documents=len(documents))
        return documents


class ExtractionWorker:
    """Kafka consumer driving :class:`MimeExtractor` under at-least-once delivery.

    Malformed mail marks the artifact ``failed`` and produces nothing.
    Storage failures are retried, then alerted; the artifact stays
    ``pending`` so the message can be reprocessed.
    """

    def __init__(
        self,
        config: ExtractorConfig,
        *,
        store: ObjectStore | None = None,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._config = config
        self._store = store or ObjectStore(config.storage)
        self._publisher = publisher or EventPublisher(config.kafka)
        self._alerts = AlertPublisher(self._publisher, "email-extractor")
        self._artifacts = ArtifactStore(self._store, config.storage.raw_email_zone)
        self._extractor = MimeExtractor(
            self._store,
            MimeParser(include_body_text=config.include_body_text),
            subpath=config.email_subpath,
        )
        self._consumer: AIOKafkaConsumer | None = None
        self._shutdown_event = asyncio.Event()

        self._messages_processed: int = 0
        self._messages_skipped: int = 0
        self._messages_failed: int = 0
        self._start_time: float = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and process requests until shutdown."""
        self._start_time = time.monotonic()
        install_signal_handlers(self._shutdown_event, service="email-extractor")

        kafka_cfg = self._config.kafka
        self._consumer = AIOKafkaConsumer(
            kafka_cfg.extraction_topic,
            bootstrap_servers=kafka_cfg.bootstrap_servers,
            group_id=self._config.consumer_group,
            enable_auto_commit=False,
            auto_offset_reset=kafka_cfg.auto_offset_reset,
        )

        await self._store.start()
        await self._publisher.start()
        await self._consumer.start()
        logger.info("extraction_worker_started")

        app = create_health_app(
            "email-extractor",
            details=lambda: {
                "messages_processed": self._messages_processed,
                "messages_skipped": self._messages_skipped,
                "messages_failed": self._messages_failed,
            },
            is_ready=lambda: self._consumer is not None,
        )

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._consume_loop())
                tg.create_task(
                    serve_until(
                        app,
                        port=self._config.health_port,
                        shutdown_event=self._shutdown_event,
                    )
                )
        except* Exception:
            logger.exception("extraction_worker_error")
        finally:
            await self._consumer.stop()
            await self._publisher.stop()
            await self._store.stop()
            logger.info("extraction_worker_stopped")

    # ------------------------------------------------------------------
    # Consume loop
    # ------------------------------------------------------------------

    async def _consume_loop(self) -> None:
        assert self._consumer is not None

        async for msg in self._consumer:
            if self._shutdown_event.is_set():
                break

            try:
                request = ExtractionRequest.model_validate_json(msg.value)
            except ValidationError:
                logger.warning("extraction_request_invalid", offset=msg.offset)
                self._messages_failed += 1
                await self._consumer.commit()
                continue

            try:
                await self._process(request)
            except Exception:
                logger.exception("extraction_failed", message_id=request.message_id)
                self._messages_failed += 1
            # Commit either way to avoid poison-pill blocking; the raw
            # artifact stays pending and can be reprocessed.
            await self._consumer.commit()

        # Set here so the health server exits once the consumer finishes.
        self._shutdown_event.set()

    async def _process(self, request: ExtractionRequest) -> None:
        artifact = await self._artifacts.load(request.message_id)
        if artifact is not None and artifact.is_terminal:
            logger.info(
                "extraction_already_settled",
                message_id=request.message_id,
                status=artifact.status.value,
            )
            self._messages_skipped += 1
            return
        if artifact is None:
            artifact = RawEmailArtifact(
                message_id=request.message_id,
                recipient="",
                blob_ref=request.raw_blob_ref,
            )

        @with_retry(self._config.retry, retryable_exceptions=_STORAGE_ERRORS)
        async def _extract() -> list[DocumentObject]:
            return await self._extractor.extract(request.message_id, request.raw_blob_ref)

        try:
            documents = await _extract()
        except ExtractionError as exc:
            artifact.status = ExtractionStatus.FAILED
            artifact.error = str(exc)
            await self._artifacts.save(artifact)
            self._messages_failed += 1
            logger.warning(
                "email_extraction_rejected",
                message_id=request.message_id,
                error=str(exc),
            )
            return
        except _STORAGE_ERRORS as exc:
            await self._alerts.raise_alert(
                request.message_id,
                cause=f"extraction storage failure: {exc}",
                attempts=self._config.retry.max_attempts,
            )
            raise

        artifact.status = ExtractionStatus.EXTRACTED
        artifact.error = None
        artifact.document_keys = [doc.key for doc in documents]
        await self._artifacts.save(artifact)
        self._messages_processed += 1
