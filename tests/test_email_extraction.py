"""Tests for carebridge_email.extraction (MimeExtractor and ExtractionWorker)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from carebridge_email import ArtifactStore, ExtractionWorker, ExtractorConfig, MimeExtractor, MimeParser, message_key
from carebridge_framework import ObjectStore, RetryConfig, StorageConfig
from carebridge_schema import ExtractionRequest, ExtractionStatus, Provenance, RawEmailArtifact

from tests.conftest import FakeS3Client, build_multipart_email

MESSAGE_ID = "<multi-001@example.org>"


@pytest.fixture
def extractor_config(storage_config: StorageConfig, retry_config: RetryConfig) -> ExtractorConfig:
    return ExtractorConfig(storage=storage_config, retry=retry_config)


@pytest.fixture
def worker(extractor_config: ExtractorConfig, object_store: ObjectStore, publisher: AsyncMock) -> ExtractionWorker:
    return ExtractionWorker(extractor_config, store=object_store, publisher=publisher)


@pytest.fixture
def artifacts(object_store: ObjectStore) -> ArtifactStore:
    return ArtifactStore(object_store, "raw-email")


async def _stage_raw(object_store: ObjectStore, artifacts: ArtifactStore, raw: bytes) -> ExtractionRequest:
    blob_ref = await object_store.put_bytes(
        artifacts.blob_key(MESSAGE_ID),
        raw,
        content_type="message/rfc822",
    )
    await artifacts.save(
        RawEmailArtifact(message_id=MESSAGE_ID, recipient="intake@carebridge.test", blob_ref=blob_ref)
    )
    return ExtractionRequest(message_id=MESSAGE_ID, raw_blob_ref=blob_ref)


class TestMimeExtractor:
    @pytest.mark.asyncio
    async def test_writes_documents_into_triggering_zone(
        self,
        object_store: ObjectStore,
        artifacts: ArtifactStore,
        s3_client: FakeS3Client,
        multipart_eml_bytes: bytes,
    ):
        request = await _stage_raw(object_store, artifacts, multipart_eml_bytes)
        extractor = MimeExtractor(object_store, MimeParser())

        documents = await extractor.extract(request.message_id, request.raw_blob_ref)

        prefix = f"incoming/email/{message_key(MESSAGE_ID)}/"
        assert [doc.key for doc in documents] == [
            f"{prefix}00-body.txt",
            f"{prefix}01-report.pdf",
            f"{prefix}02-labs.csv",
        ]
        assert s3_client.keys("incoming/") == sorted(doc.key for doc in documents)
        assert all(object_store.zones.matches_trigger(doc.key) for doc in documents)
        assert all(doc.zone == "incoming" for doc in documents)
        assert all(doc.provenance == Provenance.EMAIL_EXTRACTED for doc in documents)
        assert documents[1].source_message_id == MESSAGE_ID
        assert documents[1].part_index == 1
        assert s3_client.body(f"{prefix}01-report.pdf") == b"%PDF-1.4 fake pdf content"

    @pytest.mark.asyncio
    async def test_keys_are_deterministic(
        self,
        object_store: ObjectStore,
        artifacts: ArtifactStore,
        s3_client: FakeS3Client,
        multipart_eml_bytes: bytes,
    ):
        request = await _stage_raw(object_store, artifacts, multipart_eml_bytes)
        extractor = MimeExtractor(object_store, MimeParser())

        first = await extractor.extract(request.message_id, request.raw_blob_ref)
        keys_after_first = s3_client.keys("incoming/")
        second = await extractor.extract(request.message_id, request.raw_blob_ref)

        assert [d.key for d in first] == [d.key for d in second]
        assert s3_client.keys("incoming/") == keys_after_first

    @pytest.mark.asyncio
    async def test_filenames_sanitized(self, object_store: ObjectStore, artifacts: ArtifactStore):
        raw = build_multipart_email(
            body_text="",
            message_id=MESSAGE_ID,
            attachments=[("lab results (1).pdf", "application/pdf", b"%PDF")],
        )
        request = await _stage_raw(object_store, artifacts, raw)
        documents = await MimeExtractor(object_store, MimeParser()).extract(MESSAGE_ID, request.raw_blob_ref)
        assert documents[0].key.endswith("/00-lab_results__1_.pdf")


class TestExtractionWorkerProcess:
    @pytest.mark.asyncio
    async def test_marks_artifact_extracted(
        self,
        worker: ExtractionWorker,
        object_store: ObjectStore,
        artifacts: ArtifactStore,
        multipart_eml_bytes: bytes,
    ):
        request = await _stage_raw(object_store, artifacts, multipart_eml_bytes)
        await worker._process(request)

        artifact = await artifacts.load(MESSAGE_ID)
        assert artifact.status == ExtractionStatus.EXTRACTED
        assert len(artifact.document_keys) == 3
        assert worker._messages_processed == 1

    @pytest.mark.asyncio
    async def test_malformed_mail_marks_failed_and_writes_nothing(
        self,
        worker: ExtractionWorker,
        object_store: ObjectStore,
        artifacts: ArtifactStore,
        s3_client: FakeS3Client,
        publisher: AsyncMock,
    ):
        raw = (
            b"From: lab@example.org\r\n"
            b"Message-ID: <multi-001@example.org>\r\n"
            b"Content-Type: multipart/mixed\r\n"
            b"\r\n"
            b"garbage\r\n"
        )
        request = await _stage_raw(object_store, artifacts, raw)
        await worker._process(request)

        artifact = await artifacts.load(MESSAGE_ID)
        assert artifact.status == ExtractionStatus.FAILED
        assert "malformed" in artifact.error
        assert s3_client.keys("incoming/") == []
        assert worker._messages_failed == 1

    @pytest.mark.asyncio
    async def test_settled_artifact_skipped(
        self,
        worker: ExtractionWorker,
        object_store: ObjectStore,
        artifacts: ArtifactStore,
        s3_client: FakeS3Client,
        multipart_eml_bytes: bytes,
    ):
        request = await _stage_raw(object_store, artifacts, multipart_eml_bytes)
        artifact = await artifacts.load(MESSAGE_ID)
        artifact.status = ExtractionStatus.FAILED
        await artifacts.save(artifact)

        await worker._process(request)
        assert s3_client.keys("incoming/") == []
        assert worker._messages_skipped == 1

    @pytest.mark.asyncio
    async def test_storage_failure_retried_then_alerted(
        self,
        worker: ExtractionWorker,
        object_store: ObjectStore,
        artifacts: ArtifactStore,
        s3_client: FakeS3Client,
        publisher: AsyncMock,
        multipart_eml_bytes: bytes,
    ):
        request = await _stage_raw(object_store, artifacts, multipart_eml_bytes)
        s3_client.put_failures = 10

        with pytest.raises(ClientError):
            await worker._process(request)

        assert s3_client.put_failures == 7
        publisher.send_alert.assert_awaited_once()
        s3_client.put_failures = 0
        assert (await artifacts.load(MESSAGE_ID)).status == ExtractionStatus.PENDING

    @pytest.mark.asyncio
    async def test_storage_failure_recovers_within_budget(
        self,
        worker: ExtractionWorker,
        object_store: ObjectStore,
        artifacts: ArtifactStore,
        s3_client: FakeS3Client,
        multipart_eml_bytes: bytes,
    ):
        request = await _stage_raw(object_store, artifacts, multipart_eml_bytes)
        s3_client.put_failures = 1
        await worker._process(request)
        assert (await artifacts.load(MESSAGE_ID)).status == ExtractionStatus.EXTRACTED


class TestExtractionConsumeLoop:
    @pytest.mark.asyncio
    async def test_invalid_request_committed(self, worker: ExtractionWorker):
        msg = MagicMock()
        msg.value = b"not json"
        msg.offset = 7

        worker._consumer = AsyncMock()
        worker._consumer.commit = AsyncMock()

        async def fake_consumer():
            yield msg

        worker._consumer.__aiter__ = lambda self: fake_consumer()

        await worker._consume_loop()

        worker._consumer.commit.assert_awaited_once()
        assert worker._messages_failed == 1
        assert worker._shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_processes_and_commits(
        self,
        worker: ExtractionWorker,
        object_store: ObjectStore,
        artifacts: ArtifactStore,
        multipart_eml_bytes: bytes,
    ):
        request = await _stage_raw(object_store, artifacts, multipart_eml_bytes)
        msg = MagicMock()
        msg.value = request.model_dump_json().encode()

        worker._consumer = AsyncMock()
        worker._consumer.commit = AsyncMock()

        async def fake_consumer():
            yield msg

        worker._consumer.__aiter__ = lambda self: fake_consumer()

        await worker._consume_loop()

        assert worker._messages_processed == 1
        worker._consumer.commit.assert_awaited_once()
