"""Tests for carebridge_email.parser and carebridge_email.envelope."""

from __future__ import annotations

import pytest

from carebridge_email import MimeParser, message_id_from_headers, message_key, normalize_address
from carebridge_framework import ExtractionError

from tests.conftest import build_multipart_email, build_plain_email


@pytest.fixture
def parser() -> MimeParser:
    return MimeParser()


class TestEnvelope:
    def test_message_id_from_headers(self, plain_eml_bytes: bytes):
        assert message_id_from_headers(plain_eml_bytes) == "<plain-001@example.org>"

    def test_message_id_falls_back_to_content_digest(self):
        raw = b"From: clinic@example.org\r\nSubject: no id\r\n\r\nbody\r\n"
        first = message_id_from_headers(raw)
        assert first.startswith("<sha256-")
        assert first == message_id_from_headers(raw)
        assert first != message_id_from_headers(raw + b"more")

    def test_normalize_address(self):
        assert normalize_address("Intake Desk <Intake@CareBridge.test>") == "intake@carebridge.test"
        assert normalize_address("  INTAKE@carebridge.test ") == "intake@carebridge.test"

    def test_message_key_is_deterministic(self):
        assert message_key("<a@b>") == message_key("<a@b>")
        assert message_key("<a@b>").startswith("a@b-")

    def test_message_key_distinguishes_ids_that_sanitize_alike(self):
        assert message_key("<a/b@x>") != message_key("<a?b@x>")


class TestMimeParserPlainText:
    def test_body_becomes_part_zero(self, parser: MimeParser, plain_eml_bytes: bytes):
        result = parser.parse(plain_eml_bytes)
        assert result.message_id == "<plain-001@example.org>"
        assert result.subject == "Referral"
        assert len(result.parts) == 1
        part = result.parts[0]
        assert part.part_index == 0
        assert part.filename == "body.txt"
        assert part.content_type == "text/plain"
        assert part.payload.decode().strip() == "Please see the attached referral."

    def test_body_excluded_when_disabled(self, plain_eml_bytes: bytes):
        assert MimeParser(include_body_text=False).parse(plain_eml_bytes).parts == []

    def test_blank_body_produces_no_part(self, parser: MimeParser):
        assert parser.parse(build_plain_email(body="   \n")).parts == []


class TestMimeParserMultipart:
    def test_body_then_attachments(self, parser: MimeParser, multipart_eml_bytes: bytes):
        result = parser.parse(multipart_eml_bytes)
        assert [(p.part_index, p.filename) for p in result.parts] == [
            (0, "body.txt"),
            (1, "report.pdf"),
            (2, "labs.csv"),
        ]
        assert result.parts[1].content_type == "application/pdf"
        assert result.parts[1].payload == b"%PDF-1.4 fake pdf content"

    def test_two_attachments_without_body(self, parser: MimeParser):
        raw = build_multipart_email(
            body_text="",
            attachments=[
                ("a.pdf", "application/pdf", b"%PDF a"),
                ("b.pdf", "application/pdf", b"%PDF b"),
            ],
        )
        result = parser.parse(raw)
        assert [(p.part_index, p.filename) for p in result.parts] == [(0, "a.pdf"), (1, "b.pdf")]

    def test_indexes_stable_across_parses(self, parser: MimeParser, multipart_eml_bytes: bytes):
        first = [(p.part_index, p.filename) for p in parser.parse(multipart_eml_bytes).parts]
        second = [(p.part_index, p.filename) for p in parser.parse(multipart_eml_bytes).parts]
        assert first == second


class TestMimeParserMalformed:
    def test_empty_input(self, parser: MimeParser):
        with pytest.raises(ExtractionError, match="empty"):
            parser.parse(b"")

    def test_no_headers(self, parser: MimeParser):
        with pytest.raises(ExtractionError, match="headers"):
            parser.parse(b"just some text without any headers")

    def test_multipart_without_boundary(self, parser: MimeParser):
        raw = (
            b"From: lab@example.org\r\n"
            b"Message-ID: <broken@example.org>\r\n"
            b"Content-Type: multipart/mixed\r\n"
            b"\r\n"
            b"no boundary anywhere\r\n"
        )
        with pytest.raises(ExtractionError, match="malformed MIME structure"):
            parser.parse(raw)
