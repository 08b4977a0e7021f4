"""Full MIME parser for the extraction stage — walks the entire message and
returns the parts that become document objects, in a stable order.
"""

from __future__ import annotations

import email
import email.errors
import email.message
import email.policy
from dataclasses import dataclass, field

from carebridge_framework import ExtractionError

# Structural defects after which the part boundaries cannot be trusted.
_FATAL_DEFECTS = (
    email.errors.NoBoundaryInMultipartDefect,
    email.errors.StartBoundaryNotFoundDefect,
    email.errors.MultipartInvariantViolationDefect,
)


@dataclass
class ExtractedPart:
    """One MIME part destined to become a document object."""

    part_index: int
    filename: str
    content_type: str
    payload: bytes


@dataclass
class ParsedEmail:
    """Structured representation of a fully parsed email."""

    message_id: str
    subject: str
    from_address: str
    body_text: str | None
    parts: list[ExtractedPart] = field(default_factory=list)


class MimeParser:
    """Stateless parser: raw RFC 822 bytes → ParsedEmail.

    Part indexes follow MIME walk order (body first, then attachments), so
    parsing the same bytes twice yields the same indexes.
    """

    def __init__(self, *, include_body_text: bool = True) -> None:
        self._include_body_text = include_body_text

    def parse(self, raw_bytes: bytes) -> ParsedEmail:
        if not raw_bytes or not raw_bytes.strip():
            raise ExtractionError("empty message")

        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
        self._check_structure(msg)

        try:
            body_text = self._extract_body_text(msg)
            attachments = self._extract_attachments(msg)
        except (LookupError, UnicodeError, ValueError) as exc:
            raise ExtractionError(f"undecodable MIME part: {exc}") from exc

        parts: list[ExtractedPart] = []
        if self._include_body_text and body_text and body_text.strip():
            parts.append(
                ExtractedPart(
                    part_index=0,
                    filename="body.txt",
                    content_type="text/plain",
                    payload=body_text.encode("utf-8"),
                )
            )
        for filename, content_type, payload in attachments:
            parts.append(
                ExtractedPart(
                    part_index=len(parts),
                    filename=filename,
                    content_type=content_type,
                    payload=payload,
                )
            )

        return ParsedEmail(
            message_id=str(msg.get("Message-ID", "")).strip(),
            subject=str(msg.get("Subject", "")),
            from_address=str(msg.get("From", "")),
            body_text=body_text,
            parts=parts,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_structure(self, msg: email.message.Message) -> None:
        if not msg.keys():
            raise ExtractionError("no RFC 822 headers found")
        for part in msg.walk():
            for defect in part.defects:
                if isinstance(defect, _FATAL_DEFECTS):
                    raise ExtractionError(f"malformed MIME structure: {type(defect).__name__}")

    # ------------------------------------------------------------------
    # Body and attachments
    # ------------------------------------------------------------------

    def _extract_body_text(self, msg: email.message.Message) -> str | None:
        """Return the first inline text/plain part."""
        if not msg.is_multipart():
            if msg.get_content_type() == "text/plain" and not self._is_attachment(msg):
                payload = msg.get_content()
                return payload if isinstance(payload, str) else None
            return None

        for part in msg.walk():
            # Multipart containers carry no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if self._is_attachment(part):
                continue
            if part.get_content_type() == "text/plain":
                payload = part.get_content()
                if isinstance(payload, str):
                    return payload
        return None

    def _extract_attachments(self, msg: email.message.Message) -> list[tuple[str, str, bytes]]:
        """Walk MIME parts and collect (filename, content_type, payload)."""
        attachments: list[tuple[str, str, bytes]] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if not self._is_attachment(part):
                continue

            payload = part.get_content()
            if isinstance(payload, bytes):
                raw = payload
            elif isinstance(payload, str):
                raw = payload.encode("utf-8")
            elif isinstance(payload, email.message.Message):
                # message/rfc822 attachment: keep the embedded message verbatim
                raw = payload.as_bytes()
            else:
                continue

            attachments.append((
                part.get_filename() or f"attachment-{len(attachments)}",
                part.get_content_type(),
                raw,
            ))

        return attachments

    @staticmethod
    def _is_attachment(part: email.message.Message) -> bool:
        """Content-Disposition: attachment, or a named part."""
        disposition = str(part.get("Content-Disposition", ""))
        return "attachment" in disposition.lower() or bool(part.get_filename())
