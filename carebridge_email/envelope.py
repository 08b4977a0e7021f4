"""Envelope helpers for raw EML bytes.

The intake adapter only needs an identifier, so the Message-ID is read with
``email.parser.BytesHeaderParser``, which stops at the end of the headers
instead of walking the MIME body.
"""

from __future__ import annotations

import email.parser
import email.utils
import hashlib
import re


def message_id_from_headers(raw_bytes: bytes) -> str:
    """Return the message's Message-ID, or a content-derived id without one."""
    headers = email.parser.BytesHeaderParser().parsebytes(raw_bytes)
    message_id = str(headers.get("Message-ID", "")).strip()
    if message_id:
        return message_id
    digest = hashlib.sha256(raw_bytes).hexdigest()
    return f"<sha256-{digest}@carebridge.invalid>"


def normalize_address(address: str) -> str:
    """Strip any display name and lower-case an address."""
    _, addr = email.utils.parseaddr(address)
    return (addr or address).strip().lower()


def message_key(message_id: str) -> str:
    """Deterministic, S3-safe key segment for a Message-ID.

    A readable sanitized prefix plus a digest of the exact id, so distinct
    ids that sanitize identically still map to distinct keys.
    """
    exact = message_id.strip()
    readable = re.sub(r"[^\w.\-@]", "_", exact.strip("<>"))[:64]
    digest = hashlib.sha256(exact.encode("utf-8")).hexdigest()[:12]
    return f"{readable}-{digest}"

