"""Carebridge Email — intake adapter and MIME extraction stage (claim-check pattern)."""

from .artifacts import ArtifactStore
from .config import ExtractorConfig, IntakeConfig
from .envelope import message_id_from_headers, message_key, normalize_address
from .extraction import ExtractionWorker, MimeExtractor
from .intake import EmailIntakeAdapter, create_intake_app
from .parser import ExtractedPart, MimeParser, ParsedEmail

__all__ = [
    "ArtifactStore",
    "EmailIntakeAdapter",
    "ExtractedPart",
    "ExtractionWorker",
    "ExtractorConfig",
    "IntakeConfig",
    "MimeExtractor",
    "MimeParser",
    "ParsedEmail",
    "create_intake_app",
    "message_id_from_headers",
    "message_key",
    "normalize_address",
]
