"""Carebridge service framework.

Infrastructure shared by every Carebridge service, re-exported here for
convenience::

    from carebridge_framework import ObjectStore, StorageConfig, setup_logging
"""

from .alerts import AlertPublisher
from .config import KafkaConfig, RetryConfig, StorageConfig
from .errors import (
    BusinessRejection,
    CarebridgeError,
    ConcurrentUpdateError,
    ConfigurationError,
    ExtractionError,
    GrantRefused,
    PermanentStageError,
    RecipientRejected,
    StageError,
    TransientStageError,
)
from .health import create_health_app, serve_until
from .kafka_producer import EventPublisher
from .logging import execution_context, setup_logging
from .retry import retrying, with_retry
from .shutdown import install_signal_handlers
from .storage import ObjectStore, parse_s3_uri, sanitize_filename
from .zones import ZoneRegistry

__all__ = [
    "AlertPublisher",
    "BusinessRejection",
    "CarebridgeError",
    "ConcurrentUpdateError",
    "ConfigurationError",
    "EventPublisher",
    "ExtractionError",
    "GrantRefused",
    "KafkaConfig",
    "ObjectStore",
    "PermanentStageError",
    "RecipientRejected",
    "RetryConfig",
    "StageError",
    "StorageConfig",
    "TransientStageError",
    "ZoneRegistry",
    "create_health_app",
    "execution_context",
    "install_signal_handlers",
    "parse_s3_uri",
    "retrying",
    "sanitize_filename",
    "serve_until",
    "setup_logging",
    "with_retry",
]
