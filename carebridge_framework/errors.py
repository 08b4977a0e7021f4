"""Exception taxonomy shared by all Carebridge services.

A notification the ingress filter ignores is not an error and has no
exception here; it is an ``Ignore`` decision.
"""

from __future__ import annotations


class CarebridgeError(Exception):
    """Base exception for all Carebridge errors."""


class ConfigurationError(CarebridgeError, ValueError):
    """Invalid configuration detected at startup."""


class StageError(CarebridgeError):
    """A stage handler invocation did not succeed."""

    def __init__(self, stage: str, cause: str) -> None:
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


class TransientStageError(StageError):
    """Retryable: timeout, transport failure, or handler-reported TransientError."""


class PermanentStageError(StageError):
    """Not retryable: the execution moves to Failed."""


class BusinessRejection(StageError):
    """A stage decided to halt processing for policy reasons."""


class ExtractionError(CarebridgeError):
    """Raw email content could not be parsed into document objects."""


class RecipientRejected(CarebridgeError):
    """Inbound email addressed to an unrecognised recipient."""


class GrantRefused(CarebridgeError):
    """An upload grant was requested for a key outside the triggering zone."""


class ConcurrentUpdateError(CarebridgeError):
    """The execution record changed since it was loaded."""

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"execution {execution_id} was modified concurrently")
        self.execution_id = execution_id
