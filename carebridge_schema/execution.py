"""Pipeline execution models — the durable state machine record and the
stage handler wire contract.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


def _now() -> datetime:
    return datetime.now(UTC)


class PipelineState(str, Enum):
    STARTED = "Started"
    ROUTING = "Routing"
    SPLITTING = "Splitting"
    GUARDRAIL_CHECK = "GuardrailCheck"
    INGESTING = "Ingesting"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    QUARANTINED = "Quarantined"


class ExecutionStatus(str, Enum):
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    QUARANTINED = "Quarantined"


class StageName(str, Enum):
    ROUTER = "router"
    SPLITTER = "splitter"
    GUARDRAIL = "guardrail"
    INGEST = "ingest"


class HandlerOutcome(str, Enum):
    """Outcome a stage handler reports for one invocation."""

    ACCEPT = "Accept"
    REJECT = "Reject"
    TRANSIENT_ERROR = "TransientError"
    PERMANENT_ERROR = "PermanentError"


class InvocationOutcome(str, Enum):
    """Outcome recorded in the execution history."""

    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    TRANSIENT_ERROR = "TransientError"
    PERMANENT_ERROR = "PermanentError"


RECORDED_OUTCOME: dict[HandlerOutcome, InvocationOutcome] = {
    HandlerOutcome.ACCEPT: InvocationOutcome.ACCEPTED,
    HandlerOutcome.REJECT: InvocationOutcome.REJECTED,
    HandlerOutcome.TRANSIENT_ERROR: InvocationOutcome.TRANSIENT_ERROR,
    HandlerOutcome.PERMANENT_ERROR: InvocationOutcome.PERMANENT_ERROR,
}

# Fixed stage order: the state an execution is in while a stage runs, and
# the state it moves to once that stage accepts.
STAGE_FOR_STATE: dict[PipelineState, StageName] = {
    PipelineState.ROUTING: StageName.ROUTER,
    PipelineState.SPLITTING: StageName.SPLITTER,
    PipelineState.GUARDRAIL_CHECK: StageName.GUARDRAIL,
    PipelineState.INGESTING: StageName.INGEST,
}

NEXT_STATE: dict[PipelineState, PipelineState] = {
    PipelineState.STARTED: PipelineState.ROUTING,
    PipelineState.ROUTING: PipelineState.SPLITTING,
    PipelineState.SPLITTING: PipelineState.GUARDRAIL_CHECK,
    PipelineState.GUARDRAIL_CHECK: PipelineState.INGESTING,
    PipelineState.INGESTING: PipelineState.SUCCEEDED,
}

TERMINAL_STATUS: dict[PipelineState, ExecutionStatus] = {
    PipelineState.SUCCEEDED: ExecutionStatus.SUCCEEDED,
    PipelineState.FAILED: ExecutionStatus.FAILED,
    PipelineState.QUARANTINED: ExecutionStatus.QUARANTINED,
}


# ----------------------------------------------------------------------
# Execution history
# ----------------------------------------------------------------------


class StageAttempt(BaseModel):
    """One dispatch of a stage handler."""

    attempt: int = Field(ge=1)
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None
    outcome: InvocationOutcome | None = Field(
        default=None,
        description="None while the attempt is in flight",
    )
    reason: str | None = None


class StageInvocation(BaseModel):
    """All attempts of one stage within one execution."""

    stage: StageName
    input_ref: str = Field(description="Reference to the stage's input content")
    output_ref: str | None = None
    attempt_count: int = Field(default=0, ge=0)
    outcome: InvocationOutcome | None = Field(
        default=None,
        description="Final outcome; None until the stage settles",
    )
    reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: list[StageAttempt] = Field(default_factory=list)

    @property
    def in_flight_attempt(self) -> StageAttempt | None:
        if self.attempts and self.attempts[-1].outcome is None:
            return self.attempts[-1]
        return None


class ExecutionFailure(BaseModel):
    stage: StageName | None = None
    cause: str


class PipelineExecution(BaseModel):
    """Durable record of one end-to-end run for one document."""

    execution_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    document_key: str
    content_hash: str = ""
    state: PipelineState = PipelineState.STARTED
    status: ExecutionStatus = ExecutionStatus.RUNNING
    history: list[StageInvocation] = Field(default_factory=list)
    failure: ExecutionFailure | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    version: int = Field(default=0, description="Optimistic concurrency token")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATUS

    @property
    def current_stage(self) -> StageName | None:
        return STAGE_FOR_STATE.get(self.state)

    def invocation(self, stage: StageName) -> StageInvocation | None:
        """Return the invocation record for *stage*, if it has started."""
        for record in reversed(self.history):
            if record.stage == stage:
                return record
        return None


# ----------------------------------------------------------------------
# Stage handler contract
# ----------------------------------------------------------------------


class StageRequest(BaseModel):
    document_key: str
    execution_id: str
    stage_name: StageName
    input_ref: str = Field(description="Output reference of the prior stage (or the document)")
    attempt: int = Field(ge=1)
    stage_config: dict[str, Any] = Field(default_factory=dict)
    output_prefix: str = Field(
        description="s3:// prefix under which the handler writes its output",
    )


class StageResponse(BaseModel):
    outcome: HandlerOutcome
    output_ref: str | None = None
    reason: str | None = None

    @model_validator(mode="after")
    def _check_outcome_fields(self) -> StageResponse:
        if self.outcome == HandlerOutcome.ACCEPT and not self.output_ref:
            raise ValueError("Accept requires an output_ref")
        if self.outcome == HandlerOutcome.REJECT and not self.reason:
            raise ValueError("Reject requires a reason")
        return self

    @classmethod
    def accept(cls, output_ref: str) -> StageResponse:
        return cls(outcome=HandlerOutcome.ACCEPT, output_ref=output_ref)

    @classmethod
    def reject(cls, reason: str) -> StageResponse:
        return cls(outcome=HandlerOutcome.REJECT, reason=reason)

    @classmethod
    def transient(cls, cause: str) -> StageResponse:
        return cls(outcome=HandlerOutcome.TRANSIENT_ERROR, reason=cause)

    @classmethod
    def permanent(cls, cause: str) -> StageResponse:
        return cls(outcome=HandlerOutcome.PERMANENT_ERROR, reason=cause)


# ----------------------------------------------------------------------
# Operator-facing records
# ----------------------------------------------------------------------


class QuarantineRecord(BaseModel):
    """Written to the quarantine zone when a stage rejects a document."""

    document_key: str
    execution_id: str
    stage: StageName
    reason: str
    timestamp: datetime = Field(default_factory=_now)


class OperationalAlert(BaseModel):
    """Published to the alert channel when work fails permanently."""

    source: str = Field(description="Service that raised the alert")
    subject: str = Field(description="Document key or message id the alert is about")
    cause: str
    execution_id: str | None = None
    stage: StageName | None = None
    attempts: int | None = None
    raised_at: datetime = Field(default_factory=_now)
