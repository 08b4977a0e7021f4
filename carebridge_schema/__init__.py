from .execution import (
    NEXT_STATE,
    RECORDED_OUTCOME,
    STAGE_FOR_STATE,
    TERMINAL_STATUS,
    ExecutionFailure,
    ExecutionStatus,
    HandlerOutcome,
    InvocationOutcome,
    OperationalAlert,
    PipelineExecution,
    PipelineState,
    QuarantineRecord,
    StageAttempt,
    StageInvocation,
    StageName,
    StageRequest,
    StageResponse,
)
from .intake import (
    ExtractionRequest,
    ExtractionStatus,
    InboundEmail,
    IntakeAck,
    RawEmailArtifact,
)
from .storage import (
    UNZONED,
    AccessGrant,
    DocumentObject,
    EventType,
    GrantRequest,
    Provenance,
    StorageNotification,
    Zone,
)

__all__ = [
    "NEXT_STATE",
    "RECORDED_OUTCOME",
    "STAGE_FOR_STATE",
    "TERMINAL_STATUS",
    "UNZONED",
    "AccessGrant",
    "DocumentObject",
    "EventType",
    "ExecutionFailure",
    "ExecutionStatus",
    "ExtractionRequest",
    "ExtractionStatus",
    "GrantRequest",
    "HandlerOutcome",
    "InboundEmail",
    "IntakeAck",
    "InvocationOutcome",
    "OperationalAlert",
    "PipelineExecution",
    "PipelineState",
    "Provenance",
    "QuarantineRecord",
    "RawEmailArtifact",
    "StageAttempt",
    "StageInvocation",
    "StageName",
    "StageRequest",
    "StageResponse",
    "StorageNotification",
    "Zone",
]
