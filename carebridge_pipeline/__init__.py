"""Carebridge Pipeline — ingress filter, durable execution store, and the
orchestrator driving Routing → Splitting → GuardrailCheck → Ingesting.
"""

from .config import IngestStageConfig, PipelineConfig, StageConfig, StagesConfig
from .handlers import HttpStageHandler, StageHandler, StageHandlerRegistry, create_http_handlers
from .ingress import Accept, Decision, Ignore, IngressFilter, notifications_from_s3_event
from .orchestrator import WorkflowOrchestrator
from .service import PipelineService
from .store import ExecutionStore

__all__ = [
    "Accept",
    "Decision",
    "ExecutionStore",
    "HttpStageHandler",
    "Ignore",
    "IngestStageConfig",
    "IngressFilter",
    "PipelineConfig",
    "PipelineService",
    "StageConfig",
    "StageHandler",
    "StageHandlerRegistry",
    "StagesConfig",
    "WorkflowOrchestrator",
    "create_http_handlers",
    "notifications_from_s3_event",
]
