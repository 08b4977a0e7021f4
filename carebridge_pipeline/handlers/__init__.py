"""Stage handlers for the pipeline orchestrator."""

from .base import StageHandler
from .http import HttpStageHandler, create_http_handlers
from .registry import StageHandlerRegistry

__all__ = [
    "HttpStageHandler",
    "StageHandler",
    "StageHandlerRegistry",
    "create_http_handlers",
]
