"""Stage handler registry — maps stage names to handler instances."""

from __future__ import annotations

import structlog

from carebridge_framework import ConfigurationError
from carebridge_schema import StageName

from .base import StageHandler

logger = structlog.get_logger()


class StageHandlerRegistry:
    """Registry of stage handlers, keyed by stage name."""

    def __init__(self) -> None:
        self._handlers: dict[StageName, StageHandler] = {}

    def register(self, handler: StageHandler) -> None:
        """Register a handler for its stage, replacing any earlier one."""
        self._handlers[handler.stage] = handler
        logger.info("stage_handler_registered", stage=handler.stage.value)

    def get(self, stage: StageName) -> StageHandler:
        try:
            return self._handlers[stage]
        except KeyError:
            raise ConfigurationError(f"no handler registered for stage {stage.value!r}") from None

    @property
    def stages(self) -> list[StageName]:
        return list(self._handlers.keys())

    def validate_complete(self) -> None:
        """Raise :class:`ConfigurationError` unless every stage has a handler."""
        missing = [stage.value for stage in StageName if stage not in self._handlers]
        if missing:
            raise ConfigurationError(f"missing stage handlers: {', '.join(missing)}")

    async def start_all(self) -> None:
        for handler in self._handlers.values():
            await handler.start()

    async def stop_all(self) -> None:
        for handler in self._handlers.values():
            await handler.stop()
