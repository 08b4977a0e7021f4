"""Abstract base class for stage handlers."""

from __future__ import annotations

from abc import ABC, abstractmethod

from carebridge_schema import StageName, StageRequest, StageResponse


class StageHandler(ABC):
    """Run one pipeline stage for one document.

    Handlers report every result, including failures, as a
    :class:`StageResponse`; the orchestrator decides what happens next.
    """

    @property
    @abstractmethod
    def stage(self) -> StageName:
        """The stage this handler implements."""

    @abstractmethod
    async def invoke(self, request: StageRequest) -> StageResponse:
        """Process ``request.input_ref`` and write output under ``request.output_prefix``.

        Must be idempotent for a given ``(execution_id, stage_name)``: a
        retried attempt may follow one whose outcome was lost.
        """

    async def start(self) -> None:
        """Acquire connections.  No-op by default."""

    async def stop(self) -> None:
        """Release connections.  No-op by default."""
