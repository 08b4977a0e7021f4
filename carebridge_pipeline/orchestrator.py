"""Workflow orchestrator — drives one execution through the fixed stage order.

    Started -> Routing -> Splitting -> GuardrailCheck -> Ingesting -> Succeeded

Any stage may end the run instead: ``Reject`` moves it to Quarantined,
``PermanentError`` or an exhausted retry budget to Failed.

Every transition and every attempt is committed to the execution store
before the next handler is dispatched, so a restarted orchestrator resumes
from the last committed state without re-running accepted stages.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from carebridge_framework import (
    AlertPublisher,
    BusinessRejection,
    ConcurrentUpdateError,
    ObjectStore,
    PermanentStageError,
    TransientStageError,
    execution_context,
    parse_s3_uri,
    retrying,
    with_retry,
)
from carebridge_schema import (
    NEXT_STATE,
    RECORDED_OUTCOME,
    STAGE_FOR_STATE,
    TERMINAL_STATUS,
    ExecutionFailure,
    HandlerOutcome,
    InvocationOutcome,
    PipelineExecution,
    PipelineState,
    QuarantineRecord,
    StageAttempt,
    StageInvocation,
    StageRequest,
    StageResponse,
    StorageNotification,
)

from .config import PipelineConfig, StageConfig
from .handlers import StageHandlerRegistry
from .store import ExecutionStore

logger = structlog.get_logger()

_STORAGE_ERRORS = (BotoCoreError, ClientError, OSError)


def _now() -> datetime:
    return datetime.now(UTC)


class WorkflowOrchestrator:
    """Start, run and resume pipeline executions."""

    def __init__(
        self,
        config: PipelineConfig,
        store: ExecutionStore,
        handlers: StageHandlerRegistry,
        objects: ObjectStore,
        alerts: AlertPublisher,
    ) -> None:
        self._config = config
        self._store = store
        self._handlers = handlers
        self._objects = objects
        self._alerts = alerts

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start(self, notification: StorageNotification) -> PipelineExecution | None:
        """Create a Running execution for an accepted notification.

        Returns None when the notification is a duplicate inside the dedup
        window or the document already has a Running execution.
        """
        execution = await self._store.start_execution(
            notification.document_key,
            notification.hash,
        )
        if execution is not None:
            logger.info(
                "execution_started",
                execution_id=execution.execution_id,
                document_key=execution.document_key,
            )
        return execution

    async def run(self, execution: PipelineExecution) -> PipelineExecution:
        """Drive *execution* until it reaches a terminal state."""
        with execution_context(execution.execution_id, execution.document_key):
            try:
                while not execution.is_terminal:
                    await self._step(execution)
            except ConcurrentUpdateError:
                logger.warning("execution_modified_elsewhere", state=execution.state.value)
                raise
        return execution

    async def resume(self) -> list[PipelineExecution]:
        """Drive every Running execution found in the store to completion.

        Returns the executions that settled.  One that fails to settle is
        logged and left Running for the next resume; it never stops the
        others.
        """
        running = await self._store.list_running()
        if running:
            logger.info("executions_resuming", count=len(running))
        results = await asyncio.gather(
            *(self.run(execution) for execution in running),
            return_exceptions=True,
        )

        settled: list[PipelineExecution] = []
        for execution, result in zip(running, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "execution_resume_failed",
                    execution_id=execution.execution_id,
                    document_key=execution.document_key,
                    error=repr(result),
                )
                continue
            settled.append(result)
        return settled

    async def abandon(self, execution: PipelineExecution, cause: str) -> PipelineExecution:
        """Fail an execution that could not be driven to a terminal state.

        Reloads the committed record, marks it Failed at its current stage
        and raises an operational alert.
        """
        latest = await self._store.get(execution.execution_id) or execution
        if latest.is_terminal:
            return latest
        stage = latest.current_stage
        invocation = latest.invocation(stage) if stage is not None else None
        with execution_context(latest.execution_id, latest.document_key):
            latest.failure = ExecutionFailure(stage=stage, cause=cause)
            self._finish(latest, PipelineState.FAILED)
            await self._store.save(latest)
            logger.error(
                "execution_abandoned",
                stage=stage.value if stage else None,
                cause=cause,
            )
        await self._alerts.raise_alert(
            latest.document_key,
            cause=cause,
            execution_id=latest.execution_id,
            stage=stage,
            attempts=invocation.attempt_count if invocation else None,
        )
        return latest

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _step(self, execution: PipelineExecution) -> None:
        if execution.state == PipelineState.STARTED:
            self._enter(
                execution,
                NEXT_STATE[PipelineState.STARTED],
                input_ref=self._objects.uri(execution.document_key),
            )
            await self._store.save(execution)
            return

        stage = STAGE_FOR_STATE[execution.state]
        invocation = execution.invocation(stage)
        assert invocation is not None, f"no invocation recorded for {stage.value}"

        response = await self._invoke_with_retry(execution, invocation)
        await self._settle(execution, invocation, response)

    def _enter(self, execution: PipelineExecution, state: PipelineState, *, input_ref: str) -> None:
        execution.state = state
        execution.history.append(StageInvocation(stage=STAGE_FOR_STATE[state], input_ref=input_ref))

    def _finish(self, execution: PipelineExecution, state: PipelineState) -> None:
        execution.state = state
        execution.status = TERMINAL_STATUS[state]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _invoke_with_retry(
        self,
        execution: PipelineExecution,
        invocation: StageInvocation,
    ) -> StageResponse:
        stage_config = self._config.stages.for_stage(invocation.stage)

        interrupted = invocation.in_flight_attempt
        if interrupted is not None:
            # The process stopped before this attempt's outcome was recorded.
            interrupted.completed_at = _now()
            interrupted.outcome = InvocationOutcome.TRANSIENT_ERROR
            interrupted.reason = "interrupted before completion"
            await self._store.save(execution)
            logger.warning(
                "stage_attempt_interrupted",
                stage=invocation.stage.value,
                attempt=interrupted.attempt,
            )

        remaining = stage_config.max_attempts - invocation.attempt_count
        if remaining <= 0:
            return StageResponse.transient("retry budget exhausted")

        try:
            async for attempt in retrying(
                self._config.retry,
                max_attempts=remaining,
                retryable_exceptions=(TransientStageError,),
            ):
                with attempt:
                    response = await self._attempt(execution, invocation, stage_config)
                    if response.outcome == HandlerOutcome.TRANSIENT_ERROR:
                        raise TransientStageError(invocation.stage.value, response.reason or "")
        except TransientStageError as exc:
            logger.warning(
                "stage_retries_exhausted",
                stage=invocation.stage.value,
                attempts=invocation.attempt_count,
            )
            return StageResponse.transient(exc.cause)
        return response

    async def _attempt(
        self,
        execution: PipelineExecution,
        invocation: StageInvocation,
        stage_config: StageConfig,
    ) -> StageResponse:
        number = invocation.attempt_count + 1
        started = _now()
        record = StageAttempt(attempt=number, started_at=started)
        invocation.attempt_count = number
        invocation.started_at = invocation.started_at or started
        invocation.attempts.append(record)
        await self._store.save(execution)

        request = StageRequest(
            document_key=execution.document_key,
            execution_id=execution.execution_id,
            stage_name=invocation.stage,
            input_ref=invocation.input_ref,
            attempt=number,
            stage_config=stage_config.handler_config(),
            output_prefix=self._output_prefix(execution, invocation),
        )
        handler = self._handlers.get(invocation.stage)
        logger.info("stage_dispatched", stage=invocation.stage.value, attempt=number)

        try:
            response = await asyncio.wait_for(
                handler.invoke(request),
                timeout=stage_config.timeout_seconds,
            )
        except TimeoutError:
            response = StageResponse.transient(
                f"no response within {stage_config.timeout_seconds}s"
            )
        except TransientStageError as exc:
            response = StageResponse.transient(exc.cause)
        except BusinessRejection as exc:
            response = StageResponse.reject(exc.cause)
        except PermanentStageError as exc:
            response = StageResponse.permanent(exc.cause)
        except Exception as exc:
            logger.warning(
                "stage_handler_raised",
                stage=invocation.stage.value,
                error=repr(exc),
            )
            response = StageResponse.transient(f"handler raised {exc!r}")

        response = self._check_output(response)

        record.completed_at = _now()
        record.outcome = RECORDED_OUTCOME[response.outcome]
        record.reason = response.reason
        if response.outcome == HandlerOutcome.TRANSIENT_ERROR:
            await self._store.save(execution)
            logger.warning(
                "stage_attempt_transient",
                stage=invocation.stage.value,
                attempt=number,
                reason=response.reason,
            )
        return response

    def _output_prefix(self, execution: PipelineExecution, invocation: StageInvocation) -> str:
        key = self._objects.zone_key(
            self._config.storage.pipeline_zone,
            f"{execution.execution_id}/{invocation.stage.value}/",
        )
        return self._objects.uri(key)

    def _check_output(self, response: StageResponse) -> StageResponse:
        """Refuse output written where it would trigger a new execution."""
        if response.outcome != HandlerOutcome.ACCEPT or not response.output_ref:
            return response
        if not response.output_ref.startswith("s3://"):
            return response
        try:
            bucket, key = parse_s3_uri(response.output_ref)
        except ValueError:
            return StageResponse.permanent(f"malformed output_ref {response.output_ref!r}")
        if bucket == self._objects.bucket and self._objects.zones.triggering_zone.contains(key):
            return StageResponse.permanent(
                f"output_ref {response.output_ref!r} is inside the triggering zone"
            )
        return response

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _settle(
        self,
        execution: PipelineExecution,
        invocation: StageInvocation,
        response: StageResponse,
    ) -> None:
        invocation.completed_at = _now()
        invocation.outcome = RECORDED_OUTCOME[response.outcome]
        invocation.reason = response.reason

        if response.outcome == HandlerOutcome.ACCEPT:
            await self._advance(execution, invocation, response.output_ref or "")
        elif response.outcome == HandlerOutcome.REJECT:
            await self._quarantine(execution, invocation, response.reason or "rejected")
        else:
            await self._fail(execution, invocation, response.reason or response.outcome.value)

    async def _advance(
        self,
        execution: PipelineExecution,
        invocation: StageInvocation,
        output_ref: str,
    ) -> None:
        invocation.output_ref = output_ref
        next_state = NEXT_STATE[execution.state]
        if next_state in TERMINAL_STATUS:
            self._finish(execution, next_state)
        else:
            self._enter(execution, next_state, input_ref=output_ref)
        await self._store.save(execution)

        logger.info(
            "stage_accepted",
            stage=invocation.stage.value,
            attempts=invocation.attempt_count,
            output_ref=output_ref,
        )
        if execution.is_terminal:
            logger.info("execution_succeeded")

    async def _quarantine(
        self,
        execution: PipelineExecution,
        invocation: StageInvocation,
        reason: str,
    ) -> None:
        record = QuarantineRecord(
            document_key=execution.document_key,
            execution_id=execution.execution_id,
            stage=invocation.stage,
            reason=reason,
        )
        key = self._objects.zone_key(
            self._config.storage.quarantine_zone,
            f"{execution.execution_id}.json",
        )

        @with_retry(self._config.retry, retryable_exceptions=_STORAGE_ERRORS)
        async def _write() -> None:
            await self._objects.put_json(key, record)

        await _write()

        self._finish(execution, PipelineState.QUARANTINED)
        await self._store.save(execution)
        logger.warning(
            "execution_quarantined",
            stage=invocation.stage.value,
            reason=reason,
            quarantine_key=key,
        )

    async def _fail(
        self,
        execution: PipelineExecution,
        invocation: StageInvocation,
        cause: str,
    ) -> None:
        execution.failure = ExecutionFailure(stage=invocation.stage, cause=cause)
        self._finish(execution, PipelineState.FAILED)
        await self._store.save(execution)
        logger.error(
            "execution_failed",
            stage=invocation.stage.value,
            outcome=invocation.outcome.value if invocation.outcome else None,
            cause=cause,
        )
        await self._alerts.raise_alert(
            execution.document_key,
            cause=cause,
            execution_id=execution.execution_id,
            stage=invocation.stage,
            attempts=invocation.attempt_count,
        )
