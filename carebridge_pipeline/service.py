"""PipelineService — consume storage notifications, filter, and drive executions."""

from __future__ import annotations

import asyncio
import json
import time
from datetime import timedelta
from typing import Any

import structlog
from aiokafka import AIOKafkaConsumer
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from carebridge_framework import (
    AlertPublisher,
    ConcurrentUpdateError,
    EventPublisher,
    ObjectStore,
    create_health_app,
    install_signal_handlers,
    retrying,
    serve_until,
    with_retry,
)
from carebridge_schema import ExecutionStatus, PipelineExecution, StorageNotification

from .config import PipelineConfig
from .handlers import StageHandlerRegistry, create_http_handlers
from .ingress import Ignore, IngressFilter, notifications_from_s3_event
from .orchestrator import WorkflowOrchestrator
from .store import ExecutionStore

logger = structlog.get_logger()

_RECOVERABLE_ERRORS = (SQLAlchemyError, BotoCoreError, ClientError, OSError)


class PipelineService:
    """Consume ``storage-events``, start executions for accepted notifications,
    and run them concurrently up to ``max_concurrent_executions``.

    Offsets are committed once the execution record exists; the record, not
    the Kafka offset, is what a restarted worker resumes from.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        store: ExecutionStore | None = None,
        objects: ObjectStore | None = None,
        publisher: EventPublisher | None = None,
        handlers: StageHandlerRegistry | None = None,
    ) -> None:
        self._config = config
        self._objects = objects or ObjectStore(config.storage)
        self._publisher = publisher or EventPublisher(config.kafka)
        self._alerts = AlertPublisher(self._publisher, "pipeline")
        self._store = store or ExecutionStore(
            config.database_url,
            dedup_window=timedelta(seconds=config.dedup_window_seconds),
        )
        self._handlers = handlers or create_http_handlers(config.stages)
        self._filter = IngressFilter(self._objects.zones)
        self._orchestrator = WorkflowOrchestrator(
            config,
            self._store,
            self._handlers,
            self._objects,
            self._alerts,
        )

        self._consumer: AIOKafkaConsumer | None = None
        self._shutdown_event = asyncio.Event()
        self._slots = asyncio.Semaphore(config.max_concurrent_executions)
        self._tasks: set[asyncio.Task] = set()

        self._notifications_accepted: int = 0
        self._notifications_ignored: int = 0
        self._notifications_collapsed: int = 0
        self._notifications_failed: int = 0
        self._outcomes: dict[ExecutionStatus, int] = {
            status: 0 for status in ExecutionStatus if status != ExecutionStatus.RUNNING
        }
        self._start_time: float = 0.0

    # ------------------------------------------------------------------
    # Public properties (used by health checks)
    # ------------------------------------------------------------------

    @property
    def notifications_accepted(self) -> int:
        return self._notifications_accepted

    @property
    def notifications_ignored(self) -> int:
        return self._notifications_ignored

    @property
    def notifications_collapsed(self) -> int:
        return self._notifications_collapsed

    @property
    def notifications_failed(self) -> int:
        return self._notifications_failed

    @property
    def executions_in_flight(self) -> int:
        return len(self._tasks)

    def executions_finished(self, status: ExecutionStatus) -> int:
        return self._outcomes.get(status, 0)

    @property
    def is_ready(self) -> bool:
        return self._consumer is not None

    def _health_details(self) -> dict[str, Any]:
        return {
            "notifications_accepted": self._notifications_accepted,
            "notifications_ignored": self._notifications_ignored,
            "notifications_collapsed": self._notifications_collapsed,
            "notifications_failed": self._notifications_failed,
            "executions_in_flight": self.executions_in_flight,
            **{f"executions_{status.value.lower()}": n for status, n in self._outcomes.items()},
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and process notifications until shutdown."""
        self._start_time = time.monotonic()
        install_signal_handlers(self._shutdown_event, service="pipeline")

        kafka_cfg = self._config.kafka
        self._consumer = AIOKafkaConsumer(
            kafka_cfg.storage_events_topic,
            bootstrap_servers=kafka_cfg.bootstrap_servers,
            group_id=self._config.consumer_group,
            auto_offset_reset=kafka_cfg.auto_offset_reset,
            enable_auto_commit=False,
        )

        await self._store.create_schema()
        await self._objects.start()
        await self._publisher.start()
        await self._handlers.start_all()
        await self._consumer.start()
        logger.info("pipeline_service_started")

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self.resume_running())
                tg.create_task(self._consume_loop())
                tg.create_task(self._retention_loop())
                tg.create_task(
                    serve_until(
                        create_health_app(
                            "pipeline",
                            details=self._health_details,
                            is_ready=lambda: self.is_ready,
                        ),
                        port=self._config.health_port,
                        shutdown_event=self._shutdown_event,
                    )
                )
        except* Exception:
            logger.exception("pipeline_service_error")
        finally:
            await self._cancel_in_flight()
            await self._consumer.stop()
            await self._handlers.stop_all()
            await self._publisher.stop()
            await self._objects.stop()
            await self._store.close()
            logger.info("pipeline_service_stopped")

    async def resume_running(self) -> int:
        """Spawn a driver for every execution left Running by a previous process."""
        running = await self._store.list_running()
        for execution in running:
            await self._spawn(execution)
        if running:
            logger.info("executions_resumed", count=len(running))
        return len(running)

    async def drain(self) -> None:
        """Wait for every in-flight execution to settle."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _cancel_in_flight(self) -> None:
        # Cancelled executions stay Running in the store and resume on restart.
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Consume loop
    # ------------------------------------------------------------------

    async def _consume_loop(self) -> None:
        assert self._consumer is not None

        async for msg in self._consumer:
            if self._shutdown_event.is_set():
                break

            try:
                await self.handle_record(msg.value)
            except Exception:
                logger.exception("notification_failed", offset=msg.offset)
                self._notifications_failed += 1
            # Commit to avoid poison-pill blocking
            await self._consumer.commit()

        self._shutdown_event.set()

    async def handle_record(self, value: bytes) -> list[PipelineExecution]:
        """Decode one storage-events record and start executions for it.

        Accepts either a serialized :class:`StorageNotification` or an S3
        bucket notification document.  Returns the executions started.
        """
        try:
            payload = json.loads(value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("notification_deserialize_failed")
            self._notifications_failed += 1
            return []

        started: list[PipelineExecution] = []
        for notification in self._decode(payload):
            execution = await self.handle_notification(notification)
            if execution is not None:
                started.append(execution)
        return started

    async def handle_notification(self, notification: StorageNotification) -> PipelineExecution | None:
        decision = self._filter.evaluate(notification)
        if isinstance(decision, Ignore):
            self._notifications_ignored += 1
            logger.debug(
                "notification_ignored",
                document_key=notification.document_key,
                zone=notification.zone,
                reason=decision.reason,
            )
            return None

        self._notifications_accepted += 1
        execution = await self._start(notification)
        if execution is None:
            self._notifications_collapsed += 1
            return None

        await self._spawn(execution)
        return execution

    def _decode(self, payload: Any) -> list[StorageNotification]:
        if isinstance(payload, dict) and "Records" in payload:
            return notifications_from_s3_event(
                payload,
                self._objects.zones,
                bucket=self._objects.bucket,
            )
        try:
            return [StorageNotification.model_validate(payload)]
        except ValidationError:
            logger.warning("notification_invalid")
            self._notifications_failed += 1
            return []

    async def _start(self, notification: StorageNotification) -> PipelineExecution | None:
        @with_retry(self._config.retry, retryable_exceptions=(SQLAlchemyError, OSError))
        async def _create() -> PipelineExecution | None:
            return await self._orchestrator.start(notification)

        try:
            return await _create()
        except (SQLAlchemyError, OSError) as exc:
            await self._alerts.raise_alert(
                notification.document_key,
                cause=f"execution could not be created: {exc}",
                attempts=self._config.retry.max_attempts,
            )
            raise

    # ------------------------------------------------------------------
    # Execution drivers
    # ------------------------------------------------------------------

    async def _spawn(self, execution: PipelineExecution) -> None:
        # Waiting for a slot here holds back the consume loop while every
        # slot is busy.
        await self._slots.acquire()
        task = asyncio.create_task(self._drive(execution))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _: self._slots.release())

    async def _drive(self, execution: PipelineExecution) -> None:
        try:
            result = await self._run_with_recovery(execution)
        except ConcurrentUpdateError:
            return
        except Exception as exc:
            logger.exception(
                "execution_driver_crashed",
                execution_id=execution.execution_id,
                document_key=execution.document_key,
            )
            result = await self._abandon(execution, exc)
            if result is None:
                return
        self._outcomes[result.status] += 1

    async def _run_with_recovery(self, execution: PipelineExecution) -> PipelineExecution:
        """Run *execution*, reloading the committed record and re-driving it
        after storage or database errors.
        """
        async for attempt in retrying(
            self._config.retry,
            max_attempts=self._config.retry.max_attempts,
            retryable_exceptions=_RECOVERABLE_ERRORS,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "execution_redriven",
                        execution_id=execution.execution_id,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    execution = await self._store.get(execution.execution_id) or execution
                result = await self._orchestrator.run(execution)
        return result

    async def _abandon(self, execution: PipelineExecution, exc: Exception) -> PipelineExecution | None:
        try:
            return await self._orchestrator.abandon(execution, f"execution could not be driven: {exc!r}")
        except (ConcurrentUpdateError, *_RECOVERABLE_ERRORS):
            # Left Running; the next resume picks it up.
            logger.exception("execution_abandon_failed", execution_id=execution.execution_id)
            return None

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def _retention_loop(self) -> None:
        retention = timedelta(days=self._config.retention_days)
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.retention_sweep_seconds,
                )
            except TimeoutError:
                try:
                    await self._store.purge_expired(retention)
                except SQLAlchemyError:
                    logger.exception("retention_sweep_failed")
