"""Durable execution store.

Three tables back the orchestrator:

- ``pipeline_executions`` holds the full execution record; every write is a
  compare-and-swap on ``version``.
- ``active_executions`` holds one row per document key with a Running
  execution.  Its primary key is what makes "at most one Running execution
  per key" hold across orchestrator instances.
- ``dedup_entries`` remembers ``(document_key, content_hash)`` pairs so a
  repeated notification within the window collapses into the first run.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from carebridge_framework import ConcurrentUpdateError
from carebridge_schema import ExecutionStatus, PipelineExecution

from .db import is_sqlite, make_engine, make_session_factory
from .models import ActiveExecutionRow, Base, DedupEntryRow, ExecutionRow

logger = structlog.get_logger()


def _now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _row_values(execution: PipelineExecution) -> dict[str, Any]:
    return {
        "document_key": execution.document_key,
        "content_hash": execution.content_hash,
        "state": execution.state.value,
        "status": execution.status.value,
        "history": [record.model_dump(mode="json") for record in execution.history],
        "failure": execution.failure.model_dump(mode="json") if execution.failure else None,
        "created_at": execution.created_at,
        "updated_at": execution.updated_at,
    }


def _from_row(row: ExecutionRow) -> PipelineExecution:
    return PipelineExecution(
        execution_id=row.execution_id,
        document_key=row.document_key,
        content_hash=row.content_hash,
        state=row.state,
        status=row.status,
        history=row.history,
        failure=row.failure,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        version=row.version,
    )


class ExecutionStore:
    """Create, load and compare-and-swap :class:`PipelineExecution` records."""

    def __init__(self, database_url: str, *, dedup_window: timedelta) -> None:
        self._engine = make_engine(database_url)
        self._sessions = make_session_factory(self._engine)
        self._dedup_window = dedup_window
        # SQLite admits a single writer; its sessions share one connection.
        self._serialize: contextlib.AbstractAsyncContextManager = (
            asyncio.Lock() if is_sqlite(database_url) else contextlib.nullcontext()
        )

    async def create_schema(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @contextlib.asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._serialize:
            async with self._sessions() as session, session.begin():
                yield session

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def start_execution(
        self,
        document_key: str,
        content_hash: str,
        *,
        now: datetime | None = None,
    ) -> PipelineExecution | None:
        """Create a Running execution, or return None if one must not start.

        Returns None when the same ``(document_key, content_hash)`` was seen
        inside the dedup window, or when another execution for the key is
        still Running.  Both checks and the insert share one transaction.
        """
        now = now or _now()
        execution = PipelineExecution(
            document_key=document_key,
            content_hash=content_hash,
            created_at=now,
            updated_at=now,
        )

        try:
            async with self._transaction() as session:
                seen = await session.get(DedupEntryRow, (document_key, content_hash))
                if seen is not None and now - _as_utc(seen.first_seen_at) < self._dedup_window:
                    logger.info(
                        "duplicate_notification_collapsed",
                        document_key=document_key,
                        execution_id=seen.execution_id,
                    )
                    return None

                active = await session.get(ActiveExecutionRow, document_key)
                if active is not None:
                    logger.warning(
                        "execution_already_running",
                        document_key=document_key,
                        execution_id=active.execution_id,
                        content_hash=content_hash,
                    )
                    return None

                session.add(
                    ExecutionRow(
                        execution_id=execution.execution_id,
                        version=execution.version,
                        **_row_values(execution),
                    )
                )
                session.add(
                    ActiveExecutionRow(
                        document_key=document_key,
                        execution_id=execution.execution_id,
                    )
                )
                if seen is None:
                    session.add(
                        DedupEntryRow(
                            document_key=document_key,
                            content_hash=content_hash,
                            execution_id=execution.execution_id,
                            first_seen_at=now,
                        )
                    )
                else:
                    seen.execution_id = execution.execution_id
                    seen.first_seen_at = now
        except IntegrityError:
            # Another instance inserted the active or dedup row first.
            logger.info("execution_start_conflict", document_key=document_key)
            return None

        return execution

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def save(self, execution: PipelineExecution) -> None:
        """Persist *execution* if nobody else wrote it since it was loaded.

        Raises :class:`ConcurrentUpdateError` on a version mismatch.  A
        terminal execution releases its document key in the same
        transaction.
        """
        execution.updated_at = _now()
        async with self._transaction() as session:
            result = await session.execute(
                update(ExecutionRow)
                .where(
                    ExecutionRow.execution_id == execution.execution_id,
                    ExecutionRow.version == execution.version,
                )
                .values(version=execution.version + 1, **_row_values(execution))
            )
            if result.rowcount != 1:
                raise ConcurrentUpdateError(execution.execution_id)

            if execution.is_terminal:
                await session.execute(
                    delete(ActiveExecutionRow).where(
                        ActiveExecutionRow.document_key == execution.document_key,
                        ActiveExecutionRow.execution_id == execution.execution_id,
                    )
                )
        execution.version += 1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, execution_id: str) -> PipelineExecution | None:
        async with self._transaction() as session:
            row = await session.get(ExecutionRow, execution_id)
            return _from_row(row) if row is not None else None

    async def list_running(self) -> list[PipelineExecution]:
        async with self._transaction() as session:
            result = await session.execute(
                select(ExecutionRow)
                .where(ExecutionRow.status == ExecutionStatus.RUNNING.value)
                .order_by(ExecutionRow.created_at)
            )
            return [_from_row(row) for row in result.scalars().all()]

    async def list_for_document(self, document_key: str) -> list[PipelineExecution]:
        async with self._transaction() as session:
            result = await session.execute(
                select(ExecutionRow)
                .where(ExecutionRow.document_key == document_key)
                .order_by(ExecutionRow.created_at)
            )
            return [_from_row(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def purge_expired(self, retention: timedelta, *, now: datetime | None = None) -> int:
        """Delete terminal executions older than *retention* and stale dedup entries.

        Returns the number of executions removed.
        """
        now = now or _now()
        async with self._transaction() as session:
            result = await session.execute(
                delete(ExecutionRow).where(
                    ExecutionRow.status != ExecutionStatus.RUNNING.value,
                    ExecutionRow.updated_at < now - retention,
                )
            )
            await session.execute(
                delete(DedupEntryRow).where(DedupEntryRow.first_seen_at < now - self._dedup_window)
            )
        removed = result.rowcount or 0
        logger.info("executions_purged", removed=removed)
        return removed
