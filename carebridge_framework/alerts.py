"""Operational alert channel — routes permanent failures to the alerts topic."""

from __future__ import annotations

import structlog

from carebridge_schema import OperationalAlert, StageName

from .kafka_producer import EventPublisher

logger = structlog.get_logger()


class AlertPublisher:
    """Builds :class:`OperationalAlert` records and publishes them.

    Publishing is best-effort: a broken alert channel is logged but never
    masks the failure being reported.
    """

    def __init__(self, publisher: EventPublisher, source: str) -> None:
        self._publisher = publisher
        self._source = source

    async def raise_alert(
        self,
        subject: str,
        *,
        cause: str,
        execution_id: str | None = None,
        stage: StageName | None = None,
        attempts: int | None = None,
    ) -> OperationalAlert:
        alert = OperationalAlert(
            source=self._source,
            subject=subject,
            cause=cause,
            execution_id=execution_id,
            stage=stage,
            attempts=attempts,
        )
        logger.error(
            "operational_alert",
            source=self._source,
            subject=subject,
            execution_id=execution_id,
            stage=stage.value if stage else None,
            cause=cause,
            attempts=attempts,
        )
        try:
            await self._publisher.send_alert(alert)
        except Exception as exc:
            logger.warning("alert_publish_failed", subject=subject, error=str(exc))
        return alert
