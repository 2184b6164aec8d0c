"""
Audit event sinks.

Services record what happened to receipts (views, shares, verifications,
disputes) through an injected sink. Recording is synchronous but a sink
never raises: failures are logged and counted, and the business call
carries on.
"""
from typing import Any, Dict, Optional, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from proofpay.database.repository import ReceiptRepository
from proofpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RECEIPT_CREATED = "receipt_created"
RECEIPT_SHARE_CREATED = "receipt_share_created"
RECEIPT_SHARE_VIEWED = "receipt_share_viewed"
RECEIPT_SHARE_VOIDED = "receipt_share_voided"
RECEIPT_VERIFIED = "receipt_verified"
RECEIPT_VERIFICATION_FAILED = "receipt_verification_failed"
RECEIPT_VIEWED = "receipt_viewed"
RECEIPT_VIEW_BLOCKED = "receipt_view_blocked"
DISPUTE_CREATED = "dispute_created"
DISPUTE_STATUS_CHANGED = "dispute_status_changed"
POLICY_UPDATED = "policy_updated"


class EventSink(Protocol):
    """Anything that can record an audit event."""

    async def record(
        self, event_type: str, subject_id: Optional[str], metadata: Dict[str, Any]
    ) -> None:
        ...


class LoggingEventSink:
    """Writes audit events to the structured log only."""

    async def record(
        self, event_type: str, subject_id: Optional[str], metadata: Dict[str, Any]
    ) -> None:
        logger.info("audit_event", event_type=event_type, subject_id=subject_id, **metadata)


class DatabaseEventSink:
    """
    Persists audit events to ``receipt_events``.

    Each event is written in its own session so that a failed insert can
    never roll back or poison the caller's unit of work.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self, event_type: str, subject_id: Optional[str], metadata: Dict[str, Any]
    ) -> None:
        try:
            async with self.session_factory() as session:
                await ReceiptRepository(session).add_event(
                    event_type=event_type,
                    receipt_id=subject_id,
                    event_data=metadata,
                )
        except Exception as e:
            metrics.record_event_sink_failure()
            logger.warning(
                "audit_event_write_failed",
                event_type=event_type,
                subject_id=subject_id,
                error=str(e),
            )


async def record_event(
    sink: EventSink, event_type: str, subject_id: Optional[str], **metadata: Any
) -> None:
    """Record an event through ``sink``, swallowing anything the sink raises."""
    try:
        await sink.record(event_type, subject_id, metadata)
    except Exception as e:
        metrics.record_event_sink_failure()
        logger.warning(
            "audit_event_failed",
            event_type=event_type,
            subject_id=subject_id,
            error=str(e),
        )
