"""
Administrative reporting over the audit trail.

The dashboard summarises recent activity from ``receipt_events`` and
``disputes``; the usage view pages through the raw events.
"""
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.core import events
from proofpay.core.disputes import MAX_PAGE_SIZE
from proofpay.core.errors import ValidationError
from proofpay.core.verification import ensure_aware
from proofpay.database.models import ConfidenceLabel, ReceiptEvent
from proofpay.database.repository import ReceiptRepository

logger = structlog.get_logger(__name__)

DAILY_METRICS_DAYS = 30
UNLABELLED = "NULL"


def event_summary(event: ReceiptEvent) -> Dict[str, Any]:
    created_at = ensure_aware(event.created_at)
    return {
        "id": event.id,
        "event_type": event.event_type,
        "receipt_id": event.receipt_id,
        "metadata": event.event_data,
        "created_at": created_at.isoformat() if created_at else None,
    }


def _day_key(value: datetime) -> str:
    return ensure_aware(value).astimezone(timezone.utc).date().isoformat()


class ReportingService:
    """Dashboard and usage views for administrators."""

    async def get_dashboard(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Activity summary.

        Counts receipts created and viewed (from audit events) and disputes
        over the last 7 and 30 days, groups receipts by confidence label,
        breaks blocked views down by reason and returns one row per UTC day
        for the last 30 days.

        Args:
            db: Database session
            now: Reference time, defaults to the current UTC time

        Returns:
            Dict[str, Any]: Dashboard metrics
        """
        now = ensure_aware(now) or datetime.now(timezone.utc)
        seven_days_ago = now - timedelta(days=7)
        thirty_days_ago = now - timedelta(days=30)
        repo = ReceiptRepository(db)

        by_label = await repo.count_receipts_by_confidence()
        confidence_counts = {label.value: by_label.get(label.value, 0) for label in ConfidenceLabel}
        confidence_counts[UNLABELLED] = sum(
            count for label, count in by_label.items() if label not in confidence_counts
        )

        blocked_reasons = Counter(
            (data or {}).get("reason") or "unknown"
            for data in await repo.get_event_data(events.RECEIPT_VIEW_BLOCKED)
        )

        dashboard = {
            "receipts_7d": await repo.count_events(events.RECEIPT_CREATED, seven_days_ago),
            "receipts_30d": await repo.count_events(events.RECEIPT_CREATED, thirty_days_ago),
            "views_7d": await repo.count_events(events.RECEIPT_VIEWED, seven_days_ago),
            "views_30d": await repo.count_events(events.RECEIPT_VIEWED, thirty_days_ago),
            "disputes_7d": await repo.count_disputes(seven_days_ago),
            "disputes_30d": await repo.count_disputes(thirty_days_ago),
            "blocked_views_total": sum(blocked_reasons.values()),
            "blocked_views_7d": await repo.count_events(
                events.RECEIPT_VIEW_BLOCKED, seven_days_ago
            ),
            "blocked_view_reasons": dict(blocked_reasons),
            "confidence_counts": confidence_counts,
            "daily_metrics": await self._daily_metrics(repo, now),
        }
        logger.info(
            "dashboard_computed",
            receipts_30d=dashboard["receipts_30d"],
            views_30d=dashboard["views_30d"],
            disputes_30d=dashboard["disputes_30d"],
        )
        return dashboard

    async def _daily_metrics(self, repo: ReceiptRepository, now: datetime) -> List[Dict[str, Any]]:
        today = now.astimezone(timezone.utc).date()
        first_day = today - timedelta(days=DAILY_METRICS_DAYS - 1)
        since = datetime.combine(first_day, time.min, tzinfo=timezone.utc)

        days: Dict[str, Dict[str, Any]] = {}
        for offset in range(DAILY_METRICS_DAYS):
            day = first_day + timedelta(days=offset)
            days[day.isoformat()] = {
                "date": day.isoformat(),
                "receipts": 0,
                "views": 0,
                "disputes": 0,
            }

        counted = (
            ("receipts", await repo.get_event_times(events.RECEIPT_CREATED, since)),
            ("views", await repo.get_event_times(events.RECEIPT_VIEWED, since)),
            ("disputes", await repo.get_dispute_times(since)),
        )
        for field, timestamps in counted:
            for created_at in timestamps:
                row = days.get(_day_key(created_at))
                if row is not None:
                    row[field] += 1
        return list(days.values())

    async def list_usage(
        self,
        db: AsyncSession,
        page: int = 1,
        page_size: int = 50,
        event_type: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        """
        Audit events newest first.

        ``start_date`` and ``end_date`` are inclusive UTC days.

        Raises:
            ValidationError: On bad pagination or a start date after the end date
        """
        if page < 1 or not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"Invalid pagination page={page} page_size={page_size}",
                user_message=f"page must be >= 1 and page_size between 1 and {MAX_PAGE_SIZE}",
            )
        if start_date and end_date and start_date > end_date:
            raise ValidationError(
                f"start_date {start_date} is after end_date {end_date}",
                user_message="start_date must not be after end_date",
            )

        start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
        end = datetime.combine(end_date, time.max, tzinfo=timezone.utc) if end_date else None

        rows, total = await ReceiptRepository(db).list_events(
            offset=(page - 1) * page_size,
            limit=page_size,
            event_type=event_type,
            start=start,
            end=end,
        )
        return {
            "events": [event_summary(e) for e in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
        }
