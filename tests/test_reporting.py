"""
Tests for the administrative dashboard and usage log.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Any

import pytest

from proofpay.core import events
from proofpay.core.errors import ValidationError
from proofpay.core.reporting import ReportingService
from proofpay.database.repository import ReceiptRepository


@pytest.fixture
def reporting() -> ReportingService:
    return ReportingService()


def days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


class TestDashboard:
    """Test suite for ReportingService.get_dashboard."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_store(self, test_db: Any, reporting: ReportingService) -> None:
        dashboard = await reporting.get_dashboard(test_db)

        assert dashboard["receipts_7d"] == 0
        assert dashboard["views_30d"] == 0
        assert dashboard["disputes_30d"] == 0
        assert dashboard["blocked_views_total"] == 0
        assert dashboard["confidence_counts"] == {"HIGH": 0, "MEDIUM": 0, "LOW": 0, "NULL": 0}
        assert len(dashboard["daily_metrics"]) == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_windows(self, test_db: Any, reporting: ReportingService) -> None:
        repo = ReceiptRepository(test_db)
        await repo.add_event(events.RECEIPT_CREATED, "r1", {}, created_at=days_ago(1))
        await repo.add_event(events.RECEIPT_CREATED, "r2", {}, created_at=days_ago(10))
        await repo.add_event(events.RECEIPT_CREATED, "r3", {}, created_at=days_ago(40))
        await repo.add_event(events.RECEIPT_VIEWED, "r1", {}, created_at=days_ago(2))
        await repo.add_event(events.RECEIPT_SHARE_VIEWED, "r1", {}, created_at=days_ago(2))

        dashboard = await reporting.get_dashboard(test_db)

        assert dashboard["receipts_7d"] == 1
        assert dashboard["receipts_30d"] == 2
        assert dashboard["views_7d"] == 1
        assert dashboard["views_30d"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispute_counts(
        self,
        test_db: Any,
        make_receipt: Any,
        dispute_service: Any,
        reporting: ReportingService,
    ) -> None:
        receipt = await make_receipt(items=(("Tea", "2.50", 1),))
        item = (await ReceiptRepository(test_db).get_receipt_items(receipt.id))[0]
        await dispute_service.create_dispute(
            receipt.id, [{"receipt_item_id": str(item.id)}], "other", test_db
        )

        dashboard = await reporting.get_dashboard(test_db)

        assert dashboard["disputes_7d"] == 1
        assert dashboard["disputes_30d"] == 1
        assert dashboard["daily_metrics"][-1]["disputes"] == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confidence_counts(
        self, test_db: Any, make_receipt: Any, reporting: ReportingService
    ) -> None:
        await make_receipt(confidence_label="HIGH", confidence_score=95)
        await make_receipt(confidence_label="MEDIUM", confidence_score=70)
        await make_receipt(confidence_label="MEDIUM", confidence_score=75)
        await make_receipt()

        dashboard = await reporting.get_dashboard(test_db)

        assert dashboard["confidence_counts"] == {"HIGH": 1, "MEDIUM": 2, "LOW": 0, "NULL": 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_blocked_view_reasons(self, test_db: Any, reporting: ReportingService) -> None:
        repo = ReceiptRepository(test_db)
        await repo.add_event(events.RECEIPT_VIEW_BLOCKED, "r1", {"reason": "below_threshold"})
        await repo.add_event(events.RECEIPT_VIEW_BLOCKED, "r2", {"reason": "below_threshold"})
        await repo.add_event(
            events.RECEIPT_VIEW_BLOCKED, "r3", {}, created_at=days_ago(20)
        )

        dashboard = await reporting.get_dashboard(test_db)

        assert dashboard["blocked_views_total"] == 3
        assert dashboard["blocked_views_7d"] == 2
        assert dashboard["blocked_view_reasons"] == {"below_threshold": 2, "unknown": 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_daily_metrics(self, test_db: Any, reporting: ReportingService) -> None:
        repo = ReceiptRepository(test_db)
        yesterday = days_ago(1)
        await repo.add_event(events.RECEIPT_CREATED, "r1", {}, created_at=yesterday)
        await repo.add_event(events.RECEIPT_VIEWED, "r1", {}, created_at=yesterday)
        await repo.add_event(events.RECEIPT_VIEWED, "r1", {}, created_at=yesterday)
        await repo.add_event(events.RECEIPT_CREATED, "old", {}, created_at=days_ago(45))

        dashboard = await reporting.get_dashboard(test_db)

        daily = {row["date"]: row for row in dashboard["daily_metrics"]}
        today = datetime.now(timezone.utc).date()
        assert list(daily)[-1] == today.isoformat()
        assert list(daily)[0] == (today - timedelta(days=29)).isoformat()
        row = daily[yesterday.date().isoformat()]
        assert (row["receipts"], row["views"], row["disputes"]) == (1, 2, 0)
        assert sum(r["receipts"] for r in daily.values()) == 1


class TestUsageLog:
    """Test suite for ReportingService.list_usage."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_newest_first_and_paginated(
        self, test_db: Any, reporting: ReportingService
    ) -> None:
        repo = ReceiptRepository(test_db)
        await repo.add_event(events.RECEIPT_CREATED, "r1", {}, created_at=days_ago(3))
        await repo.add_event(events.RECEIPT_VIEWED, "r1", {"item_count": 1}, created_at=days_ago(1))
        await repo.add_event(events.RECEIPT_CREATED, "r2", {}, created_at=days_ago(2))

        first = await reporting.list_usage(test_db, page=1, page_size=2)
        second = await reporting.list_usage(test_db, page=2, page_size=2)

        assert first["total"] == 3
        assert [e["event_type"] for e in first["events"]] == [
            events.RECEIPT_VIEWED,
            events.RECEIPT_CREATED,
        ]
        assert first["events"][0]["metadata"] == {"item_count": 1}
        assert [e["receipt_id"] for e in second["events"]] == ["r1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_filter_by_type(self, test_db: Any, reporting: ReportingService) -> None:
        repo = ReceiptRepository(test_db)
        await repo.add_event(events.RECEIPT_CREATED, "r1", {})
        await repo.add_event(events.RECEIPT_VIEWED, "r1", {})

        usage = await reporting.list_usage(test_db, event_type=events.RECEIPT_VIEWED)

        assert usage["total"] == 1
        assert usage["events"][0]["event_type"] == events.RECEIPT_VIEWED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_date_range_is_inclusive(
        self, test_db: Any, reporting: ReportingService
    ) -> None:
        repo = ReceiptRepository(test_db)
        for receipt_id, created_at in (
            ("before", datetime(2026, 1, 1, 23, 59, tzinfo=timezone.utc)),
            ("start", datetime(2026, 1, 2, 0, 0, tzinfo=timezone.utc)),
            ("end", datetime(2026, 1, 3, 23, 30, tzinfo=timezone.utc)),
            ("after", datetime(2026, 1, 4, 0, 1, tzinfo=timezone.utc)),
        ):
            await repo.add_event(events.RECEIPT_CREATED, receipt_id, {}, created_at=created_at)

        usage = await reporting.list_usage(
            test_db, start_date=date(2026, 1, 2), end_date=date(2026, 1, 3)
        )

        assert [e["receipt_id"] for e in usage["events"]] == ["end", "start"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"page": 0},
            {"page_size": 0},
            {"page_size": 201},
            {"start_date": date(2026, 2, 1), "end_date": date(2026, 1, 1)},
        ],
    )
    async def test_invalid_arguments(
        self, test_db: Any, reporting: ReportingService, kwargs: Any
    ) -> None:
        with pytest.raises(ValidationError):
            await reporting.list_usage(test_db, **kwargs)
