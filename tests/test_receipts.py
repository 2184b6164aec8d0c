"""
Tests for the receipt list and detail views.
"""
import uuid
from typing import Any

import pytest

from proofpay.core import events
from proofpay.core.errors import FeatureDisabledError, NotFoundError
from proofpay.core.receipts import ReceiptQueryService
from proofpay.database.repository import ReceiptRepository


@pytest.fixture
def receipt_service(test_settings: Any, admin_settings: Any, event_sink: Any) -> ReceiptQueryService:
    return ReceiptQueryService(
        settings=test_settings, admin_settings=admin_settings, event_sink=event_sink
    )


class TestReceiptQueryService:
    """Test suite for ReceiptQueryService."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_applies_gate(
        self, test_db: Any, make_receipt: Any, receipt_service: Any
    ) -> None:
        await make_receipt(
            payment_id="visible", items=(("A", "1.00", 1),), confidence_score=90
        )
        await make_receipt(
            payment_id="hidden", items=(("B", "2.00", 1),), confidence_score=20
        )

        receipts = {r["payment_id"]: r for r in await receipt_service.list_receipts(test_db)}

        assert [i["item_name"] for i in receipts["visible"]["items"]] == ["A"]
        assert receipts["visible"]["below_threshold"] is False
        assert receipts["hidden"]["items"] == []
        assert receipts["hidden"]["below_threshold"] is True
        assert receipts["hidden"]["amount"] == 25.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_dispute_flags(
        self,
        test_db: Any,
        make_receipt: Any,
        receipt_service: Any,
        dispute_service: Any,
    ) -> None:
        receipt = await make_receipt(items=(("A", "1.00", 1),))
        item = (await ReceiptRepository(test_db).get_receipt_items(receipt.id))[0]
        created = await dispute_service.create_dispute(
            receipt.id, [{"receipt_item_id": str(item.id)}], "other", test_db
        )

        listed = (await receipt_service.list_receipts(test_db))[0]
        assert listed["has_active_dispute"] is True
        assert listed["has_resolved_dispute"] is False

        await dispute_service.update_dispute_status(created["dispute_id"], "resolved", test_db)

        listed = (await receipt_service.list_receipts(test_db))[0]
        assert listed["has_active_dispute"] is False
        assert listed["has_resolved_dispute"] is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_threshold_setting_is_applied(
        self, test_db: Any, make_receipt: Any, receipt_service: Any, admin_settings: Any
    ) -> None:
        receipt = await make_receipt(items=(("A", "1.00", 1),), confidence_score=50)
        await admin_settings.set_confidence_threshold(test_db, 40)

        detail = await receipt_service.get_receipt(str(receipt.id), test_db)

        assert detail["below_threshold"] is False
        assert len(detail["items"]) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fractional_threshold_is_not_rounded(
        self, test_db: Any, make_receipt: Any, receipt_service: Any, admin_settings: Any
    ) -> None:
        receipt = await make_receipt(
            items=(("A", "1.00", 1),), confidence_score=85, confidence_label="MEDIUM"
        )
        await admin_settings.set_confidence_threshold(test_db, 85.5)

        assert await admin_settings.get_confidence_threshold(test_db) == 85.5
        detail = await receipt_service.get_receipt(str(receipt.id), test_db)

        assert detail["below_threshold"] is True
        assert detail["items"] == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_detail_events(
        self, test_db: Any, make_receipt: Any, receipt_service: Any, event_sink: Any
    ) -> None:
        shown = await make_receipt(items=(("A", "1.00", 1),))
        hidden = await make_receipt(items=(("B", "1.00", 1),), confidence_score=10)

        await receipt_service.get_receipt(str(shown.id), test_db)
        detail = await receipt_service.get_receipt(str(hidden.id), test_db)

        assert detail["below_threshold"] is True
        assert detail["items"] == []
        viewed = event_sink.of_type(events.RECEIPT_VIEWED)
        blocked = event_sink.of_type(events.RECEIPT_VIEW_BLOCKED)
        assert [e[1] for e in viewed] == [str(shown.id)]
        assert blocked[0][1] == str(hidden.id)
        assert blocked[0][2]["threshold"] == 85

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_receipt(self, test_db: Any, receipt_service: Any) -> None:
        with pytest.raises(NotFoundError):
            await receipt_service.get_receipt(str(uuid.uuid4()), test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kill_switch_blocks_views(
        self, test_db: Any, make_receipt: Any, receipt_service: Any, admin_settings: Any
    ) -> None:
        receipt = await make_receipt()
        await admin_settings.set_kill_switch(test_db, True)

        with pytest.raises(FeatureDisabledError) as exc_info:
            await receipt_service.list_receipts(test_db)
        assert exc_info.value.reason == "kill_switch"

        with pytest.raises(FeatureDisabledError):
            await receipt_service.get_receipt(str(receipt.id), test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disabled_receipts_block_views(
        self, test_db: Any, receipt_service: Any, admin_settings: Any
    ) -> None:
        await admin_settings.set_receipts_enabled(test_db, False)

        with pytest.raises(FeatureDisabledError) as exc_info:
            await receipt_service.list_receipts(test_db)
        assert exc_info.value.reason == "receipts_disabled"
