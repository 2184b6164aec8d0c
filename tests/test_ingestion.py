"""
Tests for receipt ingestion.
"""
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from proofpay.core import events
from proofpay.core.errors import ConflictError, ValidationError
from proofpay.core.ingestion import (
    OrderLineItem,
    OrderSnapshot,
    PaymentSnapshot,
    minor_to_decimal,
    parse_quantity,
)
from proofpay.database.models import Receipt
from proofpay.database.repository import ReceiptRepository


def order(*lines: OrderLineItem) -> OrderSnapshot:
    return OrderSnapshot(id="order_1", line_items=list(lines))


class TestParsing:
    """Test suite for snapshot parsing helpers."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw, expected",
        [("3", 3), (2, 2), (" 4 ", 4), ("abc", 1), ("0", 1), ("-2", 1), (None, 1), ("1.5", 1)],
    )
    def test_parse_quantity(self, raw: Any, expected: int) -> None:
        assert parse_quantity(raw) == expected

    @pytest.mark.unit
    def test_minor_units_to_amount(self) -> None:
        assert minor_to_decimal(2500) == Decimal("25.00")
        assert minor_to_decimal(1) == Decimal("0.01")
        assert minor_to_decimal(0) == Decimal("0.00")

    @pytest.mark.unit
    def test_line_item_name_fallback(self) -> None:
        assert OrderLineItem(name="Latte").display_name == "Latte"
        assert OrderLineItem(catalog_object_id="CAT_1").display_name == "CAT_1"
        assert OrderLineItem().display_name == "Unknown Item"

    @pytest.mark.unit
    def test_payment_snapshot_validation(self) -> None:
        payment = PaymentSnapshot(id="p1", amount_minor_units=100, currency="usd")
        assert payment.currency == "USD"

        with pytest.raises(PydanticValidationError):
            PaymentSnapshot(id="p1", amount_minor_units=-1)
        with pytest.raises(PydanticValidationError):
            PaymentSnapshot(id="", amount_minor_units=100)


class TestReceiptIngestor:
    """Test suite for ReceiptIngestor."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ingest_payment(self, test_db: Any, ingestor: Any, event_sink: Any) -> None:
        """Test a payment becomes a receipt with a decimal amount."""
        payment = PaymentSnapshot(id="p1", amount_minor_units=2500, currency="USD")

        result = await ingestor.ingest(payment, test_db)

        assert result.created is True
        assert result.payment_id == "p1"
        assert result.item_count == 0

        receipt = await ReceiptRepository(test_db).get_receipt(result.receipt_id)
        assert receipt.amount == Decimal("25.00")
        assert receipt.currency == "USD"
        assert receipt.source == "webhook"
        assert len(event_sink.of_type(events.RECEIPT_CREATED)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ingest_with_items(self, test_db: Any, ingestor: Any) -> None:
        payment = PaymentSnapshot(id="p2", amount_minor_units=1350, order_id="order_1")
        snapshot = order(
            OrderLineItem(name="Bagel", unit_price_minor_units=350, quantity="2"),
            OrderLineItem(catalog_object_id="CAT_9", unit_price_minor_units=650, quantity="x"),
        )

        result = await ingestor.ingest(payment, test_db, order=snapshot)

        assert result.item_count == 2
        items = await ReceiptRepository(test_db).get_receipt_items(result.receipt_id)
        by_name = {item.item_name: item for item in items}
        assert by_name["Bagel"].item_price == Decimal("3.50")
        assert by_name["Bagel"].quantity == 2
        assert by_name["CAT_9"].item_price == Decimal("6.50")
        assert by_name["CAT_9"].quantity == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ingest_is_idempotent(self, test_db: Any, ingestor: Any) -> None:
        """Test the same payment ingested twice yields one receipt."""
        payment = PaymentSnapshot(id="p1", amount_minor_units=2500)
        snapshot = order(OrderLineItem(name="Tea", unit_price_minor_units=250))

        first = await ingestor.ingest(payment, test_db, order=snapshot)
        second = await ingestor.ingest(payment, test_db, order=snapshot)

        assert second.created is False
        assert second.receipt_id == first.receipt_id
        assert second.item_count == 1

        count = await test_db.scalar(
            select(func.count()).select_from(Receipt).where(Receipt.payment_id == "p1")
        )
        assert count == 1
        items = await ReceiptRepository(test_db).get_receipt_items(first.receipt_id)
        assert len(items) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_item_failure_keeps_receipt(self, test_db: Any, ingestor: Any) -> None:
        """Test a failed item insert leaves the receipt without items."""
        payment = PaymentSnapshot(id="p3", amount_minor_units=500, order_id="order_1")
        snapshot = order(OrderLineItem(name="Scone", unit_price_minor_units=500))

        with patch.object(
            ReceiptRepository,
            "add_receipt_items",
            new=AsyncMock(side_effect=SQLAlchemyError("insert failed")),
        ):
            result = await ingestor.ingest(payment, test_db, order=snapshot)

        assert result.created is True
        assert result.item_count == 0
        receipt = await ReceiptRepository(test_db).get_receipt_by_payment_id("p3")
        assert receipt is not None
        assert await ReceiptRepository(test_db).get_receipt_items(receipt.id) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_simulated_source(self, test_db: Any, ingestor: Any) -> None:
        payment = PaymentSnapshot(id="sim_1", amount_minor_units=100)

        result = await ingestor.ingest(payment, test_db, source="simulated")

        receipt = await ReceiptRepository(test_db).get_receipt(result.receipt_id)
        assert receipt.source == "simulated"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_source(self, test_db: Any, ingestor: Any) -> None:
        payment = PaymentSnapshot(id="p4", amount_minor_units=100)

        with pytest.raises(ValidationError):
            await ingestor.ingest(payment, test_db, source="manual")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_conflict_without_stored_receipt(self, test_db: Any, ingestor: Any) -> None:
        payment = PaymentSnapshot(id="p5", amount_minor_units=100)
        error = IntegrityError("INSERT", {}, Exception("constraint failed"))

        with patch.object(ReceiptRepository, "add_receipt", new=AsyncMock(side_effect=error)):
            with pytest.raises(ConflictError):
                await ingestor.ingest(payment, test_db)
