"""
Receipt ingestion.

Materializes a receipt and its line items from a payment snapshot and an
optional order snapshot. Ingestion is idempotent per external payment id:
the unique constraint on ``receipts.payment_id`` decides which delivery
wins, and every other delivery returns the winner's receipt.
"""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.config import Settings, get_settings
from proofpay.core import events
from proofpay.core.errors import ConflictError, ValidationError
from proofpay.core.events import EventSink, LoggingEventSink, record_event
from proofpay.database.models import Receipt, ReceiptItem, ReceiptSource
from proofpay.database.repository import ReceiptRepository
from proofpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
UNKNOWN_ITEM_NAME = "Unknown Item"


def minor_to_decimal(amount_minor_units: int) -> Decimal:
    """Convert an amount in minor units (cents) to a currency amount."""
    return (Decimal(amount_minor_units) / 100).quantize(CENT)


def parse_quantity(raw: Any) -> int:
    """Line item quantity as a positive int, 1 when it cannot be parsed."""
    try:
        quantity = int(str(raw).strip())
    except (TypeError, ValueError):
        return 1
    return quantity if quantity >= 1 else 1


class PaymentSnapshot(BaseModel):
    """Payment as reported by the processor."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(min_length=1)
    amount_minor_units: int = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    order_id: Optional[str] = None
    merchant_name: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class OrderLineItem(BaseModel):
    """Order line item; quantity is kept raw and parsed at ingestion."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: Optional[str] = None
    catalog_object_id: Optional[str] = None
    unit_price_minor_units: Optional[int] = None
    quantity: Any = "1"

    @property
    def display_name(self) -> str:
        return self.name or self.catalog_object_id or UNKNOWN_ITEM_NAME


class OrderSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: Optional[str] = None
    line_items: List[OrderLineItem] = Field(default_factory=list)


@dataclass(frozen=True)
class IngestionResult:
    receipt_id: uuid.UUID
    payment_id: str
    item_count: int
    created: bool


class ReceiptIngestor:
    """Creates receipts from payment and order snapshots."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.settings = settings or get_settings()
        self.event_sink = event_sink or LoggingEventSink()

    async def ingest(
        self,
        payment: PaymentSnapshot,
        db: AsyncSession,
        order: Optional[OrderSnapshot] = None,
        source: str = ReceiptSource.WEBHOOK.value,
    ) -> IngestionResult:
        """
        Ingest one payment.

        Flow:
        1. Convert the minor-unit amount to a decimal amount
        2. Insert the receipt; on a duplicate payment id return the existing one
        3. Bulk-insert order line items; failures leave a receipt without items

        Args:
            payment: Payment snapshot
            db: Database session
            order: Optional order snapshot with line items
            source: ``webhook`` or ``simulated``

        Returns:
            IngestionResult: receipt id, payment id, item count and whether it was created

        Raises:
            ValidationError: If ``source`` is unknown
            ConflictError: If the insert conflicts but no receipt exists for the payment
        """
        if source not in {s.value for s in ReceiptSource}:
            raise ValidationError(f"Unknown receipt source {source!r}")

        repo = ReceiptRepository(db)
        amount = minor_to_decimal(payment.amount_minor_units)

        logger.info(
            "receipt_ingestion_started",
            payment_id=payment.id,
            amount=str(amount),
            currency=payment.currency,
            order_id=payment.order_id,
        )

        receipt = Receipt(
            payment_id=payment.id,
            amount=amount,
            currency=payment.currency,
            source=source,
            merchant_name=payment.merchant_name,
        )
        try:
            await repo.add_receipt(receipt)
        except IntegrityError as e:
            await repo.rollback()
            existing = await repo.get_receipt_by_payment_id(payment.id)
            if existing is None:
                raise ConflictError(
                    f"Receipt insert for payment {payment.id} conflicted without a stored receipt"
                ) from e
            item_count = len(await repo.get_receipt_items(existing.id))
            logger.warning(
                "receipt_already_exists",
                payment_id=payment.id,
                receipt_id=str(existing.id),
            )
            metrics.record_receipt_ingested("duplicate")
            return IngestionResult(
                receipt_id=existing.id,
                payment_id=payment.id,
                item_count=item_count,
                created=False,
            )

        receipt_id = receipt.id
        logger.info("receipt_created", receipt_id=str(receipt_id), payment_id=payment.id)

        item_count = await self._create_items(repo, receipt_id, order)

        metrics.record_receipt_ingested("created", item_count)
        await record_event(
            self.event_sink,
            events.RECEIPT_CREATED,
            str(receipt_id),
            payment_id=payment.id,
            amount=str(amount),
            currency=payment.currency,
            source=source,
            item_count=item_count,
        )
        return IngestionResult(
            receipt_id=receipt_id,
            payment_id=payment.id,
            item_count=item_count,
            created=True,
        )

    async def _create_items(
        self,
        repo: ReceiptRepository,
        receipt_id: uuid.UUID,
        order: Optional[OrderSnapshot],
    ) -> int:
        if order is None or not order.line_items:
            logger.info("receipt_items_skipped", receipt_id=str(receipt_id))
            return 0

        items = [
            ReceiptItem(
                receipt_id=receipt_id,
                item_name=line.display_name,
                item_price=minor_to_decimal(line.unit_price_minor_units or 0),
                quantity=parse_quantity(line.quantity),
            )
            for line in order.line_items
        ]
        try:
            await repo.add_receipt_items(items)
        except SQLAlchemyError as e:
            await repo.rollback()
            metrics.record_item_failure()
            logger.error(
                "receipt_items_insert_failed",
                receipt_id=str(receipt_id),
                item_count=len(items),
                error=str(e),
            )
            return 0

        logger.info("receipt_items_created", receipt_id=str(receipt_id), item_count=len(items))
        return len(items)
