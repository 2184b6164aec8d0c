"""
Dispute accounting.

Validates a customer's selection of receipt items, computes the disputed
subtotal in cents and stores the dispute with its items. Also serves the
administrative dispute views and the dispute detail shown on DISPUTED
verification results.
"""
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.config import Settings, get_settings
from proofpay.core import events
from proofpay.core.errors import NotFoundError, StoreSchemaMismatch, ValidationError
from proofpay.core.events import EventSink, LoggingEventSink, record_event
from proofpay.core.verification import ensure_aware
from proofpay.database.models import DisputeItem, DisputeStatus
from proofpay.database.repository import ReceiptRepository, parse_uuid
from proofpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 200


class SelectedItem(BaseModel):
    """One receipt item picked for a dispute."""

    receipt_item_id: str = Field(min_length=1)
    quantity: Optional[int] = None


def item_amount_cents(unit_price: Decimal | float | str, quantity: int) -> int:
    """``round(unit_price * 100) * quantity``, rounding half up to whole cents."""
    unit_cents = (Decimal(str(unit_price)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(unit_cents) * quantity


def _isoformat(value: Any) -> Optional[str]:
    value = ensure_aware(value)
    return value.isoformat() if value is not None else None


def _parse_selection(selected_items: Sequence[Any]) -> List[SelectedItem]:
    if not selected_items:
        raise ValidationError(
            "selected_items is empty",
            user_message="selected_items is required and must contain at least one item",
        )
    parsed = []
    for raw in selected_items:
        if isinstance(raw, SelectedItem):
            parsed.append(raw)
            continue
        try:
            parsed.append(SelectedItem.model_validate(raw))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid selected item: {raw!r}",
                user_message="Each selected item must have a receipt_item_id",
            ) from e
    return parsed


class DisputeService:
    """Creates disputes and serves dispute details."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.settings = settings or get_settings()
        self.event_sink = event_sink or LoggingEventSink()

    async def create_dispute(
        self,
        receipt_id: str | uuid.UUID,
        selected_items: Sequence[SelectedItem | Mapping[str, Any]],
        reason_code: str,
        db: AsyncSession,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a dispute against some or all items of a receipt.

        Flow:
        1. Validate the receipt and the item selection
        2. Compute per-item and total disputed amounts in cents
        3. Insert the dispute, without ``total_amount_cents`` if the store lacks it
        4. Insert the dispute items; a failure here keeps the dispute

        Args:
            receipt_id: Receipt being disputed
            selected_items: ``receipt_item_id`` and optional ``quantity`` per item
            reason_code: Why the customer disputes the purchase
            db: Database session
            notes: Optional free text

        Returns:
            Dict[str, Any]: dispute_id, status, disputed_total_cents, item_count

        Raises:
            NotFoundError: If the receipt does not exist
            ValidationError: If the selection or reason is invalid
        """
        if not reason_code:
            raise ValidationError("reason_code is empty", user_message="reason_code is required")
        selection = _parse_selection(selected_items)

        repo = ReceiptRepository(db)
        receipt = await repo.get_receipt(receipt_id)
        if receipt is None:
            logger.warning("dispute_receipt_not_found", receipt_id=str(receipt_id))
            raise NotFoundError(
                f"Receipt {receipt_id} not found",
                user_message=f"No receipt found with ID: {receipt_id}",
            )
        receipt_uuid = receipt.id

        receipt_items = {item.id: item for item in await repo.get_receipt_items(receipt_uuid)}

        disputed_total_cents = 0
        lines = []
        for selected in selection:
            receipt_item = receipt_items.get(parse_uuid(selected.receipt_item_id))
            if receipt_item is None:
                raise ValidationError(
                    f"Receipt item {selected.receipt_item_id} not in receipt {receipt_uuid}",
                    user_message=f"Receipt item {selected.receipt_item_id} not found in receipt",
                )
            if any(item_id == receipt_item.id for item_id, _, _ in lines):
                raise ValidationError(
                    f"Receipt item {receipt_item.id} selected more than once",
                    user_message="Each receipt item may be selected only once",
                )
            quantity = (
                selected.quantity if selected.quantity is not None else receipt_item.quantity
            )
            if quantity <= 0:
                raise ValidationError(
                    f"Non-positive dispute quantity {quantity}",
                    user_message="Quantity must be greater than 0",
                )
            if quantity > receipt_item.quantity:
                raise ValidationError(
                    f"Dispute quantity {quantity} exceeds purchased {receipt_item.quantity}",
                    user_message="Quantity cannot exceed the purchased quantity",
                )
            amount_cents = item_amount_cents(receipt_item.item_price, quantity)
            disputed_total_cents += amount_cents
            lines.append((receipt_item.id, quantity, amount_cents))

        values: Dict[str, Any] = {
            "receipt_id": receipt_uuid,
            "status": DisputeStatus.SUBMITTED.value,
            "reason_code": reason_code,
            "notes": notes,
            "total_amount_cents": disputed_total_cents,
        }
        try:
            dispute_id = await repo.insert_dispute(values)
        except StoreSchemaMismatch as e:
            logger.warning(
                "dispute_total_column_missing",
                receipt_id=str(receipt_uuid),
                missing=e.missing,
            )
            values.pop("total_amount_cents")
            dispute_id = await repo.insert_dispute(values)

        logger.info(
            "dispute_created",
            dispute_id=str(dispute_id),
            receipt_id=str(receipt_uuid),
            item_count=len(lines),
            disputed_total_cents=disputed_total_cents,
        )

        try:
            await repo.add_dispute_items(
                DisputeItem(
                    dispute_id=dispute_id,
                    receipt_item_id=item_id,
                    quantity=quantity,
                    amount_cents=amount_cents,
                )
                for item_id, quantity, amount_cents in lines
            )
        except SQLAlchemyError as e:
            await repo.rollback()
            logger.error(
                "dispute_items_insert_failed",
                dispute_id=str(dispute_id),
                error=str(e),
            )

        metrics.record_dispute(reason_code, disputed_total_cents)
        await record_event(
            self.event_sink,
            events.DISPUTE_CREATED,
            str(receipt_uuid),
            dispute_id=str(dispute_id),
            reason_code=reason_code,
            item_count=len(lines),
            disputed_total_cents=disputed_total_cents,
        )

        return {
            "dispute_id": str(dispute_id),
            "status": DisputeStatus.SUBMITTED.value,
            "disputed_total_cents": disputed_total_cents,
            "item_count": len(lines),
        }

    async def list_disputes(
        self, db: AsyncSession, page: int = 1, page_size: int = 50
    ) -> Dict[str, Any]:
        """Disputes newest first, with their item counts."""
        if page < 1 or not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"Invalid pagination page={page} page_size={page_size}",
                user_message=f"page must be >= 1 and page_size between 1 and {MAX_PAGE_SIZE}",
            )
        repo = ReceiptRepository(db)
        disputes, total = await repo.list_disputes(offset=(page - 1) * page_size, limit=page_size)
        counts = await repo.count_dispute_items([d.id for d in disputes])

        return {
            "disputes": [
                {
                    "id": str(d.id),
                    "receipt_id": str(d.receipt_id),
                    "status": d.status,
                    "reason_code": d.reason_code,
                    "notes": d.notes,
                    "total_amount_cents": d.total_amount_cents,
                    "created_at": _isoformat(d.created_at),
                    "item_count": counts.get(d.id, 0),
                }
                for d in disputes
            ],
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    async def get_dispute(self, dispute_id: str, db: AsyncSession) -> Dict[str, Any]:
        """
        Dispute detail with its items and a summary of the receipt.

        Raises:
            NotFoundError: If the dispute does not exist
        """
        repo = ReceiptRepository(db)
        dispute = await repo.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError(
                f"Dispute {dispute_id} not found",
                user_message=f"No dispute found with ID: {dispute_id}",
            )

        items = await repo.get_dispute_items(dispute.id)
        receipt = await repo.get_receipt(dispute.receipt_id)

        return {
            "dispute": {
                "id": str(dispute.id),
                "receipt_id": str(dispute.receipt_id),
                "status": dispute.status,
                "reason_code": dispute.reason_code,
                "notes": dispute.notes,
                "total_amount_cents": dispute.total_amount_cents,
                "created_at": _isoformat(dispute.created_at),
            },
            "items": [
                {
                    "id": str(item.id),
                    "receipt_item_id": str(item.receipt_item_id),
                    "quantity": item.quantity,
                    "amount_cents": item.amount_cents,
                }
                for item in items
            ],
            "receipt": {
                "id": str(dispute.receipt_id),
                "merchant_name": receipt.merchant_name if receipt else None,
                "amount": float(receipt.amount) if receipt else 0.0,
                "currency": receipt.currency if receipt else "USD",
                "confidence_score": receipt.confidence_score if receipt else None,
                "confidence_label": receipt.confidence_label if receipt else None,
            },
        }

    async def update_dispute_status(
        self, dispute_id: str, status: str, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Move a dispute to ``submitted``, ``in_review`` or ``resolved``.

        Raises:
            ValidationError: If the status is unknown
            NotFoundError: If the dispute does not exist
        """
        valid = [s.value for s in DisputeStatus]
        if status not in valid:
            raise ValidationError(
                f"Invalid dispute status {status!r}",
                user_message=f"status must be one of: {', '.join(valid)}",
            )
        repo = ReceiptRepository(db)
        dispute = await repo.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError(
                f"Dispute {dispute_id} not found",
                user_message=f"No dispute found with ID: {dispute_id}",
            )

        old_status = dispute.status
        receipt_id = str(dispute.receipt_id)
        await repo.set_dispute_status(dispute, status)

        logger.info(
            "dispute_status_changed",
            dispute_id=str(dispute.id),
            old_status=old_status,
            new_status=status,
        )
        if old_status != status:
            await record_event(
                self.event_sink,
                events.DISPUTE_STATUS_CHANGED,
                receipt_id,
                dispute_id=str(dispute.id),
                old_status=old_status,
                new_status=status,
            )
        return {"dispute_id": str(dispute.id), "status": status, "previous_status": old_status}

    async def get_active_dispute_detail(
        self, receipt_id: uuid.UUID, db: AsyncSession
    ) -> Optional[Dict[str, Any]]:
        """Most recent submitted or in-review dispute on a receipt, with its items."""
        repo = ReceiptRepository(db)
        dispute = await repo.latest_active_dispute(receipt_id)
        if dispute is None:
            return None

        rows = await repo.get_dispute_item_details(dispute.id)
        items = [
            {
                "item_name": row.item_name,
                "item_price": float(row.item_price) if row.item_price is not None else None,
                "quantity": row.quantity,
                "amount_cents": row.amount_cents,
            }
            for row in rows
        ]
        total = dispute.total_amount_cents
        if total is None:
            total = sum(item["amount_cents"] for item in items)

        return {
            "dispute_id": str(dispute.id),
            "status": dispute.status,
            "reason_code": dispute.reason_code,
            "notes": dispute.notes,
            "created_at": _isoformat(dispute.created_at),
            "disputed_total_cents": total,
            "items": items,
        }
