"""
Receipt queries.

List and detail views over ingested receipts, with the confidence gate
applied to line items and dispute/refund flags attached. Both views are
refused while receipts are switched off by an administrator.
"""
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.config import Settings, get_settings
from proofpay.core import events
from proofpay.core.admin_settings import AdminSettingsService
from proofpay.core.confidence import apply_confidence_gate
from proofpay.core.errors import FeatureDisabledError, NotFoundError
from proofpay.core.events import EventSink, LoggingEventSink, record_event
from proofpay.core.verification import ensure_aware
from proofpay.database.models import ACTIVE_DISPUTE_STATUSES, DisputeStatus, Receipt, ReceiptItem
from proofpay.database.repository import ReceiptRepository

logger = structlog.get_logger(__name__)


def receipt_summary(receipt: Receipt) -> Dict[str, Any]:
    """Caller-facing fields of a receipt."""
    created_at = ensure_aware(receipt.created_at)
    return {
        "id": str(receipt.id),
        "payment_id": receipt.payment_id,
        "amount": float(receipt.amount),
        "currency": receipt.currency,
        "source": receipt.source,
        "merchant_name": receipt.merchant_name,
        "confidence_score": receipt.confidence_score,
        "confidence_label": receipt.confidence_label,
        "is_refunded": bool(receipt.refunded),
        "created_at": created_at.isoformat() if created_at else None,
    }


def item_summary(item: ReceiptItem) -> Dict[str, Any]:
    return {
        "id": str(item.id),
        "item_name": item.item_name,
        "item_price": float(item.item_price),
        "quantity": item.quantity,
    }


def dispute_flags(statuses: Sequence[str]) -> Dict[str, bool]:
    return {
        "has_active_dispute": any(s in ACTIVE_DISPUTE_STATUSES for s in statuses),
        "has_resolved_dispute": any(s == DisputeStatus.RESOLVED.value for s in statuses),
    }


class ReceiptQueryService:
    """Receipt list and detail views."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        admin_settings: Optional[AdminSettingsService] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.settings = settings or get_settings()
        self.event_sink = event_sink or LoggingEventSink()
        self.admin_settings = admin_settings or AdminSettingsService(
            settings=self.settings, event_sink=self.event_sink
        )

    async def _ensure_available(self, db: AsyncSession) -> None:
        reason = await self.admin_settings.receipts_available(db)
        if reason is not None:
            logger.info("receipts_unavailable", reason=reason)
            raise FeatureDisabledError(reason)

    async def list_receipts(self, db: AsyncSession) -> List[Dict[str, Any]]:
        """
        All receipts, newest first.

        Items of receipts below the confidence threshold are withheld and
        the receipt is flagged ``below_threshold``.

        Raises:
            FeatureDisabledError: If receipts are disabled or the kill switch is on
        """
        await self._ensure_available(db)
        threshold = await self.admin_settings.get_confidence_threshold(db)

        repo = ReceiptRepository(db)
        receipts = await repo.list_receipts()
        receipt_ids = [r.id for r in receipts]
        items_by_receipt = await repo.get_items_for_receipts(receipt_ids)

        statuses: Dict[Any, List[str]] = {rid: [] for rid in receipt_ids}
        for receipt_id, status in await repo.get_dispute_statuses(receipt_ids):
            statuses.setdefault(receipt_id, []).append(status)

        results = []
        for receipt in receipts:
            gated = apply_confidence_gate(receipt, items_by_receipt.get(receipt.id, []), threshold)
            entry = receipt_summary(receipt)
            entry["items"] = [item_summary(i) for i in gated.items]
            entry["below_threshold"] = gated.below_threshold
            entry.update(dispute_flags(statuses.get(receipt.id, [])))
            results.append(entry)

        logger.info("receipts_listed", count=len(results), threshold=threshold)
        return results

    async def get_receipt(self, receipt_id: str, db: AsyncSession) -> Dict[str, Any]:
        """
        Receipt detail with items, gated by confidence.

        A receipt below the threshold is still returned with its amount,
        ``below_threshold`` set and no items.

        Raises:
            FeatureDisabledError: If receipts are disabled or the kill switch is on
            NotFoundError: If the receipt does not exist
        """
        await self._ensure_available(db)

        repo = ReceiptRepository(db)
        receipt = await repo.get_receipt(receipt_id)
        if receipt is None:
            raise NotFoundError(f"Receipt {receipt_id} not found", user_message="Receipt not found")

        threshold = await self.admin_settings.get_confidence_threshold(db)
        items = await repo.get_receipt_items(receipt.id)
        gated = apply_confidence_gate(receipt, items, threshold)
        statuses = [status for _, status in await repo.get_dispute_statuses([receipt.id])]

        detail = receipt_summary(receipt)
        detail["items"] = [item_summary(i) for i in gated.items]
        detail["below_threshold"] = gated.below_threshold
        detail.update(dispute_flags(statuses))

        if gated.below_threshold:
            await record_event(
                self.event_sink,
                events.RECEIPT_VIEW_BLOCKED,
                str(receipt.id),
                reason="below_threshold",
                confidence_score=receipt.confidence_score,
                threshold=threshold,
            )
        else:
            await record_event(
                self.event_sink,
                events.RECEIPT_VIEWED,
                str(receipt.id),
                item_count=len(gated.items),
            )
        return detail
