"""
Receipt store adapter.

Thin persistence layer over the SQLAlchemy models. Services own the
business rules and the commit points; this module only knows how rows
are read and written.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import Row, func, insert, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.core.errors import StoreSchemaMismatch
from proofpay.database.models import (
    ACTIVE_DISPUTE_STATUSES,
    BankSetting,
    Dispute,
    DisputeItem,
    Receipt,
    ReceiptEvent,
    ReceiptItem,
    ReceiptShare,
)


def parse_uuid(value: str | uuid.UUID | None) -> Optional[uuid.UUID]:
    """Parse an identifier, returning None for anything that is not a UUID."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _is_missing_column(error: DBAPIError, column: str) -> bool:
    text = str(error.orig) if error.orig is not None else str(error)
    return column in text and ("column" in text.lower() or "no such" in text.lower())


class ReceiptRepository:
    """Data access for receipts, items, share tokens, disputes and settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    # Receipts

    async def get_receipt(self, receipt_id: str | uuid.UUID) -> Optional[Receipt]:
        parsed = parse_uuid(receipt_id)
        if parsed is None:
            return None
        result = await self.db.execute(select(Receipt).where(Receipt.id == parsed))
        return result.scalar_one_or_none()

    async def get_receipt_by_payment_id(self, payment_id: str) -> Optional[Receipt]:
        result = await self.db.execute(select(Receipt).where(Receipt.payment_id == payment_id))
        return result.scalar_one_or_none()

    async def add_receipt(self, receipt: Receipt) -> Receipt:
        """Insert a receipt and commit. Raises IntegrityError on a duplicate payment id."""
        self.db.add(receipt)
        await self.db.commit()
        return receipt

    async def list_receipts(self) -> List[Receipt]:
        result = await self.db.execute(select(Receipt).order_by(Receipt.created_at.desc()))
        return list(result.scalars().all())

    async def get_receipt_items(self, receipt_id: uuid.UUID) -> List[ReceiptItem]:
        result = await self.db.execute(
            select(ReceiptItem)
            .where(ReceiptItem.receipt_id == receipt_id)
            .order_by(ReceiptItem.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_items_for_receipts(
        self, receipt_ids: Sequence[uuid.UUID]
    ) -> Dict[uuid.UUID, List[ReceiptItem]]:
        grouped: Dict[uuid.UUID, List[ReceiptItem]] = {rid: [] for rid in receipt_ids}
        if not receipt_ids:
            return grouped
        result = await self.db.execute(
            select(ReceiptItem)
            .where(ReceiptItem.receipt_id.in_(receipt_ids))
            .order_by(ReceiptItem.created_at.asc())
        )
        for item in result.scalars().all():
            grouped.setdefault(item.receipt_id, []).append(item)
        return grouped

    async def add_receipt_items(self, items: Iterable[ReceiptItem]) -> List[ReceiptItem]:
        items = list(items)
        self.db.add_all(items)
        await self.db.commit()
        return items

    # Share tokens

    async def get_share_by_token(self, token: str) -> Optional[ReceiptShare]:
        result = await self.db.execute(select(ReceiptShare).where(ReceiptShare.token == token))
        return result.scalar_one_or_none()

    async def token_exists(self, token: str) -> bool:
        result = await self.db.execute(
            select(ReceiptShare.id).where(ReceiptShare.token == token).limit(1)
        )
        return result.first() is not None

    async def find_non_expiring_share(self, receipt_id: uuid.UUID) -> Optional[ReceiptShare]:
        """Most recent share for the receipt that has no expiry."""
        result = await self.db.execute(
            select(ReceiptShare)
            .where(ReceiptShare.receipt_id == receipt_id, ReceiptShare.expires_at.is_(None))
            .order_by(ReceiptShare.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_share(self, share: ReceiptShare) -> ReceiptShare:
        self.db.add(share)
        await self.db.commit()
        return share

    # Disputes

    async def get_active_disputes(self, receipt_id: uuid.UUID) -> List[Row[Any]]:
        """(id, status) rows of submitted or in-review disputes."""
        result = await self.db.execute(
            select(Dispute.id, Dispute.status).where(
                Dispute.receipt_id == receipt_id,
                Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
            )
        )
        return list(result.all())

    async def get_dispute_statuses(
        self, receipt_ids: Sequence[uuid.UUID]
    ) -> List[Tuple[uuid.UUID, str]]:
        if not receipt_ids:
            return []
        result = await self.db.execute(
            select(Dispute.receipt_id, Dispute.status).where(Dispute.receipt_id.in_(receipt_ids))
        )
        return [(row.receipt_id, row.status) for row in result.all()]

    async def insert_dispute(self, values: Dict[str, Any]) -> uuid.UUID:
        """
        Insert a dispute row and commit.

        Raises:
            StoreSchemaMismatch: if the store lacks ``total_amount_cents``
        """
        values = dict(values)
        dispute_id = values.pop("id", None) or uuid.uuid4()
        try:
            await self.db.execute(insert(Dispute.__table__).values(id=dispute_id, **values))
            await self.db.commit()
        except DBAPIError as e:
            await self.db.rollback()
            if "total_amount_cents" in values and _is_missing_column(e, "total_amount_cents"):
                raise StoreSchemaMismatch(
                    "disputes.total_amount_cents column not found", missing="total_amount_cents"
                ) from e
            raise
        return dispute_id

    async def add_dispute_items(self, items: Iterable[DisputeItem]) -> List[DisputeItem]:
        items = list(items)
        self.db.add_all(items)
        await self.db.commit()
        return items

    async def get_dispute(self, dispute_id: str | uuid.UUID) -> Optional[Dispute]:
        parsed = parse_uuid(dispute_id)
        if parsed is None:
            return None
        result = await self.db.execute(select(Dispute).where(Dispute.id == parsed))
        return result.scalar_one_or_none()

    async def list_disputes(self, offset: int, limit: int) -> Tuple[List[Dispute], int]:
        total = await self.db.scalar(select(func.count()).select_from(Dispute))
        result = await self.db.execute(
            select(Dispute).order_by(Dispute.created_at.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)

    async def count_dispute_items(
        self, dispute_ids: Sequence[uuid.UUID]
    ) -> Dict[uuid.UUID, int]:
        if not dispute_ids:
            return {}
        result = await self.db.execute(
            select(DisputeItem.dispute_id, func.count(DisputeItem.id))
            .where(DisputeItem.dispute_id.in_(dispute_ids))
            .group_by(DisputeItem.dispute_id)
        )
        return {dispute_id: count for dispute_id, count in result.all()}

    async def get_dispute_items(self, dispute_id: uuid.UUID) -> List[DisputeItem]:
        result = await self.db.execute(
            select(DisputeItem).where(DisputeItem.dispute_id == dispute_id)
        )
        return list(result.scalars().all())

    async def get_dispute_item_details(self, dispute_id: uuid.UUID) -> List[Row[Any]]:
        """Dispute items joined with the receipt item they reference."""
        result = await self.db.execute(
            select(
                DisputeItem.id,
                DisputeItem.quantity,
                DisputeItem.amount_cents,
                ReceiptItem.item_name,
                ReceiptItem.item_price,
            )
            .outerjoin(ReceiptItem, ReceiptItem.id == DisputeItem.receipt_item_id)
            .where(DisputeItem.dispute_id == dispute_id)
        )
        return list(result.all())

    async def latest_active_dispute(self, receipt_id: uuid.UUID) -> Optional[Dispute]:
        result = await self.db.execute(
            select(Dispute)
            .where(
                Dispute.receipt_id == receipt_id,
                Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
            )
            .order_by(Dispute.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def set_dispute_status(self, dispute: Dispute, status: str) -> Dispute:
        dispute.status = status
        await self.db.commit()
        return dispute

    # Settings

    async def get_setting(self, key: str) -> Optional[BankSetting]:
        result = await self.db.execute(select(BankSetting).where(BankSetting.key == key))
        return result.scalar_one_or_none()

    async def upsert_setting(
        self, key: str, value: Dict[str, Any], description: Optional[str] = None
    ) -> BankSetting:
        setting = await self.get_setting(key)
        if setting is None:
            setting = BankSetting(key=key, value=value, description=description)
            self.db.add(setting)
        else:
            setting.value = value
            if description is not None:
                setting.description = description
        await self.db.commit()
        return setting

    # Events

    async def add_event(
        self,
        event_type: str,
        receipt_id: Optional[str],
        event_data: Dict[str, Any],
        created_at: Optional[datetime] = None,
    ) -> None:
        event = ReceiptEvent(event_type=event_type, receipt_id=receipt_id, event_data=event_data)
        if created_at is not None:
            event.created_at = created_at
        self.db.add(event)
        await self.db.commit()

    async def list_events(
        self,
        offset: int,
        limit: int,
        event_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Tuple[List[ReceiptEvent], int]:
        """Events newest first, filtered by type and a closed created_at range."""
        conditions = []
        if event_type:
            conditions.append(ReceiptEvent.event_type == event_type)
        if start is not None:
            conditions.append(ReceiptEvent.created_at >= start)
        if end is not None:
            conditions.append(ReceiptEvent.created_at <= end)

        total = await self.db.scalar(
            select(func.count()).select_from(ReceiptEvent).where(*conditions)
        )
        result = await self.db.execute(
            select(ReceiptEvent)
            .where(*conditions)
            .order_by(ReceiptEvent.created_at.desc(), ReceiptEvent.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), int(total or 0)

    async def count_events(self, event_type: str, since: Optional[datetime] = None) -> int:
        query = select(func.count()).select_from(ReceiptEvent).where(
            ReceiptEvent.event_type == event_type
        )
        if since is not None:
            query = query.where(ReceiptEvent.created_at >= since)
        return int(await self.db.scalar(query) or 0)

    async def get_event_times(self, event_type: str, since: datetime) -> List[datetime]:
        result = await self.db.execute(
            select(ReceiptEvent.created_at).where(
                ReceiptEvent.event_type == event_type, ReceiptEvent.created_at >= since
            )
        )
        return list(result.scalars().all())

    async def get_event_data(self, event_type: str) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(ReceiptEvent.event_data).where(ReceiptEvent.event_type == event_type)
        )
        return list(result.scalars().all())

    # Reporting

    async def count_disputes(self, since: Optional[datetime] = None) -> int:
        query = select(func.count()).select_from(Dispute)
        if since is not None:
            query = query.where(Dispute.created_at >= since)
        return int(await self.db.scalar(query) or 0)

    async def get_dispute_times(self, since: datetime) -> List[datetime]:
        result = await self.db.execute(
            select(Dispute.created_at).where(Dispute.created_at >= since)
        )
        return list(result.scalars().all())

    async def count_receipts_by_confidence(self) -> Dict[Optional[str], int]:
        result = await self.db.execute(
            select(Receipt.confidence_label, func.count(Receipt.id)).group_by(
                Receipt.confidence_label
            )
        )
        return {label: count for label, count in result.all()}
