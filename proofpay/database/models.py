"""SQLAlchemy database models for receipts, share tokens and disputes."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReceiptSource(str, Enum):
    WEBHOOK = "webhook"
    SIMULATED = "simulated"


class ConfidenceLabel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ShareStatus(str, Enum):
    ACTIVE = "active"
    VERIFIED = "verified"
    USED = "used"
    VOIDED = "voided"
    EXPIRED = "expired"


class DisputeStatus(str, Enum):
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"


ACTIVE_DISPUTE_STATUSES = (DisputeStatus.SUBMITTED.value, DisputeStatus.IN_REVIEW.value)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Receipt(Base):
    """
    Receipt records table.

    One row per ingested payment. ``payment_id`` is unique so that
    redelivered payment events can never create a second receipt.
    """

    __tablename__ = "receipts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReceiptSource.WEBHOOK.value
    )
    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    confidence_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence_label: Mapped[str | None] = mapped_column(String(10), nullable=True)
    refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    demo_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    demo_disputed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    demo_expired_qr: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint("source IN ('webhook', 'simulated')", name="valid_receipt_source"),
        CheckConstraint(
            "confidence_score IS NULL OR (confidence_score >= 0 AND confidence_score <= 100)",
            name="valid_confidence_score",
        ),
        CheckConstraint(
            "confidence_label IS NULL OR confidence_label IN ('HIGH', 'MEDIUM', 'LOW')",
            name="valid_confidence_label",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Receipt."""
        return (
            f"<Receipt(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount}, source={self.source})>"
        )


class ReceiptItem(Base):
    """Line items of a receipt, created in bulk at ingestion time."""

    __tablename__ = "receipt_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    receipt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    item_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (CheckConstraint("quantity >= 1", name="positive_item_quantity"),)

    def __repr__(self) -> str:
        return f"<ReceiptItem(id={self.id}, name={self.item_name}, qty={self.quantity})>"


class ReceiptShare(Base):
    """
    Share tokens table.

    A share token is a bearer capability granting read access to one
    receipt's verification data. Rows are never deleted; revocation is
    the ``voided`` status.
    """

    __tablename__ = "receipt_shares"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    receipt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ShareStatus.ACTIVE.value
    )
    single_use: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    verification_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'verified', 'used', 'voided', 'expired')",
            name="valid_share_status",
        ),
        CheckConstraint("view_count >= 0", name="non_negative_view_count"),
        CheckConstraint("verification_attempts >= 0", name="non_negative_attempts"),
        Index("idx_receipt_shares_receipt_expiry", "receipt_id", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReceiptShare(id={self.id}, receipt_id={self.receipt_id}, "
            f"status={self.status}, views={self.view_count})>"
        )


class Dispute(Base):
    """Customer disputes against (part of) a receipt."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    receipt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("receipts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DisputeStatus.SUBMITTED.value
    )
    reason_code: Mapped[str] = mapped_column(String(100), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_amount_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('submitted', 'in_review', 'resolved')", name="valid_dispute_status"
        ),
        Index("idx_disputes_receipt_status", "receipt_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Dispute(id={self.id}, receipt_id={self.receipt_id}, status={self.status})>"


class DisputeItem(Base):
    """Receipt items selected in a dispute, with the disputed amount in cents."""

    __tablename__ = "dispute_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    receipt_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("receipt_items.id", ondelete="CASCADE"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_dispute_quantity"),)


class BankSetting(Base):
    """Administrative key/value settings (threshold, kill switch, retention)."""

    __tablename__ = "bank_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class ReceiptEvent(Base):
    """
    Receipt audit trail table.

    Append-only record of views, shares, verifications and disputes.
    """

    __tablename__ = "receipt_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    receipt_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )

    def __repr__(self) -> str:
        return f"<ReceiptEvent(id={self.id}, type={self.event_type})>"
