"""
Verification state resolution.

Classifies a share token and its receipt as VALID, REFUNDED, DISPUTED,
EXPIRED or INVALID. The resolver is pure: it reads the rows handed to
it and never touches the store.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from proofpay.database.models import ACTIVE_DISPUTE_STATUSES, ReceiptSource, ShareStatus


class VerificationState(str, Enum):
    """Resolved classification of a token and receipt pair."""

    VALID = "VALID"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"
    EXPIRED = "EXPIRED"
    INVALID = "INVALID"


class DemoOverride(str, Enum):
    """State forced onto a simulated receipt by its demo flags."""

    NONE = "none"
    EXPIRED_QR = "expired_qr"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


_DEMO_STATES = {
    DemoOverride.EXPIRED_QR: VerificationState.EXPIRED,
    DemoOverride.REFUNDED: VerificationState.REFUNDED,
    DemoOverride.DISPUTED: VerificationState.DISPUTED,
}

# States whose result may carry receipt contents
DISCLOSING_STATES = frozenset(
    {VerificationState.VALID, VerificationState.REFUNDED, VerificationState.DISPUTED}
)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite returns these) as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def demo_override_for(receipt: Any) -> DemoOverride:
    """
    Demo override of a receipt.

    Only simulated receipts can carry one; flags on webhook receipts are
    ignored. Checked in the order expired QR, refunded, disputed.
    """
    if receipt is None or receipt.source != ReceiptSource.SIMULATED.value:
        return DemoOverride.NONE
    if receipt.demo_expired_qr:
        return DemoOverride.EXPIRED_QR
    if receipt.demo_refunded:
        return DemoOverride.REFUNDED
    if receipt.demo_disputed:
        return DemoOverride.DISPUTED
    return DemoOverride.NONE


def is_expired(share: Any, now: datetime) -> bool:
    expires_at = ensure_aware(share.expires_at) if share is not None else None
    return expires_at is not None and expires_at < now


def resolve_verification_state(
    share: Any,
    receipt: Any,
    active_disputes: Iterable[Any] = (),
    now: Optional[datetime] = None,
) -> VerificationState:
    """
    Resolve the verification state of a share token.

    First match wins: expiry, then revocation and consumption, then the
    receipt's own state (demo overrides, refund, active disputes).

    Args:
        share: Share token row, or None when the token is unknown
        receipt: Owning receipt row, or None when it no longer exists
        active_disputes: Dispute rows (anything with a ``status``) for the receipt
        now: Reference time, defaults to the current UTC time

    Returns:
        VerificationState: Resolved state
    """
    now = ensure_aware(now) or datetime.now(timezone.utc)

    if is_expired(share, now):
        return VerificationState.EXPIRED

    if share is None or share.status == ShareStatus.VOIDED.value:
        return VerificationState.INVALID

    if share.single_use and share.used_at is not None:
        return VerificationState.INVALID

    if receipt is None:
        return VerificationState.INVALID

    override = demo_override_for(receipt)
    if override is not DemoOverride.NONE:
        return _DEMO_STATES[override]

    if receipt.refunded:
        return VerificationState.REFUNDED

    if any(d.status in ACTIVE_DISPUTE_STATUSES for d in active_disputes):
        return VerificationState.DISPUTED

    return VerificationState.VALID
