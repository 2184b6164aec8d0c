"""
Share token lifecycle.

Issues share tokens for receipts, resolves presented tokens to a
verification state, and records the side effects of every presentation:
view and attempt counters, lazy expiry, single-use consumption and the
merchant verification transitions.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.config import Settings, get_settings
from proofpay.core import events
from proofpay.core.admin_settings import AdminSettingsService
from proofpay.core.confidence import apply_confidence_gate
from proofpay.core.disputes import DisputeService
from proofpay.core.errors import NotFoundError, TokenGenerationExhausted
from proofpay.core.events import EventSink, LoggingEventSink, record_event
from proofpay.core.receipts import item_summary, receipt_summary
from proofpay.core.tokens import generate_share_token, token_preview
from proofpay.core.verification import (
    DISCLOSING_STATES,
    VerificationState,
    ensure_aware,
    resolve_verification_state,
)
from proofpay.database.models import Receipt, ReceiptShare, ShareStatus
from proofpay.database.repository import ReceiptRepository
from proofpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# INVALID never says whether the token never existed or was voided
FAILURE_REASONS = {
    VerificationState.EXPIRED: "Token expired",
    VerificationState.REFUNDED: "Receipt refunded",
    VerificationState.DISPUTED: "Receipt disputed",
    VerificationState.INVALID: "Token invalid",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    value = ensure_aware(value)
    return value.isoformat() if value is not None else None


def share_counters(share: ReceiptShare) -> Dict[str, Any]:
    """Caller-facing counters and timestamps of a share token."""
    return {
        "status": share.status,
        "single_use": share.single_use,
        "view_count": share.view_count,
        "verification_attempts": share.verification_attempts,
        "expires_at": _isoformat(share.expires_at),
        "used_at": _isoformat(share.used_at),
        "verified_at": _isoformat(share.verified_at),
    }


class ShareTokenService:
    """
    Share token issuance and resolution.

    Every presentation of a known token is counted, whatever state it
    resolves to. Bad tokens are never raised as errors; they resolve to
    INVALID or EXPIRED.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        admin_settings: Optional[AdminSettingsService] = None,
        dispute_service: Optional[DisputeService] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.settings = settings or get_settings()
        self.event_sink = event_sink or LoggingEventSink()
        self.admin_settings = admin_settings or AdminSettingsService(
            settings=self.settings, event_sink=self.event_sink
        )
        self.dispute_service = dispute_service or DisputeService(
            settings=self.settings, event_sink=self.event_sink
        )

    def get_verify_url(self, token: str) -> str:
        return f"{self.settings.web_app_url.rstrip('/')}/verify/{token}"

    def _share_response(self, share: ReceiptShare, reused: bool) -> Dict[str, Any]:
        return {
            "id": str(share.id),
            "token": share.token,
            "verify_url": self.get_verify_url(share.token),
            "created_at": _isoformat(share.created_at),
            "expires_at": _isoformat(share.expires_at),
            "single_use": share.single_use,
            "reused": reused,
        }

    async def _unique_token(self, repo: ReceiptRepository) -> str:
        max_attempts = self.settings.share_token_max_attempts
        for attempt in range(1, max_attempts + 1):
            candidate = generate_share_token(self.settings.share_token_length)
            if not await repo.token_exists(candidate):
                return candidate
            logger.warning("share_token_collision", attempt=attempt)
        raise TokenGenerationExhausted(max_attempts)

    async def create_or_get_share_token(
        self,
        receipt_id: str | uuid.UUID,
        db: AsyncSession,
        expires_at: Optional[datetime] = None,
        single_use: Optional[bool] = None,
        reuse_existing: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Issue a share token for a receipt.

        With ``reuse_existing`` on (the configured default), the receipt's
        most recent non-expiring token is returned unchanged instead of a
        new one.

        Args:
            receipt_id: Receipt to share
            db: Database session
            expires_at: Optional expiry of the new token
            single_use: Single-use flag; defaults to the administrator setting
            reuse_existing: Reuse policy; defaults to ``share_reuse_existing``

        Returns:
            Dict[str, Any]: id, token, verify_url, created_at, expires_at

        Raises:
            NotFoundError: If the receipt does not exist
            TokenGenerationExhausted: If no unique token could be generated
        """
        repo = ReceiptRepository(db)
        receipt = await repo.get_receipt(receipt_id)
        if receipt is None:
            raise NotFoundError(f"Receipt {receipt_id} not found", user_message="Receipt not found")

        if reuse_existing is None:
            reuse_existing = self.settings.share_reuse_existing

        if reuse_existing:
            existing = await repo.find_non_expiring_share(receipt.id)
            if existing is not None:
                logger.info(
                    "share_token_reused",
                    receipt_id=str(receipt.id),
                    token=token_preview(existing.token),
                )
                metrics.record_share_issued("reused")
                return self._share_response(existing, reused=True)

        token = await self._unique_token(repo)
        if expires_at is not None:
            expires_at = ensure_aware(expires_at).astimezone(timezone.utc)

        if single_use is None:
            single_use = await self.admin_settings.get_qr_single_use(db)

        share = ReceiptShare(
            receipt_id=receipt.id,
            token=token,
            status=ShareStatus.ACTIVE.value,
            single_use=single_use,
            expires_at=expires_at,
            view_count=0,
            verification_attempts=0,
        )
        await repo.add_share(share)

        logger.info(
            "share_token_created",
            receipt_id=str(receipt.id),
            token=token_preview(token),
            single_use=single_use,
            expires_at=_isoformat(expires_at),
        )
        metrics.record_share_issued("created")
        await record_event(
            self.event_sink,
            events.RECEIPT_SHARE_CREATED,
            str(receipt.id),
            share_id=str(share.id),
            single_use=single_use,
            expires_at=_isoformat(expires_at),
        )
        return self._share_response(share, reused=False)

    async def void_share_token(
        self, token: str, db: AsyncSession, reason: Optional[str] = None
    ) -> bool:
        """
        Void a share token.

        Idempotent: voiding an already voided token succeeds again.

        Returns:
            bool: False if the token is unknown
        """
        repo = ReceiptRepository(db)
        share = await repo.get_share_by_token(token)
        if share is None:
            logger.info("share_token_void_unknown", token=token_preview(token))
            return False

        previous_status = share.status
        share.status = ShareStatus.VOIDED.value
        await repo.commit()

        logger.info(
            "share_token_voided",
            receipt_id=str(share.receipt_id),
            token=token_preview(token),
            previous_status=previous_status,
            reason=reason,
        )
        metrics.record_share_voided()
        await record_event(
            self.event_sink,
            events.RECEIPT_SHARE_VOIDED,
            str(share.receipt_id),
            share_id=str(share.id),
            previous_status=previous_status,
            reason=reason,
        )
        return True

    async def _load(
        self, repo: ReceiptRepository, share: ReceiptShare, now: datetime
    ) -> tuple[Optional[Receipt], VerificationState]:
        receipt = await repo.get_receipt(share.receipt_id)
        active_disputes = await repo.get_active_disputes(receipt.id) if receipt else []
        state = resolve_verification_state(share, receipt, active_disputes, now=now)
        return receipt, state

    async def _receipt_payload(
        self, receipt: Receipt, state: VerificationState, db: AsyncSession
    ) -> Dict[str, Any]:
        """Receipt, gated items and dispute detail for a disclosing state."""
        threshold = await self.admin_settings.get_confidence_threshold(db)
        items = await ReceiptRepository(db).get_receipt_items(receipt.id)
        gated = apply_confidence_gate(receipt, items, threshold)
        dispute = None
        if state is VerificationState.DISPUTED:
            dispute = await self.dispute_service.get_active_dispute_detail(receipt.id, db)
        return {
            "receipt": receipt_summary(receipt),
            "items": [item_summary(i) for i in gated.items],
            "below_threshold": gated.below_threshold,
            "dispute": dispute,
        }

    async def get_receipt_by_token(self, token: str, db: AsyncSession) -> Dict[str, Any]:
        """
        Resolve a presented token (public, unauthenticated).

        Side effects on a known token, in one update:
        - view and attempt counters always increase
        - an expired token is marked ``expired`` the first time it is seen
        - a single-use token is consumed by its first VALID read

        Returns:
            Dict[str, Any]: state, receipt, items, share, dispute, below_threshold.
            Receipt data is only present for VALID, REFUNDED and DISPUTED.
        """
        result: Dict[str, Any] = {
            "state": VerificationState.INVALID,
            "receipt": None,
            "items": [],
            "share": None,
            "dispute": None,
            "below_threshold": False,
        }

        repo = ReceiptRepository(db)
        share = await repo.get_share_by_token(token)
        if share is None:
            logger.info("share_token_not_found", token=token_preview(token))
            metrics.record_verification("view", VerificationState.INVALID.value)
            return result

        now = _utcnow()
        receipt, state = await self._load(repo, share, now)

        if state is VerificationState.EXPIRED and share.status != ShareStatus.EXPIRED.value:
            share.status = ShareStatus.EXPIRED.value
        share.view_count += 1
        share.verification_attempts += 1
        if state is VerificationState.VALID and share.single_use and share.used_at is None:
            share.used_at = now
        await repo.commit()

        result["state"] = state
        result["share"] = share_counters(share)
        if receipt is not None and state in DISCLOSING_STATES:
            result.update(await self._receipt_payload(receipt, state, db))

        logger.info(
            "share_token_resolved",
            receipt_id=str(share.receipt_id),
            token=token_preview(token),
            state=state.value,
            view_count=share.view_count,
        )
        metrics.record_verification("view", state.value)
        await record_event(
            self.event_sink,
            events.RECEIPT_SHARE_VIEWED,
            str(share.receipt_id),
            share_id=str(share.id),
            state=state.value,
            view_count=share.view_count,
        )
        return result

    async def verify_share_token(
        self,
        token: str,
        db: AsyncSession,
        actor_id: Optional[str] = None,
        mark_as_used: bool = False,
    ) -> Dict[str, Any]:
        """
        Merchant-facing verification of a presented token.

        On VALID an ``active`` token becomes ``verified`` (recording who and
        when), and becomes ``used`` only when ``mark_as_used`` is requested.
        Asking to mark a token that is already ``used`` resolves INVALID.

        Returns:
            Dict[str, Any]: valid, state, status, reason, receipt, share
        """
        repo = ReceiptRepository(db)
        share = await repo.get_share_by_token(token)
        if share is None:
            logger.info("share_token_not_found", token=token_preview(token))
            metrics.record_verification("verify", VerificationState.INVALID.value)
            return {
                "valid": False,
                "state": VerificationState.INVALID,
                "status": None,
                "reason": FAILURE_REASONS[VerificationState.INVALID],
                "receipt": None,
                "share": None,
            }

        now = _utcnow()
        receipt, state = await self._load(repo, share, now)
        if (
            state is VerificationState.VALID
            and mark_as_used
            and share.status == ShareStatus.USED.value
        ):
            state = VerificationState.INVALID

        if state is VerificationState.EXPIRED and share.status != ShareStatus.EXPIRED.value:
            share.status = ShareStatus.EXPIRED.value
        share.verification_attempts += 1

        valid = state is VerificationState.VALID
        if valid:
            if share.status == ShareStatus.ACTIVE.value:
                share.status = ShareStatus.VERIFIED.value
                share.verified_at = now
                share.verified_by = actor_id
            if mark_as_used:
                share.status = ShareStatus.USED.value
                if share.used_at is None:
                    share.used_at = now
        await repo.commit()

        receipt_id = str(share.receipt_id)
        metrics.record_verification("verify", state.value)
        if valid:
            logger.info(
                "share_token_verified",
                receipt_id=receipt_id,
                token=token_preview(token),
                actor_id=actor_id,
                status=share.status,
            )
            await record_event(
                self.event_sink,
                events.RECEIPT_VERIFIED,
                receipt_id,
                share_id=str(share.id),
                actor_id=actor_id,
                mark_as_used=mark_as_used,
            )
        else:
            logger.info(
                "share_token_verification_failed",
                receipt_id=receipt_id,
                token=token_preview(token),
                state=state.value,
            )
            await record_event(
                self.event_sink,
                events.RECEIPT_VERIFICATION_FAILED,
                receipt_id,
                share_id=str(share.id),
                state=state.value,
                actor_id=actor_id,
            )

        return {
            "valid": valid,
            "state": state,
            "status": share.status,
            "reason": None if valid else FAILURE_REASONS[state],
            "receipt": (
                receipt_summary(receipt)
                if receipt is not None and state in DISCLOSING_STATES
                else None
            ),
            "share": share_counters(share),
        }
