"""
Square webhook handler with signature verification.

Implements:
- HMAC-SHA256 signature verification
- Strict parsing of event payloads (single event or batch)
- Event type routing to registered handlers
- Receipt ingestion for ``payment.created``

Redelivered events need no deduplication store: ingestion is idempotent
per payment id.
"""
import base64
import hashlib
import hmac
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.config import Settings, get_settings
from proofpay.core.errors import ProofPayError, UpstreamUnavailable, ValidationError
from proofpay.core.ingestion import ReceiptIngestor
from proofpay.integrations.square_client import SquareClient
from proofpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_CREATED = "payment.created"
SIGNATURE_HEADER = "x-square-hmacsha256-signature"

EventHandler = Callable[["SquareWebhookEvent", AsyncSession], Awaitable[Dict[str, Any]]]


class WebhookError(ProofPayError):
    """Raised when a webhook cannot be authenticated or processed."""

    error_code = "webhook_error"
    http_status = 401


class SquareWebhookEvent(BaseModel):
    """A Square webhook notification."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    merchant_id: Optional[str] = None
    created_at: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def payment_id(self) -> Optional[str]:
        """``data.object.payment.id`` of a payment event."""
        obj = self.data.get("object") or {}
        payment = obj.get("payment") if isinstance(obj, dict) else None
        if isinstance(payment, dict):
            return payment.get("id")
        return None


def parse_events(payload: Any) -> List[SquareWebhookEvent]:
    """
    Parse a webhook body into events.

    Raises:
        ValidationError: If the body is not an event or a list of events,
            or an event lacks ``type`` or ``event_id``
    """
    raw_events = payload if isinstance(payload, list) else [payload]
    if not raw_events:
        raise ValidationError("Empty webhook payload", user_message="No events in payload")

    parsed = []
    for raw in raw_events:
        if not isinstance(raw, dict):
            raise ValidationError(
                "Webhook event is not an object", user_message="Each event must be an object"
            )
        try:
            parsed.append(SquareWebhookEvent.model_validate(raw))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid webhook event: {e.errors()}",
                user_message="Each event must have type and event_id",
            ) from e
    return parsed


class WebhookHandler:
    """
    Handles Square webhook events.

    ``payment.created`` is registered by default; other event types are
    acknowledged and ignored.
    """

    def __init__(
        self,
        square_client: Optional[SquareClient] = None,
        ingestor: Optional[ReceiptIngestor] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.square_client = square_client or SquareClient(settings=self.settings)
        self.ingestor = ingestor or ReceiptIngestor(settings=self.settings)
        self.event_handlers: Dict[str, EventHandler] = {}
        self.register_handler(PAYMENT_CREATED, self.handle_payment_created)

        logger.debug("webhook_handler_initialized")

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Square event type (e.g., 'payment.created')
            handler: Async callable taking the event and a database session
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """
        Verify the Square signature of a webhook body.

        The expected signature is base64(HMAC-SHA256(key, notification_url + body)).
        Skipped when no signature key is configured.

        Raises:
            WebhookError: If the signature is missing or does not match
        """
        key = self.settings.square_webhook_signature_key
        if not key:
            return
        if not signature:
            logger.error("webhook_signature_missing")
            raise WebhookError("Missing webhook signature", user_message="Invalid signature")

        url = self.settings.square_webhook_url or ""
        digest = hmac.new(key.encode(), url.encode() + body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        if not hmac.compare_digest(expected, signature):
            logger.error("webhook_signature_verification_failed")
            raise WebhookError("Webhook signature mismatch", user_message="Invalid signature")

    async def handle_body(
        self, body: bytes, signature: Optional[str], db: AsyncSession
    ) -> List[Dict[str, Any]]:
        """Verify, parse and process a raw webhook body."""
        self.verify_signature(body, signature)
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ValidationError("Webhook body is not JSON", user_message="Invalid JSON") from e
        return await self.process_payload(payload, db)

    async def process_payload(self, payload: Any, db: AsyncSession) -> List[Dict[str, Any]]:
        """Process a single event or a batch of events, in order."""
        results = []
        for event in parse_events(payload):
            results.append(await self.process_event(event, db))
        return results

    async def process_event(self, event: SquareWebhookEvent, db: AsyncSession) -> Dict[str, Any]:
        """
        Route one event to its handler.

        Returns:
            Dict[str, Any]: status (processed or ignored), event id and type, handler result

        Raises:
            ProofPayError: If the handler fails
        """
        start = time.monotonic()
        logger.info("processing_webhook_event", event_id=event.event_id, event_type=event.type)

        handler = self.event_handlers.get(event.type)
        if handler is None:
            logger.info("webhook_event_ignored", event_id=event.event_id, event_type=event.type)
            metrics.record_webhook_event(event.type, "ignored", time.monotonic() - start)
            return {
                "status": "ignored",
                "event_id": event.event_id,
                "event_type": event.type,
            }

        try:
            result = await handler(event, db)
        except ProofPayError as e:
            metrics.record_webhook_event(event.type, "failed", time.monotonic() - start)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event.event_id,
                event_type=event.type,
                error=str(e),
            )
            raise

        metrics.record_webhook_event(event.type, "processed", time.monotonic() - start)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event.event_id,
            event_type=event.type,
        )
        return {
            "status": "processed",
            "event_id": event.event_id,
            "event_type": event.type,
            "result": result,
        }

    async def handle_payment_created(
        self, event: SquareWebhookEvent, db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Ingest the payment of a ``payment.created`` event.

        The order is fetched when the payment has one; if that fails the
        receipt is still created, without items.

        Raises:
            ValidationError: If the event has no payment id
            UpstreamUnavailable: If the payment itself cannot be fetched
        """
        payment_id = event.payment_id
        if not payment_id:
            raise ValidationError(
                f"Event {event.event_id} has no payment id",
                user_message="Payment ID missing in webhook payload",
            )

        payment = await self.square_client.get_payment(payment_id)

        order = None
        if payment.order_id:
            try:
                order = await self.square_client.get_order(payment.order_id)
            except UpstreamUnavailable as e:
                logger.warning(
                    "order_fetch_failed",
                    payment_id=payment_id,
                    order_id=payment.order_id,
                    error=str(e),
                )

        result = await self.ingestor.ingest(payment, db=db, order=order)
        return {
            "receipt_id": str(result.receipt_id),
            "payment_id": result.payment_id,
            "item_count": result.item_count,
            "created": result.created,
        }
