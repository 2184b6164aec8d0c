"""
Square API client with retry logic and error classification.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Conversion of payments and orders into ingestion snapshots
"""
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from proofpay.config import Settings, get_settings
from proofpay.core.errors import UpstreamUnavailable
from proofpay.core.ingestion import OrderLineItem, OrderSnapshot, PaymentSnapshot
from proofpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SquareErrorType(Enum):
    """Classification of Square errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, UpstreamUnavailable) and error.transient


class CircuitBreaker:
    """
    Circuit breaker for Square API calls.

    Stops calling Square for ``timeout`` seconds after
    ``failure_threshold`` consecutive failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute a coroutine function with circuit breaker protection.

        Raises:
            UpstreamUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise UpstreamUnavailable("Circuit breaker is open", transient=False)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class SquareClient:
    """
    Read-only Square client for payments and orders.

    Features:
    - Automatic retry with exponential backoff
    - Circuit breaker pattern
    - Every failure surfaces as UpstreamUnavailable
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.square_base_url,
            timeout=self.settings.upstream_timeout_seconds,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)

        logger.info(
            "square_client_initialized",
            environment=self.settings.square_environment,
            api_version=self.settings.square_api_version,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Square-Version": self.settings.square_api_version,
            "Accept": "application/json",
        }
        if self.settings.square_access_token:
            headers["Authorization"] = f"Bearer {self.settings.square_access_token}"
        return headers

    @staticmethod
    def _classify_status(status_code: int) -> SquareErrorType:
        if status_code == 429:
            return SquareErrorType.RATE_LIMIT
        if status_code >= 500:
            return SquareErrorType.TRANSIENT
        return SquareErrorType.PERMANENT

    async def _get(self, operation: str, path: str) -> Dict[str, Any]:
        """Single GET against Square, classified into UpstreamUnavailable."""
        start = time.monotonic()
        try:
            response = await self.http_client.get(path, headers=self._headers())
        except httpx.HTTPError as e:
            metrics.record_upstream_call(operation, "error", time.monotonic() - start)
            logger.error("square_api_error", operation=operation, error_type="transport", error=str(e))
            raise UpstreamUnavailable(
                f"Square {operation} failed: {e}", operation=operation, transient=True
            ) from e

        duration = time.monotonic() - start
        if response.status_code >= 400:
            error_type = self._classify_status(response.status_code)
            metrics.record_upstream_call(operation, str(response.status_code), duration)
            logger.error(
                "square_api_error",
                operation=operation,
                error_type=error_type.value,
                status_code=response.status_code,
            )
            raise UpstreamUnavailable(
                f"Square {operation} returned {response.status_code}",
                operation=operation,
                transient=error_type is not SquareErrorType.PERMANENT,
                status_code=response.status_code,
            )

        metrics.record_upstream_call(operation, "success", duration)
        return response.json()

    async def _call(self, operation: str, path: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.settings.upstream_retry_max_attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                body = await self.circuit_breaker.call(self._get, operation, path)
        return body

    async def get_payment(self, payment_id: str) -> PaymentSnapshot:
        """
        Fetch a payment.

        Raises:
            UpstreamUnavailable: If Square cannot be reached or rejects the request
        """
        logger.info("retrieving_payment", payment_id=payment_id)
        body = await self._call("get_payment", f"/v2/payments/{payment_id}")
        payment = body.get("payment") or {}
        amount_money = payment.get("amount_money") or {}
        return PaymentSnapshot(
            id=payment.get("id") or payment_id,
            amount_minor_units=int(amount_money.get("amount") or 0),
            currency=amount_money.get("currency") or "USD",
            order_id=payment.get("order_id"),
        )

    async def get_order(self, order_id: str) -> OrderSnapshot:
        """
        Fetch an order with its line items.

        Raises:
            UpstreamUnavailable: If Square cannot be reached or rejects the request
        """
        logger.info("retrieving_order", order_id=order_id)
        body = await self._call("get_order", f"/v2/orders/{order_id}")
        order = body.get("order") or {}
        line_items = []
        for line in order.get("line_items") or []:
            price = (line.get("base_price_money") or {}).get("amount")
            if price is None:
                price = (line.get("variation_total_price_money") or {}).get("amount")
            line_items.append(
                OrderLineItem(
                    name=line.get("name"),
                    catalog_object_id=line.get("catalog_object_id"),
                    unit_price_minor_units=price,
                    quantity=line.get("quantity", "1"),
                )
            )
        return OrderSnapshot(id=order.get("id") or order_id, line_items=line_items)

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.http_client.aclose()
