"""External integrations: Square API client and webhook handling."""
from .square_client import CircuitBreaker, SquareClient
from .webhook_handler import SquareWebhookEvent, WebhookError, WebhookHandler

__all__ = [
    "CircuitBreaker",
    "SquareClient",
    "SquareWebhookEvent",
    "WebhookError",
    "WebhookHandler",
]
