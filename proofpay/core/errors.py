"""
Exception taxonomy for the receipts service.

Every exception carries a machine-readable ``error_code``, a message that
is safe to show to callers and the HTTP status the API layer maps it to.
Token verification never raises these for a bad token; an unusable token
is reported as a verification state instead.
"""
from typing import Any, Dict, Optional


class ProofPayError(Exception):
    """Base exception for all receipt service errors."""

    error_code = "internal_error"
    http_status = 500

    def __init__(self, message: str, user_message: Optional[str] = None, **metadata: Any):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message
        self.metadata = metadata

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


class NotFoundError(ProofPayError):
    """A receipt, dispute or receipt item does not exist."""

    error_code = "not_found"
    http_status = 404


class ValidationError(ProofPayError):
    """Malformed input: dispute selection, settings values, webhook payloads."""

    error_code = "validation_error"
    http_status = 400


class ConflictError(ProofPayError):
    error_code = "conflict"
    http_status = 409


class TokenGenerationExhausted(ProofPayError):
    """No collision-free share token was found within the retry bound."""

    error_code = "token_generation_exhausted"
    http_status = 503

    def __init__(self, attempts: int):
        super().__init__(
            f"Failed to generate unique token after {attempts} attempts",
            user_message="Could not create a share link. Please try again.",
            attempts=attempts,
        )
        self.attempts = attempts


class UpstreamUnavailable(ProofPayError):
    """The payment processor could not be reached or rejected the request."""

    error_code = "upstream_unavailable"
    http_status = 502

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        transient: bool = True,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, user_message="Payment processor unavailable")
        self.operation = operation
        self.transient = transient
        self.status_code = status_code


class StoreSchemaMismatch(ProofPayError):
    """An expected column or table is missing from the store."""

    error_code = "store_schema_mismatch"
    http_status = 500

    def __init__(self, message: str, missing: Optional[str] = None):
        super().__init__(message, user_message="Storage is not fully migrated")
        self.missing = missing


class FeatureDisabledError(ProofPayError):
    """Receipts are switched off by the feature toggle or the kill switch."""

    error_code = "feature_disabled"
    http_status = 503

    def __init__(self, reason: str):
        super().__init__(
            f"Receipts unavailable: {reason}",
            user_message="Receipts are currently unavailable",
            reason=reason,
        )
        self.reason = reason
