"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from proofpay.core.verification import VerificationState


class CreateShareRequest(BaseModel):
    """Request schema for issuing a share token."""

    expires_at: Optional[datetime] = Field(default=None, description="Token expiry (ISO 8601)")
    single_use: Optional[bool] = Field(
        default=None, description="Single-use token (administrator default if not specified)"
    )
    reuse_existing: Optional[bool] = Field(
        default=None, description="Return the receipt's existing non-expiring token if any"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {},
                {"expires_at": "2026-01-01T00:00:00Z", "single_use": True},
            ]
        }
    }


class ShareResponse(BaseModel):
    """Response schema for a share token."""

    id: str = Field(..., description="Share ID")
    token: str = Field(..., description="Share token")
    verify_url: str = Field(..., description="URL a third party opens to verify")
    created_at: Optional[str] = Field(default=None, description="Creation timestamp (ISO 8601)")
    expires_at: Optional[str] = Field(default=None, description="Expiry timestamp (ISO 8601)")
    single_use: bool = Field(..., description="Whether the token is consumed by its first read")
    reused: bool = Field(..., description="Whether an existing token was returned")


class TokenResolutionResponse(BaseModel):
    """Response schema for resolving a share token."""

    state: VerificationState = Field(..., description="Verification state")
    receipt: Optional[Dict[str, Any]] = Field(
        default=None, description="Receipt (VALID, REFUNDED and DISPUTED only)"
    )
    items: List[Dict[str, Any]] = Field(default_factory=list, description="Visible line items")
    share: Optional[Dict[str, Any]] = Field(default=None, description="Share token counters")
    dispute: Optional[Dict[str, Any]] = Field(default=None, description="Active dispute detail")
    below_threshold: bool = Field(default=False, description="Items withheld by confidence gate")


class VerifyRequest(BaseModel):
    """Request schema for merchant verification."""

    actor_id: Optional[str] = Field(default=None, description="Verifying merchant or terminal")
    mark_as_used: bool = Field(default=False, description="Consume the token")


class VerifyResponse(BaseModel):
    """Response schema for merchant verification."""

    valid: bool = Field(..., description="Whether the token verified")
    state: VerificationState = Field(..., description="Verification state")
    status: Optional[str] = Field(default=None, description="Share status after verification")
    reason: Optional[str] = Field(default=None, description="Why verification failed")
    receipt: Optional[Dict[str, Any]] = Field(default=None, description="Receipt summary")
    share: Optional[Dict[str, Any]] = Field(default=None, description="Share token counters")


class VoidRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Why the token is voided")


class VoidResponse(BaseModel):
    token: str
    voided: bool


class SelectedItemRequest(BaseModel):
    receipt_item_id: str = Field(..., min_length=1, description="Receipt item being disputed")
    quantity: Optional[int] = Field(
        default=None, description="Disputed quantity (full item quantity if not specified)"
    )


class CreateDisputeRequest(BaseModel):
    """Request schema for creating a dispute."""

    receipt_id: str = Field(..., min_length=1, description="Receipt ID")
    selected_items: List[SelectedItemRequest] = Field(..., min_length=1)
    reason_code: str = Field(..., min_length=1, description="Dispute reason code")
    notes: Optional[str] = Field(default=None, description="Customer notes")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "receipt_id": "123e4567-e89b-12d3-a456-426614174000",
                    "selected_items": [
                        {"receipt_item_id": "0f8fad5b-d9cb-469f-a165-70867728950e", "quantity": 1}
                    ],
                    "reason_code": "item_not_received",
                    "notes": "Never got the second coffee",
                }
            ]
        }
    }


class CreateDisputeResponse(BaseModel):
    """Response schema for dispute creation."""

    dispute_id: str = Field(..., description="Dispute ID")
    status: str = Field(..., description="Dispute status")
    disputed_total_cents: int = Field(..., description="Disputed subtotal in cents")
    item_count: int = Field(..., description="Number of disputed items")


class DisputeStatusRequest(BaseModel):
    status: str = Field(..., description="submitted, in_review or resolved")


class ThresholdRequest(BaseModel):
    threshold: float = Field(..., ge=0, le=100, description="Confidence threshold (0-100)")

    @field_validator("threshold", mode="before")
    @classmethod
    def reject_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("threshold must be a number")
        return v


class EnabledRequest(BaseModel):
    enabled: bool


class RetentionRequest(BaseModel):
    days: int = Field(..., ge=1, le=3650, description="Receipt retention in days")

    @field_validator("days", mode="before")
    @classmethod
    def reject_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("days must be a number")
        return v


class AdminSettingsResponse(BaseModel):
    """Current administrative settings."""

    confidence_threshold: float
    receipts_enabled: bool
    kill_switch: bool
    receipt_retention_days: int
    qr_single_use: bool


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    events: List[Dict[str, Any]] = Field(default_factory=list, description="Per-event results")
