"""
API routes for receipts, share tokens, disputes and administration.

Routes are thin: services raise ProofPayError subclasses, which the
application maps to their HTTP status.
"""
from datetime import date
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.core.admin_settings import AdminSettingsService
from proofpay.core.disputes import DisputeService, SelectedItem
from proofpay.core.events import DatabaseEventSink, EventSink
from proofpay.core.ingestion import ReceiptIngestor
from proofpay.core.receipts import ReceiptQueryService
from proofpay.core.reporting import ReportingService
from proofpay.core.shares import ShareTokenService
from proofpay.database.connection import get_db, get_session_factory
from proofpay.integrations.square_client import SquareClient
from proofpay.integrations.webhook_handler import SIGNATURE_HEADER, WebhookHandler
from proofpay.monitoring.health import HealthCheck

from .schemas import (
    AdminSettingsResponse,
    CreateDisputeRequest,
    CreateDisputeResponse,
    CreateShareRequest,
    DisputeStatusRequest,
    EnabledRequest,
    HealthCheckResponse,
    RetentionRequest,
    ShareResponse,
    ThresholdRequest,
    TokenResolutionResponse,
    VerifyRequest,
    VerifyResponse,
    VoidRequest,
    VoidResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
receipt_router = APIRouter(prefix="/receipts", tags=["receipts"])
verify_router = APIRouter(tags=["verification"])
dispute_router = APIRouter(prefix="/disputes", tags=["disputes"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()
_square_client: Optional[SquareClient] = None


# Service providers (overridable through app.dependency_overrides)


def get_event_sink() -> EventSink:
    return DatabaseEventSink(get_session_factory())


def get_admin_settings(sink: EventSink = Depends(get_event_sink)) -> AdminSettingsService:
    return AdminSettingsService(event_sink=sink)


def get_share_service(
    sink: EventSink = Depends(get_event_sink),
    admin_settings: AdminSettingsService = Depends(get_admin_settings),
) -> ShareTokenService:
    return ShareTokenService(
        admin_settings=admin_settings,
        dispute_service=DisputeService(event_sink=sink),
        event_sink=sink,
    )


def get_dispute_service(sink: EventSink = Depends(get_event_sink)) -> DisputeService:
    return DisputeService(event_sink=sink)


def get_receipt_service(
    sink: EventSink = Depends(get_event_sink),
    admin_settings: AdminSettingsService = Depends(get_admin_settings),
) -> ReceiptQueryService:
    return ReceiptQueryService(admin_settings=admin_settings, event_sink=sink)


def get_reporting_service() -> ReportingService:
    return ReportingService()


def get_square_client() -> SquareClient:
    global _square_client
    if _square_client is None:
        _square_client = SquareClient()
    return _square_client


async def close_square_client() -> None:
    global _square_client
    if _square_client is not None:
        await _square_client.close()
        _square_client = None


def get_webhook_handler(
    sink: EventSink = Depends(get_event_sink),
    square_client: SquareClient = Depends(get_square_client),
) -> WebhookHandler:
    return WebhookHandler(
        square_client=square_client,
        ingestor=ReceiptIngestor(event_sink=sink),
    )


# Receipts


@receipt_router.get("", summary="List receipts")
async def list_receipts(
    db: AsyncSession = Depends(get_db),
    service: ReceiptQueryService = Depends(get_receipt_service),
) -> Dict[str, Any]:
    receipts = await service.list_receipts(db)
    return {"receipts": receipts, "count": len(receipts)}


@receipt_router.get("/{receipt_id}", summary="Get receipt detail")
async def get_receipt(
    receipt_id: str,
    db: AsyncSession = Depends(get_db),
    service: ReceiptQueryService = Depends(get_receipt_service),
) -> Dict[str, Any]:
    return await service.get_receipt(receipt_id, db)


@receipt_router.post(
    "/{receipt_id}/share",
    response_model=ShareResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue a share token",
    description="Create (or reuse) a share token and verification URL for a receipt",
)
async def create_share(
    receipt_id: str,
    request: CreateShareRequest,
    db: AsyncSession = Depends(get_db),
    service: ShareTokenService = Depends(get_share_service),
) -> Dict[str, Any]:
    logger.info("api_create_share_request", receipt_id=receipt_id)
    return await service.create_or_get_share_token(
        receipt_id,
        db=db,
        expires_at=request.expires_at,
        single_use=request.single_use,
        reuse_existing=request.reuse_existing,
    )


# Verification


@verify_router.get(
    "/verify/{token}",
    response_model=TokenResolutionResponse,
    summary="Resolve a share token",
    description="Public lookup; an unusable token is reported through the state",
)
async def resolve_token(
    token: str,
    db: AsyncSession = Depends(get_db),
    service: ShareTokenService = Depends(get_share_service),
) -> Dict[str, Any]:
    return await service.get_receipt_by_token(token, db)


@verify_router.post(
    "/verify/{token}",
    response_model=VerifyResponse,
    summary="Verify a share token",
    description="Merchant verification, optionally consuming the token",
)
async def verify_token(
    token: str,
    request: VerifyRequest,
    db: AsyncSession = Depends(get_db),
    service: ShareTokenService = Depends(get_share_service),
) -> Dict[str, Any]:
    return await service.verify_share_token(
        token, db=db, actor_id=request.actor_id, mark_as_used=request.mark_as_used
    )


@verify_router.post("/shares/{token}/void", response_model=VoidResponse, summary="Void a token")
async def void_token(
    token: str,
    request: VoidRequest,
    db: AsyncSession = Depends(get_db),
    service: ShareTokenService = Depends(get_share_service),
) -> Dict[str, Any]:
    voided = await service.void_share_token(token, db=db, reason=request.reason)
    if not voided:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Share token not found")
    return {"token": token, "voided": True}


# Disputes


@dispute_router.post(
    "",
    response_model=CreateDisputeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a dispute",
)
async def create_dispute(
    request: CreateDisputeRequest,
    db: AsyncSession = Depends(get_db),
    service: DisputeService = Depends(get_dispute_service),
) -> Dict[str, Any]:
    logger.info(
        "api_create_dispute_request",
        receipt_id=request.receipt_id,
        item_count=len(request.selected_items),
    )
    return await service.create_dispute(
        request.receipt_id,
        [SelectedItem(**item.model_dump()) for item in request.selected_items],
        request.reason_code,
        db=db,
        notes=request.notes,
    )


# Webhooks


@webhook_router.post(
    "/square",
    response_model=WebhookResponse,
    summary="Square webhook endpoint",
    description="Handle Square webhook events (single event or batch)",
)
async def square_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    body = await request.body()
    results = await handler.handle_body(body, signature, db)
    logger.info("api_webhook_handled", event_count=len(results))
    return {"status": "ok", "events": results}


# Administration


@admin_router.get("/settings", response_model=AdminSettingsResponse, summary="Current settings")
async def get_admin_settings_view(
    db: AsyncSession = Depends(get_db),
    service: AdminSettingsService = Depends(get_admin_settings),
) -> Dict[str, Any]:
    return {
        "confidence_threshold": await service.get_confidence_threshold(db),
        "receipts_enabled": await service.get_receipts_enabled(db),
        "kill_switch": await service.get_kill_switch(db),
        "receipt_retention_days": await service.get_retention_days(db),
        "qr_single_use": await service.get_qr_single_use(db),
    }


@admin_router.put("/confidence-threshold")
async def put_confidence_threshold(
    request: ThresholdRequest,
    db: AsyncSession = Depends(get_db),
    service: AdminSettingsService = Depends(get_admin_settings),
) -> Dict[str, Any]:
    return {"threshold": await service.set_confidence_threshold(db, request.threshold)}


@admin_router.put("/receipts-enabled")
async def put_receipts_enabled(
    request: EnabledRequest,
    db: AsyncSession = Depends(get_db),
    service: AdminSettingsService = Depends(get_admin_settings),
) -> Dict[str, Any]:
    return {"enabled": await service.set_receipts_enabled(db, request.enabled)}


@admin_router.put("/kill-switch")
async def put_kill_switch(
    request: EnabledRequest,
    db: AsyncSession = Depends(get_db),
    service: AdminSettingsService = Depends(get_admin_settings),
) -> Dict[str, Any]:
    return {"enabled": await service.set_kill_switch(db, request.enabled)}


@admin_router.put("/qr-single-use")
async def put_qr_single_use(
    request: EnabledRequest,
    db: AsyncSession = Depends(get_db),
    service: AdminSettingsService = Depends(get_admin_settings),
) -> Dict[str, Any]:
    return {"enabled": await service.set_qr_single_use(db, request.enabled)}


@admin_router.put("/retention-policy")
async def put_retention_policy(
    request: RetentionRequest,
    http_request: Request,
    db: AsyncSession = Depends(get_db),
    service: AdminSettingsService = Depends(get_admin_settings),
) -> Dict[str, Any]:
    days = await service.set_retention_days(
        db, request.days, changed_by=http_request.headers.get("user-agent")
    )
    return {"days": days}


@admin_router.get("/disputes", summary="List disputes")
async def list_disputes(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    service: DisputeService = Depends(get_dispute_service),
) -> Dict[str, Any]:
    return await service.list_disputes(db, page=page, page_size=page_size)


@admin_router.get("/disputes/{dispute_id}", summary="Get dispute detail")
async def get_dispute(
    dispute_id: str,
    db: AsyncSession = Depends(get_db),
    service: DisputeService = Depends(get_dispute_service),
) -> Dict[str, Any]:
    return await service.get_dispute(dispute_id, db)


@admin_router.patch("/disputes/{dispute_id}", summary="Change dispute status")
async def update_dispute_status(
    dispute_id: str,
    request: DisputeStatusRequest,
    db: AsyncSession = Depends(get_db),
    service: DisputeService = Depends(get_dispute_service),
) -> Dict[str, Any]:
    return await service.update_dispute_status(dispute_id, request.status, db)


@admin_router.get("/dashboard", summary="Activity dashboard")
async def get_dashboard(
    db: AsyncSession = Depends(get_db),
    service: ReportingService = Depends(get_reporting_service),
) -> Dict[str, Any]:
    return await service.get_dashboard(db)


@admin_router.get("/usage", summary="Audit event log")
async def list_usage(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    event_type: Optional[str] = Query(default=None),
    start_date: Optional[date] = Query(default=None, description="First day (YYYY-MM-DD, UTC)"),
    end_date: Optional[date] = Query(default=None, description="Last day (YYYY-MM-DD, UTC)"),
    db: AsyncSession = Depends(get_db),
    service: ReportingService = Depends(get_reporting_service),
) -> Dict[str, Any]:
    return await service.list_usage(
        db,
        page=page,
        page_size=page_size,
        event_type=event_type,
        start_date=start_date,
        end_date=end_date,
    )


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness() -> Dict[str, Any]:
    result = await health_check.check_all()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
