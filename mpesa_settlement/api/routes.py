"""
API routes for M-Pesa payment settlement.
"""
from functools import lru_cache
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_settlement.core.callback import CallbackReceiver
from mpesa_settlement.core.initiator import PaymentInitiator
from mpesa_settlement.core.payment_requests import get_payment_request
from mpesa_settlement.core.reconciliation import PendingPaymentReconciler
from mpesa_settlement.database.connection import get_db
from mpesa_settlement.integrations.credentials import CredentialBroker, build_token_cache
from mpesa_settlement.integrations.daraja_client import DarajaClient
from mpesa_settlement.monitoring.health import HealthCheck
from mpesa_settlement.monitoring.logging import mask_phone

from .schemas import (
    CallbackAck,
    HealthCheckResponse,
    PaymentStatusResponse,
    ReconciliationResponse,
    StkPushRequest,
    StkPushResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

health_check = HealthCheck()


# Service providers. One client and one broker per process so the token
# cache and the HTTP connection pool are shared by every request.
@lru_cache()
def get_daraja_client() -> DarajaClient:
    return DarajaClient()


@lru_cache()
def get_credential_broker() -> CredentialBroker:
    client = get_daraja_client()
    return CredentialBroker(client, build_token_cache(client.settings), client.settings)


def get_payment_initiator(
    client: DarajaClient = Depends(get_daraja_client),
    broker: CredentialBroker = Depends(get_credential_broker),
) -> PaymentInitiator:
    return PaymentInitiator(client, broker, client.settings)


def get_callback_receiver() -> CallbackReceiver:
    return CallbackReceiver()


def get_reconciler(
    client: DarajaClient = Depends(get_daraja_client),
    broker: CredentialBroker = Depends(get_credential_broker),
) -> PendingPaymentReconciler:
    return PendingPaymentReconciler(client, broker, settings=client.settings)


@payment_router.post(
    "/mpesa/stk-push",
    response_model=StkPushResponse,
    summary="Start an M-Pesa payment",
    description="Send an STK push prompt to the payer's phone",
)
async def initiate_stk_push(
    request: StkPushRequest,
    db: AsyncSession = Depends(get_db),
    initiator: PaymentInitiator = Depends(get_payment_initiator),
) -> Dict[str, Any]:
    """
    Start an STK push.

    Gateway failures are reported in the body with ``success=false``;
    the response status is 200 either way.
    """
    logger.info(
        "api_stk_push_request",
        user_id=request.user_id,
        course_id=request.course_id,
        phone_number=mask_phone(request.phone_number),
        amount=request.amount,
    )

    result = await initiator.initiate(
        phone_number=request.phone_number,
        amount=request.amount,
        course_id=request.course_id,
        user_id=request.user_id,
        db=db,
    )

    logger.info(
        "api_stk_push_completed",
        success=result.success,
        error=result.error,
        checkout_request_id=result.checkout_request_id,
    )
    return result.to_dict()


@payment_router.get(
    "/{checkout_request_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Retrieve the current status of an STK push payment request",
)
async def get_payment_status(
    checkout_request_id: str,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Get payment request status by CheckoutRequestID."""
    payment = await get_payment_request(db, checkout_request_id)
    if payment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment request not found"
        )
    return payment.to_dict()


@webhook_router.post(
    "/mpesa/callback",
    response_model=CallbackAck,
    summary="M-Pesa callback endpoint",
    description="Receive the outcome of an STK push from the gateway",
)
async def mpesa_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    receiver: CallbackReceiver = Depends(get_callback_receiver),
) -> JSONResponse:
    """
    Handle M-Pesa STK push callbacks.

    Answers 200 once the outcome is recorded, 400 for callbacks that can
    never be correlated and 500 when the gateway should redeliver.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None

    result = await receiver.handle(request.query_params, body, db)
    return JSONResponse(status_code=result.http_status, content=result.ack)


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Query the gateway for payment requests that never received a callback",
)
async def run_reconciliation(
    older_than_seconds: Optional[int] = Query(default=None, ge=0),
    db: AsyncSession = Depends(get_db),
    reconciler: PendingPaymentReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Settle stale pending requests through the STK push query endpoint."""
    try:
        summary = await reconciler.reconcile_stale(db, older_than_seconds)
    except Exception as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reconciliation failed: {str(e)}",
        )

    logger.info("api_reconciliation_completed", **summary)
    return summary


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        result = await health_check.check_all()
        return result
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
