"""
Status-query fallback for lost callbacks.

Callbacks can be lost (public URL unreachable, deploy in progress). Any
request still ``pending`` after ``reconciliation_pending_after_seconds``
is looked up with the STK push query endpoint and settled through the
same terminal transition the callback uses.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_settlement.config import Settings, get_settings
from mpesa_settlement.core.enrollment import EnrollmentSettler
from mpesa_settlement.core.initiator import build_password, build_timestamp
from mpesa_settlement.core.payment_requests import (
    get_payment_request,
    settle_payment,
    utcnow,
)
from mpesa_settlement.database.models import PaymentRequest, PaymentStatus
from mpesa_settlement.integrations.credentials import CredentialBroker
from mpesa_settlement.integrations.daraja_client import (
    AuthError,
    DarajaClient,
    DarajaError,
)
from mpesa_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Daraja errorCode while the payer has not yet answered the prompt
STILL_PROCESSING_ERROR_CODE = "500.001.1001"

DEFAULT_BATCH_SIZE = 100


class PendingPaymentReconciler:
    """
    Settles stale pending payment requests by querying the gateway.

    Each request is settled and committed on its own, so one failure does
    not undo the progress of the rest of the run.
    """

    def __init__(
        self,
        client: Optional[DarajaClient] = None,
        broker: Optional[CredentialBroker] = None,
        settler: Optional[EnrollmentSettler] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client or DarajaClient(self.settings)
        self.broker = broker or CredentialBroker(self.client, settings=self.settings)
        self.settler = settler or EnrollmentSettler()

    async def find_stale_requests(
        self,
        db: AsyncSession,
        older_than_seconds: int,
        limit: int = DEFAULT_BATCH_SIZE,
    ) -> List[PaymentRequest]:
        """Pending requests created more than ``older_than_seconds`` ago, oldest first."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        result = await db.execute(
            select(PaymentRequest)
            .where(
                PaymentRequest.status == PaymentStatus.PENDING,
                PaymentRequest.created_at < cutoff,
            )
            .order_by(PaymentRequest.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def query_status(self, access_token: str, checkout_request_id: str) -> Dict[str, Any]:
        """Ask the gateway for the outcome of an STK push."""
        timestamp = build_timestamp()
        shortcode = self.settings.mpesa_shortcode
        payload = {
            "BusinessShortCode": shortcode,
            "Password": build_password(shortcode, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return await self.client.stk_query(access_token, payload)

    async def reconcile_stale(
        self,
        db: AsyncSession,
        older_than_seconds: Optional[int] = None,
    ) -> Dict[str, int]:
        """
        Query and settle every stale pending request.

        Returns:
            Dict[str, int]: counts of ``checked``, ``succeeded``, ``failed``,
            ``still_pending`` and ``errors``
        """
        if older_than_seconds is None:
            older_than_seconds = self.settings.reconciliation_pending_after_seconds

        summary = {"checked": 0, "succeeded": 0, "failed": 0, "still_pending": 0, "errors": 0}

        stale = await self.find_stale_requests(db, older_than_seconds)
        logger.info(
            "reconciliation_started",
            stale_count=len(stale),
            older_than_seconds=older_than_seconds,
        )
        if not stale:
            metrics.record_reconciliation(summary)
            return summary

        try:
            access_token = await self.broker.get_access_token()
        except DarajaError as e:
            logger.error("reconciliation_token_unavailable", error=e.message)
            summary["checked"] = len(stale)
            summary["errors"] = len(stale)
            metrics.record_reconciliation(summary)
            return summary

        # A rollback expires every loaded row, so each one is reloaded by id
        checkout_request_ids = [payment.checkout_request_id for payment in stale]
        for checkout_request_id in checkout_request_ids:
            summary["checked"] += 1
            payment = await get_payment_request(db, checkout_request_id)
            if payment is None:
                summary["errors"] += 1
                continue
            outcome = await self._reconcile_one(db, payment, access_token)
            summary[outcome] += 1

        metrics.record_reconciliation(summary)
        logger.info("reconciliation_completed", **summary)
        return summary

    async def _reconcile_one(
        self, db: AsyncSession, payment: PaymentRequest, access_token: str
    ) -> str:
        checkout_request_id = payment.checkout_request_id
        log = logger.bind(checkout_request_id=checkout_request_id)

        try:
            response = await self.query_status(access_token, checkout_request_id)
        except DarajaError as e:
            if e.error_code == STILL_PROCESSING_ERROR_CODE:
                log.info("reconciliation_still_processing")
                return "still_pending"
            if isinstance(e, AuthError):
                await self.broker.invalidate()
            log.warning(
                "reconciliation_query_failed",
                error=e.message,
                error_code=e.error_code,
                status_code=e.status_code,
            )
            return "errors"

        raw_result_code = response.get("ResultCode")
        if raw_result_code is None or raw_result_code == "":
            log.info("reconciliation_no_result_yet", response_code=response.get("ResponseCode"))
            return "still_pending"

        try:
            result_code = int(raw_result_code)
        except (TypeError, ValueError):
            log.warning("reconciliation_unexpected_result_code", result_code=raw_result_code)
            return "errors"

        try:
            outcome = await settle_payment(
                db,
                payment,
                result_code=result_code,
                result_description=response.get("ResultDesc"),
                settler=self.settler,
                channel="status_query",
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            log.error("reconciliation_settle_failed", error=str(e), error_type=type(e).__name__)
            return "errors"

        if outcome.status == "duplicate":
            # A callback settled it between the select and the query
            return "succeeded" if outcome.payment_status == PaymentStatus.SUCCEEDED else "failed"
        return "succeeded" if outcome.status == "succeeded" else "failed"
