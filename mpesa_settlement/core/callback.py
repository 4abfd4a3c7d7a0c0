"""
M-Pesa STK push callback handling.

The gateway posts the outcome of an STK push to the callback URL built at
initiation time. Correlation data (``userId``, ``courseId``) travels in the
query string; the body carries the result:

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...",
        "CheckoutRequestID": "...",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 1000}, ...]}
    }}}

Acknowledgement bodies follow the Daraja ``{"ResultCode", "ResultDesc"}``
convention. ``ResultCode`` 0 means "do not redeliver"; 1 asks for a retry.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_settlement.core.enrollment import EnrollmentSettler
from mpesa_settlement.core.payment_requests import get_payment_request, settle_payment
from mpesa_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CallbackMalformed(Exception):
    """The callback cannot be correlated to a payment request. Never retried."""

    pass


class UnknownPaymentRequest(CallbackMalformed):
    """No pending request matches the CheckoutRequestID and query parameters."""

    pass


def parse_callback_metadata(items: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """
    Index ``CallbackMetadata.Item`` entries by ``Name``.

    The gateway does not guarantee item order, and ``Value`` is omitted for
    some items (e.g. ``Balance``).
    """
    metadata: Dict[str, Any] = {}
    for item in items or []:
        if isinstance(item, dict) and "Name" in item:
            metadata[item["Name"]] = item.get("Value")
    return metadata


@dataclass
class StkCallback:
    """The ``Body.stkCallback`` object of a callback delivery."""

    checkout_request_id: str
    merchant_request_id: Optional[str]
    result_code: int
    result_description: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def receipt_number(self) -> Optional[str]:
        value = self.metadata.get("MpesaReceiptNumber")
        return str(value) if value is not None else None

    @property
    def paid_amount(self) -> Optional[int]:
        value = self.metadata.get("Amount")
        if value is None:
            return None
        return int(float(value))

    @classmethod
    def from_body(cls, body: Any) -> "StkCallback":
        """
        Raises:
            KeyError, TypeError, ValueError: If the body is not a callback
        """
        callback = body["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
        if not checkout_request_id:
            raise ValueError("CheckoutRequestID is empty")
        return cls(
            checkout_request_id=str(checkout_request_id),
            merchant_request_id=callback.get("MerchantRequestID"),
            result_code=int(callback["ResultCode"]),
            result_description=callback.get("ResultDesc"),
            metadata=parse_callback_metadata(
                (callback.get("CallbackMetadata") or {}).get("Item")
            ),
        )


@dataclass
class CallbackResult:
    """How a callback delivery was handled, and what to answer the gateway."""

    status: str  # succeeded, declined, duplicate, rejected, error
    http_status: int
    result_code: int
    message: str
    checkout_request_id: Optional[str] = None
    enrollment_created: bool = False

    @property
    def ack(self) -> Dict[str, Any]:
        return {"ResultCode": self.result_code, "ResultDesc": self.message}

    @classmethod
    def accepted(cls, status: str, checkout_request_id: str,
                 enrollment_created: bool = False) -> "CallbackResult":
        return cls(status, 200, 0, "Accepted", checkout_request_id, enrollment_created)

    @classmethod
    def rejected(cls, reason: str) -> "CallbackResult":
        return cls("rejected", 400, 0, f"Rejected: {reason}")

    @classmethod
    def failed(cls) -> "CallbackResult":
        return cls("error", 500, 1, "Rejected")


class CallbackReceiver:
    """
    Settles payment requests from gateway callbacks.

    Only a callback that correlates to a known request, for the same user
    and course it was initiated for, can change state or grant access.
    """

    def __init__(self, settler: Optional[EnrollmentSettler] = None) -> None:
        self.settler = settler or EnrollmentSettler()

    async def handle(
        self,
        query_params: Mapping[str, str],
        body: Any,
        db: AsyncSession,
    ) -> CallbackResult:
        """
        Process one callback delivery.

        Never raises. Uncorrelatable deliveries are rejected with HTTP 400;
        unexpected failures roll back the session and answer HTTP 500 so
        the gateway redelivers.
        """
        start_time = time.time()
        try:
            result = await self._process(query_params, body, db)
        except CallbackMalformed as e:
            logger.warning(
                "mpesa_callback_rejected",
                reason=str(e),
                error_type=type(e).__name__,
            )
            result = CallbackResult.rejected(str(e))
        except Exception as e:
            await db.rollback()
            logger.error(
                "mpesa_callback_processing_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            result = CallbackResult.failed()

        metrics.record_callback(result.status, time.time() - start_time)
        return result

    async def _process(
        self,
        query_params: Mapping[str, str],
        body: Any,
        db: AsyncSession,
    ) -> CallbackResult:
        user_id = query_params.get("userId")
        course_id = query_params.get("courseId")
        if not user_id or not course_id:
            raise CallbackMalformed("missing userId or courseId in callback URL")

        callback = StkCallback.from_body(body)
        log = logger.bind(
            checkout_request_id=callback.checkout_request_id,
            user_id=user_id,
            course_id=course_id,
        )
        log.info(
            "mpesa_callback_received",
            result_code=callback.result_code,
            result_description=callback.result_description,
        )

        payment = await get_payment_request(db, callback.checkout_request_id)
        if payment is None:
            raise UnknownPaymentRequest(
                f"unknown CheckoutRequestID {callback.checkout_request_id}"
            )
        if payment.user_id != user_id or payment.course_id != course_id:
            raise UnknownPaymentRequest(
                f"userId/courseId do not match CheckoutRequestID {callback.checkout_request_id}"
            )

        outcome = await settle_payment(
            db,
            payment,
            result_code=callback.result_code,
            result_description=callback.result_description,
            receipt_number=callback.receipt_number,
            paid_amount=callback.paid_amount,
            settler=self.settler,
            channel="callback",
        )

        log.info(
            "mpesa_callback_processed",
            outcome=outcome.status,
            payment_status=outcome.payment_status,
            enrollment_created=outcome.enrollment_created,
        )
        return CallbackResult.accepted(
            outcome.status, callback.checkout_request_id, outcome.enrollment_created
        )
