"""
PaymentRequest persistence and terminal settlement.

The terminal transition is a conditional UPDATE guarded by
``status = 'pending'``. When two deliveries of the same outcome race,
exactly one of them sees ``rowcount == 1`` and performs the follow-up
work; the other is treated as a duplicate.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_settlement.database.models import PaymentEvent, PaymentRequest, PaymentStatus

if TYPE_CHECKING:
    from mpesa_settlement.core.enrollment import EnrollmentSettler

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def record_event(
    db: AsyncSession,
    checkout_request_id: str,
    event_type: str,
    event_data: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Record a payment event for audit trail.

    Args:
        db: Database session
        checkout_request_id: Correlation id of the payment request
        event_type: Event type, e.g. ``payment.succeeded``
        event_data: Event data
    """
    db.add(
        PaymentEvent(
            checkout_request_id=checkout_request_id,
            event_type=event_type,
            event_data=event_data or {},
            created_at=utcnow(),
        )
    )


async def get_payment_request(
    db: AsyncSession, checkout_request_id: str
) -> Optional[PaymentRequest]:
    """Look up a payment request by its CheckoutRequestID."""
    result = await db.execute(
        select(PaymentRequest).where(
            PaymentRequest.checkout_request_id == checkout_request_id
        )
    )
    return result.scalar_one_or_none()


async def create_pending_request(
    db: AsyncSession,
    *,
    checkout_request_id: str,
    merchant_request_id: Optional[str],
    user_id: str,
    course_id: str,
    phone_number: str,
    amount: int,
) -> PaymentRequest:
    """Persist a request the gateway has accepted, in ``pending``."""
    now = utcnow()
    payment = PaymentRequest(
        checkout_request_id=checkout_request_id,
        merchant_request_id=merchant_request_id,
        user_id=user_id,
        course_id=course_id,
        phone_number=phone_number,
        amount=amount,
        status=PaymentStatus.PENDING,
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    await record_event(
        db,
        checkout_request_id,
        "payment.initiated",
        {
            "merchant_request_id": merchant_request_id,
            "user_id": user_id,
            "course_id": course_id,
            "amount": amount,
        },
    )
    await db.flush()
    return payment


async def complete_payment(
    db: AsyncSession,
    checkout_request_id: str,
    *,
    succeeded: bool,
    result_code: int,
    result_description: Optional[str] = None,
    receipt_number: Optional[str] = None,
    paid_amount: Optional[int] = None,
) -> bool:
    """
    Move a pending request to its terminal state.

    Returns:
        bool: True if this call performed the transition, False if the
        request was no longer pending
    """
    now = utcnow()
    result = await db.execute(
        update(PaymentRequest)
        .where(
            PaymentRequest.checkout_request_id == checkout_request_id,
            PaymentRequest.status == PaymentStatus.PENDING,
        )
        .values(
            status=PaymentStatus.SUCCEEDED if succeeded else PaymentStatus.FAILED,
            result_code=result_code,
            result_description=result_description,
            receipt_number=receipt_number,
            paid_amount=paid_amount,
            completed_at=now,
            updated_at=now,
        )
    )
    return result.rowcount == 1


@dataclass
class SettlementOutcome:
    """What a single outcome report did to a payment request."""

    status: str  # succeeded, declined, duplicate
    payment_status: str
    enrollment_created: bool = False


async def settle_payment(
    db: AsyncSession,
    payment: PaymentRequest,
    *,
    result_code: int,
    result_description: Optional[str],
    settler: "EnrollmentSettler",
    receipt_number: Optional[str] = None,
    paid_amount: Optional[int] = None,
    channel: str = "callback",
) -> SettlementOutcome:
    """
    Apply a gateway outcome to a payment request.

    Used by both the callback receiver and the status-query reconciler.
    ``ResultCode == 0`` settles the request and grants the enrollment; any
    other code marks it failed. A request that is already terminal is left
    untouched; if it succeeded earlier the grant is repeated, which is a
    no-op once the enrollment exists.
    """
    checkout_request_id = payment.checkout_request_id
    succeeded = result_code == 0

    transitioned = await complete_payment(
        db,
        checkout_request_id,
        succeeded=succeeded,
        result_code=result_code,
        result_description=result_description,
        receipt_number=receipt_number,
        paid_amount=paid_amount,
    )

    if not transitioned:
        await db.refresh(payment)
        logger.info(
            "payment_outcome_duplicate",
            checkout_request_id=checkout_request_id,
            channel=channel,
            stored_status=payment.status,
            result_code=result_code,
        )
        if succeeded != (payment.status == PaymentStatus.SUCCEEDED):
            logger.warning(
                "payment_outcome_conflict",
                checkout_request_id=checkout_request_id,
                stored_status=payment.status,
                result_code=result_code,
            )
        await record_event(
            db,
            checkout_request_id,
            "callback.duplicate",
            {"channel": channel, "result_code": result_code},
        )
        created = False
        if payment.status == PaymentStatus.SUCCEEDED:
            grant = await settler.grant(
                payment.user_id,
                payment.course_id,
                db,
                checkout_request_id=checkout_request_id,
            )
            created = grant.created
        return SettlementOutcome("duplicate", payment.status, enrollment_created=created)

    if not succeeded:
        await record_event(
            db,
            checkout_request_id,
            "payment.failed",
            {
                "channel": channel,
                "result_code": result_code,
                "result_description": result_description,
            },
        )
        logger.info(
            "payment_declined",
            checkout_request_id=checkout_request_id,
            channel=channel,
            result_code=result_code,
            result_description=result_description,
        )
        return SettlementOutcome("declined", PaymentStatus.FAILED)

    await record_event(
        db,
        checkout_request_id,
        "payment.succeeded",
        {
            "channel": channel,
            "receipt_number": receipt_number,
            "paid_amount": paid_amount,
        },
    )
    logger.info(
        "payment_succeeded",
        checkout_request_id=checkout_request_id,
        channel=channel,
        receipt_number=receipt_number,
    )

    grant = await settler.grant(
        payment.user_id,
        payment.course_id,
        db,
        checkout_request_id=checkout_request_id,
    )
    return SettlementOutcome(
        "succeeded", PaymentStatus.SUCCEEDED, enrollment_created=grant.created
    )
