"""SQLAlchemy database models for M-Pesa payment settlement."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER primary keys
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")


class PaymentStatus:
    """PaymentRequest lifecycle states."""

    INITIATED = "initiated"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    TERMINAL = (SUCCEEDED, FAILED)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentRequest(Base):
    """
    STK push payment requests.

    One row per CheckoutRequestID accepted by the gateway. The row is
    created in ``pending`` and moves exactly once to a terminal state
    when the callback (or a status query) reports the outcome.
    """

    __tablename__ = "payment_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    checkout_request_id: Mapped[str] = mapped_column(
        String(100), unique=True, nullable=False, index=True
    )
    merchant_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING, index=True
    )
    result_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    paid_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('initiated', 'pending', 'succeeded', 'failed')",
            name="valid_status",
        ),
        Index("idx_payment_requests_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in PaymentStatus.TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkout_request_id": self.checkout_request_id,
            "user_id": self.user_id,
            "course_id": self.course_id,
            "amount": self.amount,
            "status": self.status,
            "result_code": self.result_code,
            "result_description": self.result_description,
            "receipt_number": self.receipt_number,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        """String representation of PaymentRequest."""
        return (
            f"<PaymentRequest(checkout_request_id={self.checkout_request_id}, "
            f"user_id={self.user_id}, course_id={self.course_id}, status={self.status})>"
        )


class Enrollment(Base):
    """
    Course entitlements.

    At most one row per (user_id, course_id). Rows are never updated
    or deleted once written.
    """

    __tablename__ = "enrollments"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="mpesa")
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    enrolled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),
    )

    def __repr__(self) -> str:
        """String representation of Enrollment."""
        return f"<Enrollment(user_id={self.user_id}, course_id={self.course_id})>"


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every lifecycle event of a payment request. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    checkout_request_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, checkout_request_id={self.checkout_request_id}, "
            f"type={self.event_type})>"
        )
