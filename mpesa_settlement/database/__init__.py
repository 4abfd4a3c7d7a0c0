"""Database package for the settlement service."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Enrollment,
    PaymentEvent,
    PaymentRequest,
    PaymentStatus,
)

__all__ = [
    "Base",
    "Enrollment",
    "PaymentEvent",
    "PaymentRequest",
    "PaymentStatus",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
