"""Core settlement logic: initiation, callbacks, enrollment and reconciliation."""
from mpesa_settlement.core.callback import (
    CallbackMalformed,
    CallbackReceiver,
    CallbackResult,
    UnknownPaymentRequest,
    parse_callback_metadata,
)
from mpesa_settlement.core.enrollment import EnrollmentSettler, GrantResult
from mpesa_settlement.core.initiator import (
    InitiationResult,
    InvalidAmount,
    InvalidPhoneNumber,
    PaymentInitiator,
    build_callback_url,
    build_password,
    build_timestamp,
    normalize_phone_number,
)
from mpesa_settlement.core.reconciliation import PendingPaymentReconciler

__all__ = [
    "CallbackMalformed",
    "CallbackReceiver",
    "CallbackResult",
    "EnrollmentSettler",
    "GrantResult",
    "InitiationResult",
    "InvalidAmount",
    "InvalidPhoneNumber",
    "PaymentInitiator",
    "PendingPaymentReconciler",
    "UnknownPaymentRequest",
    "build_callback_url",
    "build_password",
    "build_timestamp",
    "normalize_phone_number",
    "parse_callback_metadata",
]
