"""
STK push initiation.

Flow:
1. Check gateway configuration (no network call when incomplete)
2. Validate amount and normalise the phone number
3. Obtain an access token from the credential broker
4. Submit the STK push
5. Persist the accepted request in ``pending``
"""
import base64
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_settlement.config import ConfigurationError, Settings, get_settings
from mpesa_settlement.core.payment_requests import create_pending_request
from mpesa_settlement.integrations.credentials import CredentialBroker
from mpesa_settlement.integrations.daraja_client import (
    AuthError,
    DarajaClient,
    DarajaError,
    GatewayRejection,
)
from mpesa_settlement.monitoring.logging import mask_phone
from mpesa_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Daraja expects timestamps in East Africa Time
EAT = timezone(timedelta(hours=3))

CALLBACK_PATH = "/webhooks/mpesa/callback"

_PHONE_SEPARATORS = re.compile(r"[\s\-()]")
_LOCAL_NUMBER = re.compile(r"^0(\d{9})$")
_SUBSCRIBER_NUMBER = re.compile(r"^(\d{9})$")
_INTERNATIONAL_NUMBER = re.compile(r"^254(\d{9})$")

GENERIC_FAILURE_MESSAGE = "Failed to initiate M-Pesa payment. Please try again."


class InvalidPhoneNumber(ValueError):
    """Raised when a phone number cannot be mapped to a Kenyan MSISDN."""

    pass


class InvalidAmount(ValueError):
    """Raised when the amount is not a positive whole number of shillings."""

    pass


def normalize_phone_number(phone_number: str) -> str:
    """
    Normalise a Kenyan phone number to ``254XXXXXXXXX``.

    Accepts any local ``0XXXXXXXXX`` number, ``+254XXXXXXXXX``,
    ``254XXXXXXXXX`` and the bare nine-digit subscriber number, with or
    without spaces and dashes.

    Raises:
        InvalidPhoneNumber: If the input is not a Kenyan number in one of those forms
    """
    if not phone_number:
        raise InvalidPhoneNumber("Phone number is required")

    cleaned = _PHONE_SEPARATORS.sub("", str(phone_number))
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]

    for pattern in (_INTERNATIONAL_NUMBER, _LOCAL_NUMBER, _SUBSCRIBER_NUMBER):
        match = pattern.match(cleaned)
        if match:
            return f"254{match.group(1)}"

    raise InvalidPhoneNumber(f"Invalid phone number: {mask_phone(cleaned)}")


def validate_amount(amount: Any) -> int:
    """
    Coerce an amount to a positive integer.

    Raises:
        InvalidAmount: For booleans, fractions, non-numbers and values <= 0
    """
    if isinstance(amount, bool):
        raise InvalidAmount("Amount must be a number")
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise InvalidAmount("Amount must be a number") from None
    if not value.is_integer():
        raise InvalidAmount("Amount must be a whole number")
    if value <= 0:
        raise InvalidAmount("Amount must be positive")
    return int(value)


def build_timestamp(now: Optional[datetime] = None) -> str:
    """Current East Africa Time as ``YYYYMMDDHHmmss``."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Daraja request password: base64(shortcode + passkey + timestamp)."""
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def build_callback_url(base_url: str, user_id: str, course_id: str) -> str:
    """Callback URL carrying the correlation data as query parameters."""
    query = urlencode({"userId": user_id, "courseId": course_id})
    return f"{base_url.rstrip('/')}{CALLBACK_PATH}?{query}"


def require_stk_settings(settings: Settings) -> None:
    """
    Raises:
        ConfigurationError: If shortcode, passkey or callback base URL is unset
    """
    missing = settings.missing_stk_settings()
    if missing:
        raise ConfigurationError(
            f"M-Pesa settings are not configured: {', '.join(missing)}"
        )


@dataclass
class InitiationResult:
    """Outcome of an STK push initiation."""

    success: bool
    message: str
    checkout_request_id: Optional[str] = None
    error: Optional[str] = None  # configuration, invalid_input, auth, rejected, gateway

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PaymentInitiator:
    """
    Starts M-Pesa STK push payments.

    Every gateway-facing failure is returned as an ``InitiationResult``
    with ``success=False``; only database errors propagate.
    """

    def __init__(
        self,
        client: Optional[DarajaClient] = None,
        broker: Optional[CredentialBroker] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client or DarajaClient(self.settings)
        self.broker = broker or CredentialBroker(self.client, settings=self.settings)

    def build_payload(
        self,
        phone_number: str,
        amount: int,
        course_id: str,
        user_id: str,
        timestamp: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the STK push request body. The timestamp is fresh per call."""
        timestamp = timestamp or build_timestamp()
        shortcode = self.settings.mpesa_shortcode
        return {
            "BusinessShortCode": shortcode,
            "Password": build_password(shortcode, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.mpesa_transaction_type,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": build_callback_url(
                self.settings.mpesa_callback_base_url, user_id, course_id
            ),
            "AccountReference": self.settings.mpesa_account_reference,
            "TransactionDesc": f"Payment for {course_id}",
        }

    async def initiate(
        self,
        phone_number: str,
        amount: Any,
        course_id: str,
        user_id: str,
        db: AsyncSession,
    ) -> InitiationResult:
        """
        Initiate an STK push for a course purchase.

        Args:
            phone_number: Payer phone number in any accepted Kenyan format
            amount: Amount in shillings, must be a positive integer
            course_id: Course being purchased
            user_id: Purchasing user
            db: Database session

        Returns:
            InitiationResult: ``checkout_request_id`` is set when the
            gateway accepted the request
        """
        log = logger.bind(user_id=user_id, course_id=course_id)

        try:
            require_stk_settings(self.settings)
        except ConfigurationError as e:
            log.error("stk_push_configuration_error", error=str(e))
            metrics.record_stk_push("configuration")
            return InitiationResult(
                success=False,
                message="M-Pesa credentials (Shortcode or Passkey) are not configured.",
                error="configuration",
            )

        try:
            amount = validate_amount(amount)
            msisdn = normalize_phone_number(phone_number)
        except (InvalidAmount, InvalidPhoneNumber) as e:
            log.warning("stk_push_invalid_input", error=str(e))
            metrics.record_stk_push("invalid_input")
            return InitiationResult(success=False, message=str(e), error="invalid_input")

        if not user_id or not course_id:
            metrics.record_stk_push("invalid_input")
            return InitiationResult(
                success=False,
                message="User ID and course ID are required",
                error="invalid_input",
            )

        try:
            access_token = await self.broker.get_access_token()
        except AuthError as e:
            log.error("stk_push_auth_failed", error=e.message)
            metrics.record_stk_push("auth")
            return InitiationResult(
                success=False,
                message="Could not authenticate with M-Pesa. Please try again later.",
                error="auth",
            )
        except DarajaError as e:
            log.error("stk_push_token_unavailable", error=e.message)
            metrics.record_stk_push("error")
            return InitiationResult(
                success=False, message=GENERIC_FAILURE_MESSAGE, error="gateway"
            )

        payload = self.build_payload(msisdn, amount, course_id, user_id)

        try:
            response = await self.client.stk_push(access_token, payload)
        except AuthError as e:
            # The cached token was revoked early; the next call fetches a new one
            await self.broker.invalidate()
            log.error("stk_push_token_rejected", error=e.message)
            metrics.record_stk_push("auth")
            return InitiationResult(
                success=False,
                message="Could not authenticate with M-Pesa. Please try again.",
                error="auth",
            )
        except GatewayRejection as e:
            log.warning(
                "stk_push_rejected",
                phone_number=mask_phone(msisdn),
                error_code=e.error_code,
                error=e.message,
            )
            metrics.record_stk_push("rejected")
            return InitiationResult(success=False, message=e.message, error="rejected")
        except DarajaError as e:
            log.error("stk_push_gateway_error", error=e.message, status_code=e.status_code)
            metrics.record_stk_push("error")
            return InitiationResult(
                success=False, message=GENERIC_FAILURE_MESSAGE, error="gateway"
            )

        response_code = str(response.get("ResponseCode", ""))
        description = (
            response.get("ResponseDescription")
            or response.get("errorMessage")
            or "M-Pesa rejected the request"
        )
        if response_code != "0":
            log.warning(
                "stk_push_rejected",
                phone_number=mask_phone(msisdn),
                response_code=response_code,
                error=description,
            )
            metrics.record_stk_push("rejected")
            return InitiationResult(success=False, message=description, error="rejected")

        checkout_request_id = response.get("CheckoutRequestID")
        if not checkout_request_id:
            log.error("stk_push_missing_checkout_request_id", response_code=response_code)
            metrics.record_stk_push("error")
            return InitiationResult(
                success=False, message=GENERIC_FAILURE_MESSAGE, error="gateway"
            )

        await create_pending_request(
            db,
            checkout_request_id=checkout_request_id,
            merchant_request_id=response.get("MerchantRequestID"),
            user_id=user_id,
            course_id=course_id,
            phone_number=msisdn,
            amount=amount,
        )

        metrics.record_stk_push("accepted", amount)
        log.info(
            "stk_push_accepted",
            checkout_request_id=checkout_request_id,
            phone_number=mask_phone(msisdn),
            amount=amount,
        )

        return InitiationResult(
            success=True,
            message=description,
            checkout_request_id=checkout_request_id,
        )
