"""
Safaricom Daraja API client with retry logic and error classification.

Implements:
- OAuth client-credentials token fetch (Basic auth)
- STK push (Lipa na M-Pesa Online) initiation
- STK push status query
- Exponential backoff for transport failures on idempotent calls
"""
import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mpesa_settlement.config import Settings, get_settings
from mpesa_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"


class DarajaErrorType(Enum):
    """Classification of Daraja errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    AUTH = "auth"  # Refresh credentials, then retry on the next call


class DarajaError(Exception):
    """Base exception for Daraja-related errors."""

    def __init__(
        self,
        message: str,
        error_type: DarajaErrorType,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        """
        Initialize Daraja error.

        Args:
            message: Error message (gateway description where available)
            error_type: Classification of error
            status_code: HTTP status code, None for transport failures
            error_code: Daraja ``errorCode`` value, e.g. ``500.001.1001``
        """
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.error_code = error_code


class AuthError(DarajaError):
    """Consumer credentials are missing or were rejected by the gateway."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 error_code: Optional[str] = None):
        super().__init__(message, DarajaErrorType.AUTH, status_code, error_code)


class GatewayRejection(DarajaError):
    """The gateway refused the request (bad phone number, invalid shortcode, ...)."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 error_code: Optional[str] = None):
        super().__init__(message, DarajaErrorType.PERMANENT, status_code, error_code)


class GatewayUnavailable(DarajaError):
    """The request never produced a usable gateway response."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 error_code: Optional[str] = None):
        super().__init__(message, DarajaErrorType.TRANSIENT, status_code, error_code)


def _is_transport_failure(exc: BaseException) -> bool:
    return isinstance(exc, GatewayUnavailable) and exc.status_code is None


_transport_retry = retry(
    retry=retry_if_exception(_is_transport_failure),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
)


class DarajaClient:
    """
    Async wrapper for the Daraja REST API.

    The underlying ``httpx.AsyncClient`` can be injected, which is how
    tests substitute an ``httpx.MockTransport`` for the network.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.daraja_base_url,
                timeout=self.settings.mpesa_request_timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    def _url(self, path: str) -> str:
        return f"{self.settings.daraja_base_url}{path}"

    async def _send(self, operation: str, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Raises:
            AuthError: HTTP 401
            GatewayRejection: other HTTP 4xx
            GatewayUnavailable: transport failure, HTTP 5xx or a non-JSON body
        """
        start_time = time.time()
        try:
            response = await self._client().request(method, self._url(path), **kwargs)
        except httpx.TransportError as e:
            metrics.record_daraja_call(operation, "transport_error", time.time() - start_time)
            logger.warning("daraja_transport_error", operation=operation, error=str(e))
            raise GatewayUnavailable(f"Could not reach M-Pesa: {e}") from e

        duration = time.time() - start_time
        metrics.record_daraja_call(operation, str(response.status_code), duration)

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error_code = body.get("errorCode") if isinstance(body, dict) else None
            message = (
                body.get("errorMessage") if isinstance(body, dict) else None
            ) or response.reason_phrase or f"HTTP {response.status_code}"

            logger.warning(
                "daraja_api_error",
                operation=operation,
                status_code=response.status_code,
                error_code=error_code,
                error_message=message,
            )

            if response.status_code == 401:
                raise AuthError(message, response.status_code, error_code)
            if response.status_code < 500:
                raise GatewayRejection(message, response.status_code, error_code)
            raise GatewayUnavailable(message, response.status_code, error_code)

        if not isinstance(body, dict):
            raise GatewayUnavailable(
                f"Unexpected response body from M-Pesa ({operation})", response.status_code
            )

        logger.debug("daraja_api_call", operation=operation, duration_seconds=duration)
        return body

    @_transport_retry
    async def fetch_access_token(self, consumer_key: str, consumer_secret: str) -> Dict[str, Any]:
        """
        Request a new OAuth access token.

        Returns:
            Dict[str, Any]: ``{"access_token": ..., "expires_in": ...}``

        Raises:
            AuthError: If the gateway rejects the credentials
        """
        try:
            body = await self._send(
                "token",
                "GET",
                TOKEN_PATH,
                params={"grant_type": "client_credentials"},
                auth=(consumer_key, consumer_secret),
            )
        except GatewayRejection as e:
            raise AuthError(e.message, e.status_code, e.error_code) from e

        if not body.get("access_token"):
            raise AuthError("M-Pesa token response did not include an access token")
        return body

    async def stk_push(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Submit an STK push request.

        Not retried: a repeated request sends a second prompt to the payer.
        """
        logger.info(
            "submitting_stk_push",
            amount=payload.get("Amount"),
            account_reference=payload.get("AccountReference"),
        )
        return await self._send(
            "stk_push",
            "POST",
            STK_PUSH_PATH,
            json=payload,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    @_transport_retry
    async def stk_query(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Query the outcome of an earlier STK push by CheckoutRequestID."""
        return await self._send(
            "stk_query",
            "POST",
            STK_QUERY_PATH,
            json=payload,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
