"""
Pytest configuration and fixtures.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from mpesa_settlement.config import Settings
from mpesa_settlement.core.callback import CallbackReceiver
from mpesa_settlement.core.enrollment import EnrollmentSettler
from mpesa_settlement.core.initiator import PaymentInitiator
from mpesa_settlement.core.reconciliation import PendingPaymentReconciler
from mpesa_settlement.database.models import Base, Enrollment, PaymentRequest, PaymentStatus
from mpesa_settlement.integrations.credentials import CredentialBroker, InMemoryTokenCache
from mpesa_settlement.integrations.daraja_client import (
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    TOKEN_PATH,
    DarajaClient,
)

CHECKOUT_REQUEST_ID = "ws_CO_191220191020363925"


class FakeDaraja:
    """
    Scripted Daraja endpoints served through ``httpx.MockTransport``.

    Each endpoint answers with the (status, body) pair currently assigned
    to it; every request is recorded for assertions.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_delay = 0.0
        self.token_response: tuple[int, Any] = (
            200,
            {"access_token": "test-access-token", "expires_in": "3599"},
        )
        self.stk_push_response: tuple[int, Any] = (
            200,
            {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": CHECKOUT_REQUEST_ID,
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )
        self.stk_query_response: tuple[int, Any] = (
            200,
            {
                "ResponseCode": "0",
                "ResponseDescription": "The service request has been accepted successsfully",
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": CHECKOUT_REQUEST_ID,
                "ResultCode": "0",
                "ResultDesc": "The service request is processed successfully.",
            },
        )
        self.stk_query_responses: Dict[str, tuple[int, Any]] = {}
        self.transport_error_paths: set[str] = set()

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @property
    def token_calls(self) -> List[httpx.Request]:
        return self.calls(TOKEN_PATH)

    @property
    def stk_push_calls(self) -> List[httpx.Request]:
        return self.calls(STK_PUSH_PATH)

    @property
    def stk_query_calls(self) -> List[httpx.Request]:
        return self.calls(STK_QUERY_PATH)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in self.transport_error_paths:
            raise httpx.ConnectError("connection refused", request=request)

        if path == TOKEN_PATH:
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            status_code, body = self.token_response
        elif path == STK_PUSH_PATH:
            status_code, body = self.stk_push_response
        elif path == STK_QUERY_PATH:
            checkout_request_id = json.loads(request.content).get("CheckoutRequestID")
            status_code, body = self.stk_query_responses.get(
                checkout_request_id, self.stk_query_response
            )
        else:
            status_code, body = 404, {"errorMessage": "Not found"}

        return httpx.Response(status_code, json=body)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        mpesa_consumer_key="test-consumer-key",
        mpesa_consumer_secret="test-consumer-secret",
        mpesa_shortcode="174379",
        mpesa_passkey="test-passkey",
        mpesa_callback_base_url="https://example.com",
        mpesa_environment="sandbox",
        token_cache_backend="memory",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="mpesa-settlement-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def unconfigured_settings() -> Settings:
    """Settings with no gateway secrets at all."""
    return Settings(
        mpesa_consumer_key="",
        mpesa_consumer_secret="",
        mpesa_shortcode="",
        mpesa_passkey="",
        mpesa_callback_base_url="",
        app_env="test",
    )


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def daraja_client(
    test_settings: Settings, daraja: FakeDaraja
) -> AsyncGenerator[DarajaClient, Any]:
    """DarajaClient wired to the scripted gateway."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(daraja.handler))
    client = DarajaClient(test_settings, http_client=http_client)
    yield client
    await http_client.aclose()


@pytest.fixture
def broker(daraja_client: DarajaClient, test_settings: Settings) -> CredentialBroker:
    return CredentialBroker(daraja_client, InMemoryTokenCache(), test_settings)


@pytest.fixture
def settler() -> EnrollmentSettler:
    return EnrollmentSettler()


@pytest.fixture
def initiator(
    daraja_client: DarajaClient, broker: CredentialBroker, test_settings: Settings
) -> PaymentInitiator:
    return PaymentInitiator(daraja_client, broker, test_settings)


@pytest.fixture
def receiver(settler: EnrollmentSettler) -> CallbackReceiver:
    return CallbackReceiver(settler)


@pytest.fixture
def reconciler(
    daraja_client: DarajaClient,
    broker: CredentialBroker,
    settler: EnrollmentSettler,
    test_settings: Settings,
) -> PendingPaymentReconciler:
    return PendingPaymentReconciler(daraja_client, broker, settler, test_settings)


@pytest.fixture
def make_payment_request(test_db: AsyncSession) -> Callable[..., Any]:
    """Insert a payment request directly, bypassing the gateway."""

    async def _make(
        checkout_request_id: str = CHECKOUT_REQUEST_ID,
        user_id: str = "user-42",
        course_id: str = "course-python-101",
        amount: int = 1000,
        status: str = PaymentStatus.PENDING,
        age_seconds: int = 0,
    ) -> PaymentRequest:
        created_at = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
        payment = PaymentRequest(
            checkout_request_id=checkout_request_id,
            merchant_request_id="29115-34620561-1",
            user_id=user_id,
            course_id=course_id,
            phone_number="254712345678",
            amount=amount,
            status=status,
            created_at=created_at,
            updated_at=created_at,
        )
        test_db.add(payment)
        await test_db.commit()
        return payment

    return _make


@pytest.fixture
def stk_callback() -> Callable[..., Dict[str, Any]]:
    """Build an STK push callback body as the gateway sends it."""

    def _build(
        checkout_request_id: str = CHECKOUT_REQUEST_ID,
        result_code: int = 0,
        result_desc: Optional[str] = None,
        amount: int = 1000,
        receipt_number: str = "NLJ7RT61SV",
    ) -> Dict[str, Any]:
        callback: Dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc
            or (
                "The service request is processed successfully."
                if result_code == 0
                else "Request cancelled by user"
            ),
        }
        if result_code == 0:
            # Items deliberately out of the documented order
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "MpesaReceiptNumber", "Value": receipt_number},
                    {"Name": "Balance"},
                    {"Name": "TransactionDate", "Value": 20191219102115},
                    {"Name": "PhoneNumber", "Value": 254712345678},
                    {"Name": "Amount", "Value": amount},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    return _build


async def count_enrollments(db: AsyncSession, user_id: str, course_id: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Enrollment)
        .where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
    )
    return result.scalar_one()


@pytest.fixture
def enrollment_count() -> Callable[..., Any]:
    return count_enrollments
