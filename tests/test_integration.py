"""
Integration tests for the HTTP API.

The application runs in-process over ``httpx.ASGITransport``; the database
is in-memory SQLite and the gateway is the scripted ``FakeDaraja``.
"""
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from mpesa_settlement.api import routes
from mpesa_settlement.api.main import app
from mpesa_settlement.database.connection import get_db

CALLBACK_PATH = "/webhooks/mpesa/callback"


@pytest_asyncio.fixture
async def api_client(
    session_factory, initiator, receiver, reconciler
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client for the app with database and gateway dependencies overridden."""

    async def override_get_db() -> AsyncGenerator[Any, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[routes.get_payment_initiator] = lambda: initiator
    app.dependency_overrides[routes.get_callback_receiver] = lambda: receiver
    app.dependency_overrides[routes.get_reconciler] = lambda: reconciler

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def _start_payment(client: httpx.AsyncClient) -> str:
    response = await client.post(
        "/payments/mpesa/stk-push",
        json={
            "phone_number": "0712345678",
            "amount": 1000,
            "course_id": "course-python-101",
            "user_id": "user-42",
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    return body["checkout_request_id"]


class TestPaymentFlow:
    """End-to-end tests: initiate, callback, status."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initiate_then_callback_enrolls(
        self, api_client, stk_callback, session_factory, enrollment_count
    ) -> None:
        checkout_request_id = await _start_payment(api_client)

        status_response = await api_client.get(f"/payments/{checkout_request_id}")
        assert status_response.status_code == 200
        assert status_response.json()["status"] == "pending"

        callback_response = await api_client.post(
            CALLBACK_PATH,
            params={"userId": "user-42", "courseId": "course-python-101"},
            json=stk_callback(checkout_request_id),
        )
        assert callback_response.status_code == 200
        assert callback_response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

        status_response = await api_client.get(f"/payments/{checkout_request_id}")
        body = status_response.json()
        assert body["status"] == "succeeded"
        assert body["receipt_number"] == "NLJ7RT61SV"

        async with session_factory() as db:
            assert await enrollment_count(db, "user-42", "course-python-101") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_callbacks_are_acknowledged(
        self, api_client, stk_callback, session_factory, enrollment_count
    ) -> None:
        checkout_request_id = await _start_payment(api_client)

        for _ in range(3):
            response = await api_client.post(
                CALLBACK_PATH,
                params={"userId": "user-42", "courseId": "course-python-101"},
                json=stk_callback(checkout_request_id),
            )
            assert response.status_code == 200

        async with session_factory() as db:
            assert await enrollment_count(db, "user-42", "course-python-101") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_camel_case_request_fields(self, api_client) -> None:
        response = await api_client.post(
            "/payments/mpesa/stk-push",
            json={
                "phoneNumber": "+254712345678",
                "amount": 500,
                "courseId": "course-python-101",
                "userId": "user-42",
            },
        )

        assert response.status_code == 200
        assert response.json()["success"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_phone_is_structured_failure(self, api_client, daraja) -> None:
        response = await api_client.post(
            "/payments/mpesa/stk-push",
            json={
                "phone_number": "12345",
                "amount": 1000,
                "course_id": "course-python-101",
                "user_id": "user-42",
            },
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "invalid_input"
        assert daraja.requests == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_rejection_is_structured_failure(self, api_client, daraja) -> None:
        daraja.stk_push_response = (
            400,
            {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PartyB"},
        )

        response = await api_client.post(
            "/payments/mpesa/stk-push",
            json={
                "phone_number": "0712345678",
                "amount": 1000,
                "course_id": "course-python-101",
                "user_id": "user-42",
            },
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": False,
            "message": "Bad Request - Invalid PartyB",
            "checkout_request_id": None,
            "error": "rejected",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment_status_is_404(self, api_client) -> None:
        response = await api_client.get("/payments/ws_CO_missing")

        assert response.status_code == 404


class TestCallbackEndpoint:
    """Test suite for the callback endpoint responses."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_query_params_is_400_without_retry(
        self, api_client, stk_callback
    ) -> None:
        checkout_request_id = await _start_payment(api_client)

        response = await api_client.post(
            CALLBACK_PATH,
            params={"courseId": "course-python-101"},
            json=stk_callback(checkout_request_id),
        )

        assert response.status_code == 400
        assert response.json()["ResultCode"] == 0
        assert response.json()["ResultDesc"].startswith("Rejected:")

        status_response = await api_client.get(f"/payments/{checkout_request_id}")
        assert status_response.json()["status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_json_body_asks_for_redelivery(self, api_client) -> None:
        response = await api_client.post(
            CALLBACK_PATH,
            params={"userId": "user-42", "courseId": "course-python-101"},
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 500
        assert response.json() == {"ResultCode": 1, "ResultDesc": "Rejected"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_declined_callback(self, api_client, stk_callback) -> None:
        checkout_request_id = await _start_payment(api_client)

        response = await api_client.post(
            CALLBACK_PATH,
            params={"userId": "user-42", "courseId": "course-python-101"},
            json=stk_callback(checkout_request_id, result_code=1032),
        )

        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
        status_response = await api_client.get(f"/payments/{checkout_request_id}")
        assert status_response.json()["status"] == "failed"
        assert status_response.json()["result_code"] == 1032


class TestAdminAndMonitoring:
    """Test suite for admin and monitoring endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_manual_reconciliation(self, api_client) -> None:
        checkout_request_id = await _start_payment(api_client)

        response = await api_client.post("/admin/reconcile", params={"older_than_seconds": 0})

        assert response.status_code == 200
        assert response.json() == {
            "checked": 1,
            "succeeded": 1,
            "failed": 0,
            "still_pending": 0,
            "errors": 0,
        }
        status_response = await api_client.get(f"/payments/{checkout_request_id}")
        assert status_response.json()["status"] == "succeeded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, api_client) -> None:
        response = await api_client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_exposed(self, api_client) -> None:
        await _start_payment(api_client)

        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "stk_push_requests_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_header(self, api_client) -> None:
        response = await api_client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
