"""
Tests for idempotent enrollment.
"""
import asyncio

import pytest
from sqlalchemy import select

from mpesa_settlement.config import ConfigurationError
from mpesa_settlement.core.enrollment import EnrollmentSettler
from mpesa_settlement.database.models import Enrollment, PaymentEvent


class TestEnrollmentSettler:
    """Test suite for EnrollmentSettler.grant."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_first_grant_creates_enrollment(self, settler, test_db) -> None:
        result = await settler.grant(
            "user-42", "course-python-101", test_db, checkout_request_id="ws_CO_1"
        )

        assert result.success is True
        assert result.created is True

        enrollment = (await test_db.execute(select(Enrollment))).scalar_one()
        assert enrollment.user_id == "user-42"
        assert enrollment.course_id == "course-python-101"
        assert enrollment.source == "mpesa"
        assert enrollment.checkout_request_id == "ws_CO_1"
        assert enrollment.enrolled_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_grant_is_a_noop(self, settler, test_db, enrollment_count) -> None:
        await settler.grant("user-42", "course-python-101", test_db, checkout_request_id="ws_CO_1")

        results = [
            await settler.grant("user-42", "course-python-101", test_db, checkout_request_id="ws_CO_2")
            for _ in range(3)
        ]

        assert all(r.success and not r.created for r in results)
        assert await enrollment_count(test_db, "user-42", "course-python-101") == 1

        # The first row is left unmodified
        enrollment = (await test_db.execute(select(Enrollment))).scalar_one()
        assert enrollment.checkout_request_id == "ws_CO_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_grants_are_per_user_and_course(self, settler, test_db) -> None:
        await settler.grant("user-1", "course-a", test_db)
        await settler.grant("user-1", "course-b", test_db)
        await settler.grant("user-2", "course-a", test_db)

        rows = (await test_db.execute(select(Enrollment))).scalars().all()
        assert len(rows) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_free_enrollment_records_no_payment_event(self, settler, test_db) -> None:
        result = await settler.grant("user-42", "course-intro", test_db, source="free")

        assert result.created is True
        assert (await test_db.execute(select(PaymentEvent))).scalars().all() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_enrollment_records_event_once(self, settler, test_db) -> None:
        await settler.grant("user-42", "course-python-101", test_db, checkout_request_id="ws_CO_1")
        await settler.grant("user-42", "course-python-101", test_db, checkout_request_id="ws_CO_1")

        events = (await test_db.execute(select(PaymentEvent))).scalars().all()
        assert [e.event_type for e in events] == ["enrollment.granted"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_grant_survives_commit_and_new_session(
        self, settler, session_factory, enrollment_count
    ) -> None:
        async with session_factory() as db:
            await settler.grant("user-42", "course-python-101", db)
            await db.commit()

        async with session_factory() as db:
            result = await settler.grant("user-42", "course-python-101", db)
            await db.commit()
            assert result.created is False
            assert await enrollment_count(db, "user-42", "course-python-101") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsupported_dialect_is_rejected(self, mocker) -> None:
        db = mocker.MagicMock()
        db.get_bind.return_value.dialect.name = "mysql"

        with pytest.raises(ConfigurationError):
            await EnrollmentSettler().grant("user-42", "course-python-101", db)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_grants_create_one_row(
        self, settler, session_factory, enrollment_count
    ) -> None:
        async def grant():
            async with session_factory() as db:
                result = await settler.grant(
                    "user-42", "course-python-101", db, checkout_request_id="ws_CO_1"
                )
                await db.commit()
                return result

        results = await asyncio.gather(*(grant() for _ in range(5)))

        assert all(r.success for r in results)
        assert sum(r.created for r in results) == 1

        async with session_factory() as db:
            assert await enrollment_count(db, "user-42", "course-python-101") == 1
            events = (await db.execute(select(PaymentEvent))).scalars().all()
            assert [e.event_type for e in events] == ["enrollment.granted"]
