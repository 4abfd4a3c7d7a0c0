"""
Idempotent course enrollment.

The (user_id, course_id) unique key is the only guard: the insert uses
``ON CONFLICT DO NOTHING`` so duplicate callbacks, reconciler runs and
concurrent deliveries all converge on a single enrollment row without a
lock or a read-before-write.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_settlement.config import ConfigurationError
from mpesa_settlement.core.payment_requests import record_event, utcnow
from mpesa_settlement.database.models import Enrollment
from mpesa_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class GrantResult:
    """Outcome of a grant. ``created`` is False when the user was already enrolled."""

    success: bool
    created: bool


class EnrollmentSettler:
    """Grants course access once a payment has settled."""

    def _insert_for(self, db: AsyncSession):
        dialect = db.get_bind().dialect.name
        try:
            return _DIALECT_INSERTS[dialect]
        except KeyError:
            raise ConfigurationError(
                f"Idempotent enrollment insert is not supported on {dialect}"
            ) from None

    async def grant(
        self,
        user_id: str,
        course_id: str,
        db: AsyncSession,
        *,
        source: str = "mpesa",
        checkout_request_id: Optional[str] = None,
    ) -> GrantResult:
        """
        Enroll a user in a course if not already enrolled.

        An existing enrollment is returned as ``created=False`` and left
        unmodified.

        Args:
            user_id: User identifier
            course_id: Course identifier
            db: Database session
            source: ``mpesa`` for paid enrollments, ``free`` otherwise
            checkout_request_id: Payment request that paid for the course

        Returns:
            GrantResult: ``success`` is always True when no exception is raised
        """
        insert = self._insert_for(db)
        stmt = (
            insert(Enrollment)
            .values(
                user_id=user_id,
                course_id=course_id,
                source=source,
                checkout_request_id=checkout_request_id,
                enrolled_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["user_id", "course_id"])
        )
        result = await db.execute(stmt)
        created = result.rowcount == 1

        if created:
            if checkout_request_id:
                await record_event(
                    db,
                    checkout_request_id,
                    "enrollment.granted",
                    {"user_id": user_id, "course_id": course_id, "source": source},
                )
            logger.info(
                "enrollment_granted",
                user_id=user_id,
                course_id=course_id,
                source=source,
                checkout_request_id=checkout_request_id,
            )
        else:
            logger.info(
                "enrollment_already_exists",
                user_id=user_id,
                course_id=course_id,
                checkout_request_id=checkout_request_id,
            )

        metrics.record_enrollment(source, created)
        return GrantResult(success=True, created=created)
