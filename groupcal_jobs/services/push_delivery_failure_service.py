from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from groupcal_jobs.db.models import PushDeliveryFailure, PushDeliveryStatus

# Ticket errors that will fail again on every retry
NON_RETRYABLE_ERRORS = ("DeviceNotRegistered", "InvalidCredentials", "MessageTooBig")


class PushDeliveryFailureService:
    """Side table of per-message push failures with a bounded retry counter"""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_retryable(self, max_attempts: int, limit: int) -> List[PushDeliveryFailure]:
        result = self.db.execute(
            select(PushDeliveryFailure)
            .where(
                and_(
                    PushDeliveryFailure.status == PushDeliveryStatus.PENDING,
                    PushDeliveryFailure.attempts < max_attempts,
                )
            )
            .order_by(PushDeliveryFailure.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    def claim_attempt(self, failure_id: str, expected_attempts: int, now: datetime) -> bool:
        """Atomically bump the attempt counter; False if another worker got there first."""
        result = self.db.execute(
            update(PushDeliveryFailure)
            .where(
                and_(
                    PushDeliveryFailure.id == failure_id,
                    PushDeliveryFailure.status == PushDeliveryStatus.PENDING,
                    PushDeliveryFailure.attempts == expected_attempts,
                )
            )
            .values(attempts=expected_attempts + 1, last_attempt_at=now)
        )
        self.db.commit()
        return result.rowcount == 1

    def mark_resolved(self, failure_id: str, now: datetime) -> None:
        self.db.execute(
            update(PushDeliveryFailure)
            .where(PushDeliveryFailure.id == failure_id)
            .values(status=PushDeliveryStatus.RESOLVED, resolved_at=now)
        )
        self.db.commit()

    def mark_failed(
        self,
        failure_id: str,
        attempts: int,
        max_attempts: int,
        error_code: Optional[str],
        error_message: Optional[str],
    ) -> PushDeliveryStatus:
        """Record a failed retry; exhausted once the budget is spent or the error is permanent."""
        if attempts >= max_attempts or error_code in NON_RETRYABLE_ERRORS:
            status = PushDeliveryStatus.EXHAUSTED
        else:
            status = PushDeliveryStatus.PENDING

        self.db.execute(
            update(PushDeliveryFailure)
            .where(PushDeliveryFailure.id == failure_id)
            .values(status=status, error_code=error_code, error_message=error_message)
        )
        self.db.commit()
        return status
