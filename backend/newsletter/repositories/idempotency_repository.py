"""Repository for IdempotencyRecord operations.

Writes are flushed, not committed: the record is part of the command's
transaction and becomes durable together with the business side effects.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from newsletter.models.idempotency_record import IdempotencyRecord


class IdempotencyRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, user_id: UUID, idempotency_key: str) -> IdempotencyRecord | None:
        return (
            self.db.query(IdempotencyRecord)
            .filter(
                IdempotencyRecord.user_id == user_id,
                IdempotencyRecord.idempotency_key == idempotency_key,
            )
            .populate_existing()
            .first()
        )

    def create(
        self,
        *,
        user_id: UUID,
        idempotency_key: str,
        request_method: str,
        request_path: str,
    ) -> IdempotencyRecord:
        """Insert an in-flight record. Raises ``IntegrityError`` on a duplicate key."""
        record = IdempotencyRecord(
            user_id=user_id,
            idempotency_key=idempotency_key,
            request_method=request_method,
            request_path=request_path,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def update_response(
        self,
        record: IdempotencyRecord,
        status_code: int,
        headers: list[dict[str, Any]],
        body: bytes,
    ) -> IdempotencyRecord:
        record.response_status_code = status_code  # type: ignore[assignment]
        record.response_headers = headers  # type: ignore[assignment]
        record.response_body = body  # type: ignore[assignment]
        self.db.flush()
        return record

    def delete_expired(self, max_age_hours: int = 24) -> int:
        cutoff = datetime.now(UTC) - timedelta(hours=max_age_hours)
        count = (
            self.db.query(IdempotencyRecord)
            .filter(IdempotencyRecord.created_at < cutoff)
            .delete()
        )
        self.db.commit()
        return int(count)
