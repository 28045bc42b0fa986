"""IdempotencyRecord model for request-level idempotency of admin commands."""

from sqlalchemy import JSON, Column, DateTime, Integer, LargeBinary, String, UniqueConstraint, func

from newsletter.core.config import IDEMPOTENCY_KEY_COLUMN_LENGTH
from newsletter.core.database import Base
from newsletter.models.shared import UUIDType, generate_uuid


class IdempotencyRecord(Base):
    """Marks a command as in flight and, once done, stores its response for replay.

    The response columns stay NULL until the command's transaction commits.
    ``response_headers`` keeps the raw header pairs in their original order as
    ``[{"name": ..., "value": <base64 bytes>}, ...]``.
    """

    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_user_idempotency_key"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    user_id = Column(UUIDType, nullable=False, index=True)
    idempotency_key = Column(String(IDEMPOTENCY_KEY_COLUMN_LENGTH), nullable=False)
    request_method = Column(String(10), nullable=False)
    request_path = Column(String(500), nullable=False)
    response_status_code = Column(Integer, nullable=True)
    response_headers = Column(JSON, nullable=True)
    response_body = Column(LargeBinary, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
