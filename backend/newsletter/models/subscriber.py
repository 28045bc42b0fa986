from enum import Enum

from sqlalchemy import Column, DateTime, Index, String

from newsletter.core.database import Base
from newsletter.models.shared import UUIDType, generate_uuid, utc_now


class SubscriberStatus(str, Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"


class Subscriber(Base):
    """A newsletter subscriber, written by the upstream registration flow."""

    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_status", "status"),)

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    status = Column(
        String(50),
        nullable=False,
        default=SubscriberStatus.PENDING_CONFIRMATION.value,
    )
    subscribed_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
