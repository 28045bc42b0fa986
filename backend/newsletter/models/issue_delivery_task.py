"""IssueDeliveryTask model: one pending (issue, recipient) send obligation."""

from sqlalchemy import Column, DateTime, ForeignKey, String

from newsletter.core.database import Base
from newsletter.models.shared import UUIDType


class IssueDeliveryTask(Base):
    """A row exists for as long as the email is still owed to the recipient.

    ``leased_until`` is only used on databases without ``SKIP LOCKED``: a
    worker claims the row by setting it in a committed update, and the row is
    invisible to other workers until the lease expires or is released.
    """

    __tablename__ = "issue_delivery_queue"

    newsletter_issue_id = Column(
        UUIDType,
        ForeignKey("newsletter_issues.id", ondelete="CASCADE"),
        primary_key=True,
    )
    subscriber_email = Column(String(255), primary_key=True)
    leased_until = Column(DateTime(timezone=True), nullable=True)
