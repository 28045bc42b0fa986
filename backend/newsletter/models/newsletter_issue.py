"""NewsletterIssue model."""

from sqlalchemy import Column, DateTime, String, Text

from newsletter.core.database import Base
from newsletter.models.shared import UUIDType, generate_uuid, utc_now


class NewsletterIssue(Base):
    __tablename__ = "newsletter_issues"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    title = Column(String(255), nullable=False)
    text_content = Column(Text, nullable=False)
    html_content = Column(Text, nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
