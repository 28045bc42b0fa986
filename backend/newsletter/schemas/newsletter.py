"""Newsletter issue schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class NewsletterIssueCreate(BaseModel):
    title: str = Field(max_length=255)
    html_content: str
    text_content: str


class NewsletterIssueResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    html_content: str
    text_content: str
    published_at: datetime


class NewsletterIssueDetailResponse(NewsletterIssueResponse):
    pending_deliveries: int
