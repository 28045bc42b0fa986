from newsletter.schemas.newsletter import (
    NewsletterIssueCreate,
    NewsletterIssueDetailResponse,
    NewsletterIssueResponse,
)
from newsletter.schemas.subscriber import SubscriberEmail

__all__ = [
    "NewsletterIssueCreate",
    "NewsletterIssueDetailResponse",
    "NewsletterIssueResponse",
    "SubscriberEmail",
]
