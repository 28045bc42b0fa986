from newsletter.models.idempotency_record import IdempotencyRecord
from newsletter.models.issue_delivery_task import IssueDeliveryTask
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.models.subscriber import Subscriber, SubscriberStatus

__all__ = [
    "IdempotencyRecord",
    "IssueDeliveryTask",
    "NewsletterIssue",
    "Subscriber",
    "SubscriberStatus",
]
