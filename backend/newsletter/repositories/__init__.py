from newsletter.repositories.idempotency_repository import IdempotencyRepository
from newsletter.repositories.issue_delivery_queue_repository import IssueDeliveryQueueRepository
from newsletter.repositories.newsletter_issue_repository import NewsletterIssueRepository
from newsletter.repositories.subscriber_repository import SubscriberRepository

__all__ = [
    "IdempotencyRepository",
    "IssueDeliveryQueueRepository",
    "NewsletterIssueRepository",
    "SubscriberRepository",
]
