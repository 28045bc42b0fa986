"""Publishing newsletter issues."""

import logging

from sqlalchemy.orm import Session

from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.repositories.issue_delivery_queue_repository import IssueDeliveryQueueRepository
from newsletter.repositories.newsletter_issue_repository import NewsletterIssueRepository
from newsletter.repositories.subscriber_repository import SubscriberRepository
from newsletter.schemas.newsletter import NewsletterIssueCreate

logger = logging.getLogger(__name__)


class NewsletterService:
    def __init__(self, db: Session):
        self.db = db
        self.issue_repo = NewsletterIssueRepository(db)
        self.subscriber_repo = SubscriberRepository(db)
        self.queue_repo = IssueDeliveryQueueRepository(db)

    def publish_issue(self, data: NewsletterIssueCreate) -> NewsletterIssue:
        """Store the issue and queue one delivery per confirmed subscriber.

        Nothing is committed here: the caller's transaction decides whether
        the issue and its deliveries exist at all. Recipients are the
        subscribers confirmed at the time of this transaction.
        """
        issue = self.issue_repo.create(data)
        recipients = self.subscriber_repo.get_confirmed_emails()
        enqueued = self.queue_repo.enqueue(issue.id, recipients)  # type: ignore[arg-type]
        logger.info("Published newsletter issue %s, %d deliveries queued", issue.id, enqueued)
        return issue
