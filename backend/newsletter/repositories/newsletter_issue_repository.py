"""NewsletterIssue repository for data access."""

from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.schemas.newsletter import NewsletterIssueCreate


class NewsletterIssueRepository:
    """Repository for NewsletterIssue model."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, data: NewsletterIssueCreate) -> NewsletterIssue:
        """Insert a new issue in the current transaction without committing."""
        issue = NewsletterIssue(
            title=data.title,
            text_content=data.text_content,
            html_content=data.html_content,
        )
        self.db.add(issue)
        self.db.flush()
        return issue

    def get_by_id(self, issue_id: UUID) -> NewsletterIssue | None:
        return self.db.query(NewsletterIssue).filter(NewsletterIssue.id == issue_id).first()

    def get_all(self, skip: int = 0, limit: int = 100) -> list[NewsletterIssue]:
        return (
            self.db.query(NewsletterIssue)
            .order_by(NewsletterIssue.published_at.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def count(self) -> int:
        return self.db.query(func.count(NewsletterIssue.id)).scalar() or 0
