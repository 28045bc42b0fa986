"""Subscriber repository.

Registration and confirmation happen upstream; ``create`` and ``confirm``
record those events locally, ``get_confirmed_emails`` is the recipient
snapshot used when an issue is published.
"""

from uuid import UUID

from sqlalchemy.orm import Session

from newsletter.models.subscriber import Subscriber, SubscriberStatus


class SubscriberRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        email: str,
        name: str,
        status: SubscriberStatus = SubscriberStatus.PENDING_CONFIRMATION,
    ) -> Subscriber:
        subscriber = Subscriber(email=email, name=name, status=status.value)
        self.db.add(subscriber)
        self.db.commit()
        self.db.refresh(subscriber)
        return subscriber

    def confirm(self, subscriber_id: UUID) -> Subscriber | None:
        subscriber = self.db.query(Subscriber).filter(Subscriber.id == subscriber_id).first()
        if not subscriber:
            return None
        subscriber.status = SubscriberStatus.CONFIRMED.value  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(subscriber)
        return subscriber

    def get_confirmed_emails(self) -> list[str]:
        """Emails of all subscribers confirmed as of the current transaction."""
        rows = (
            self.db.query(Subscriber.email)
            .filter(Subscriber.status == SubscriberStatus.CONFIRMED.value)
            .order_by(Subscriber.subscribed_at.asc(), Subscriber.email.asc())
            .all()
        )
        return [str(row.email) for row in rows]
