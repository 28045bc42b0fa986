"""Repository for the issue delivery queue.

A row in ``issue_delivery_queue`` is a pending send. On PostgreSQL (and other
databases with ``SKIP LOCKED``) workers claim rows with
``SELECT ... FOR UPDATE SKIP LOCKED`` so concurrent workers never pick the
same row and never wait on each other. Elsewhere (SQLite) the lock clause is
dropped by the dialect, so a claim is a conditional update of
``leased_until`` instead: only the worker whose update matched the row owns
it until the lease expires.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Query, Session

from newsletter.models.issue_delivery_task import IssueDeliveryTask
from newsletter.models.shared import utc_now

SKIP_LOCKED_DIALECTS = frozenset({"postgresql", "mysql", "mariadb", "oracle"})


class IssueDeliveryQueueRepository:
    def __init__(self, db: Session):
        self.db = db

    @property
    def supports_skip_locked(self) -> bool:
        return self.db.get_bind().dialect.name in SKIP_LOCKED_DIALECTS

    def enqueue(self, newsletter_issue_id: UUID, recipients: Iterable[str]) -> int:
        """Add one task per distinct recipient in the current transaction."""
        tasks = [
            IssueDeliveryTask(newsletter_issue_id=newsletter_issue_id, subscriber_email=email)
            for email in dict.fromkeys(recipients)
        ]
        self.db.add_all(tasks)
        self.db.flush()
        return len(tasks)

    def _ordered_after(self, after: tuple[UUID, str] | None) -> Query[IssueDeliveryTask]:
        query = self.db.query(IssueDeliveryTask)
        if after is not None:
            issue_id, email = after
            query = query.filter(
                or_(
                    IssueDeliveryTask.newsletter_issue_id > issue_id,
                    and_(
                        IssueDeliveryTask.newsletter_issue_id == issue_id,
                        IssueDeliveryTask.subscriber_email > email,
                    ),
                )
            )
        return query.order_by(
            IssueDeliveryTask.newsletter_issue_id.asc(),
            IssueDeliveryTask.subscriber_email.asc(),
        )

    def claim_query(self, after: tuple[UUID, str] | None = None) -> Query[IssueDeliveryTask]:
        """Build the locking query used by ``claim_next``.

        Tasks are scanned in key order; ``after`` skips every task up to and
        including that ``(newsletter_issue_id, subscriber_email)`` key.
        """
        return self._ordered_after(after).with_for_update(skip_locked=True).limit(1)

    def claim_next(self, after: tuple[UUID, str] | None = None) -> IssueDeliveryTask | None:
        """Lock and return one task not already locked by another transaction."""
        return self.claim_query(after).one_or_none()

    def next_unleased(
        self, after: tuple[UUID, str] | None = None, now: datetime | None = None
    ) -> IssueDeliveryTask | None:
        """Return the first task after ``after`` whose lease is free or expired."""
        now = now or utc_now()
        return (
            self._ordered_after(after)
            .filter(
                or_(
                    IssueDeliveryTask.leased_until.is_(None),
                    IssueDeliveryTask.leased_until < now,
                )
            )
            .limit(1)
            .one_or_none()
        )

    def acquire_lease(self, task: IssueDeliveryTask, lease_seconds: float) -> bool:
        """Take the lease on ``task`` unless another worker holds it.

        Returns ``False`` when the row was leased or deleted since it was read.
        """
        now = utc_now()
        result = self.db.execute(
            update(IssueDeliveryTask)
            .where(
                IssueDeliveryTask.newsletter_issue_id == task.newsletter_issue_id,
                IssueDeliveryTask.subscriber_email == task.subscriber_email,
                or_(
                    IssueDeliveryTask.leased_until.is_(None),
                    IssueDeliveryTask.leased_until < now,
                ),
            )
            .values(leased_until=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    def release_lease(self, task: IssueDeliveryTask) -> None:
        task.leased_until = None  # type: ignore[assignment]
        self.db.flush()

    def delete(self, task: IssueDeliveryTask) -> None:
        self.db.delete(task)
        self.db.flush()

    def count_pending(self, newsletter_issue_id: UUID | None = None) -> int:
        query = self.db.query(func.count()).select_from(IssueDeliveryTask)
        if newsletter_issue_id is not None:
            query = query.filter(IssueDeliveryTask.newsletter_issue_id == newsletter_issue_id)
        return query.scalar() or 0
