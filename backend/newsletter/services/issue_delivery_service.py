"""Draining the issue delivery queue.

Each task is handled in its own transaction: the row is locked with
``FOR UPDATE SKIP LOCKED`` for the duration of the send and deleted only
once the email API accepted the message. A retryable failure commits
without deleting, so the row is picked up again on a later pass; a crash
mid-send drops the connection and releases the lock the same way. Tasks
that can never succeed (bad stored address, missing issue, 4xx from the
email API) are logged and deleted.

On databases without ``SKIP LOCKED`` the claim is a committed lease on the
row instead of a lock. A retryable failure releases the lease; a crash
mid-send leaves it in place until ``DELIVERY_LEASE_SECONDS`` have passed.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from newsletter.core.config import settings
from newsletter.models.issue_delivery_task import IssueDeliveryTask
from newsletter.repositories.issue_delivery_queue_repository import IssueDeliveryQueueRepository
from newsletter.repositories.newsletter_issue_repository import NewsletterIssueRepository
from newsletter.schemas.subscriber import SubscriberEmail
from newsletter.services.email_client import DeliveryResult, DeliveryStatus, EmailClient

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    EMPTY_QUEUE = "empty_queue"
    SENT = "sent"
    RETRY_LATER = "retry_later"
    DROPPED = "dropped"


@dataclass(frozen=True)
class ExecutionOutcome:
    status: ExecutionStatus
    newsletter_issue_id: UUID | None = None
    subscriber_email: str | None = None

    @property
    def task_key(self) -> tuple[UUID, str] | None:
        if self.newsletter_issue_id is None or self.subscriber_email is None:
            return None
        return self.newsletter_issue_id, self.subscriber_email


@dataclass
class DrainReport:
    sent: int = 0
    retry_later: int = 0
    dropped: int = 0

    @property
    def processed(self) -> int:
        return self.sent + self.retry_later + self.dropped


def _deliver(db: Session, task: IssueDeliveryTask, email_client: EmailClient) -> DeliveryResult:
    issue = NewsletterIssueRepository(db).get_by_id(task.newsletter_issue_id)  # type: ignore[arg-type]
    if issue is None:
        return DeliveryResult.permanent("Newsletter issue not found")

    try:
        recipient = SubscriberEmail.parse(str(task.subscriber_email))
    except ValueError as exc:
        return DeliveryResult.permanent(str(exc))

    return email_client.send_email(
        recipient,
        str(issue.title),
        str(issue.html_content),
        str(issue.text_content),
    )


def _claim(
    db: Session,
    queue: IssueDeliveryQueueRepository,
    after: tuple[UUID, str] | None,
    lease_seconds: float,
) -> IssueDeliveryTask | None:
    if queue.supports_skip_locked:
        return queue.claim_next(after=after)

    while True:
        candidate = queue.next_unleased(after=after)
        if candidate is None:
            return None
        if queue.acquire_lease(candidate, lease_seconds):
            db.commit()
            return candidate
        # Another worker leased it between our read and our update.
        db.rollback()


def try_execute_task(
    session_factory: sessionmaker[Session],
    email_client: EmailClient,
    after: tuple[UUID, str] | None = None,
    lease_seconds: float | None = None,
) -> ExecutionOutcome:
    """Claim one pending task and attempt its delivery.

    Args:
        session_factory: Factory for the session that holds the claim.
        email_client: Client used to send the email.
        after: Only consider tasks whose key sorts after this one.
        lease_seconds: How long a leased task stays claimed on databases
            without ``SKIP LOCKED``. Defaults to ``DELIVERY_LEASE_SECONDS``.

    Returns:
        The outcome, carrying the key of the task that was handled.
    """
    if lease_seconds is None:
        lease_seconds = settings.DELIVERY_LEASE_SECONDS

    db = session_factory()
    try:
        queue = IssueDeliveryQueueRepository(db)
        task = _claim(db, queue, after, lease_seconds)
        if task is None:
            db.rollback()
            return ExecutionOutcome(ExecutionStatus.EMPTY_QUEUE)

        issue_id = UUID(str(task.newsletter_issue_id))
        email = str(task.subscriber_email)
        result = _deliver(db, task, email_client)

        if result.succeeded:
            queue.delete(task)
            status = ExecutionStatus.SENT
        elif result.status is DeliveryStatus.PERMANENT_FAILURE:
            logger.error(
                "Dropping delivery of issue %s to %s after permanent failure: %s",
                issue_id,
                email,
                result.error,
            )
            queue.delete(task)
            status = ExecutionStatus.DROPPED
        else:
            logger.warning(
                "Failed to deliver issue %s to %s, will retry: %s",
                issue_id,
                email,
                result.error,
            )
            if not queue.supports_skip_locked:
                queue.release_lease(task)
            status = ExecutionStatus.RETRY_LATER

        db.commit()
        return ExecutionOutcome(status, issue_id, email)
    finally:
        db.close()


def drain_queue(
    session_factory: sessionmaker[Session],
    email_client: EmailClient,
    stop_event: threading.Event | None = None,
) -> DrainReport:
    """Make one pass over the queue, attempting every unlocked task once.

    Tasks that fail with a retryable error stay in the queue for the next
    pass. Tasks locked by other workers are skipped.
    """
    report = DrainReport()
    cursor: tuple[UUID, str] | None = None

    while stop_event is None or not stop_event.is_set():
        outcome = try_execute_task(session_factory, email_client, after=cursor)
        if outcome.status is ExecutionStatus.EMPTY_QUEUE:
            break
        cursor = outcome.task_key
        if outcome.status is ExecutionStatus.SENT:
            report.sent += 1
        elif outcome.status is ExecutionStatus.DROPPED:
            report.dropped += 1
        else:
            report.retry_later += 1

    if report.processed:
        logger.info(
            "Delivery pass finished: %d sent, %d to retry, %d dropped",
            report.sent,
            report.retry_later,
            report.dropped,
        )
    return report


def run_worker_until_stopped(
    session_factory: sessionmaker[Session],
    email_client: EmailClient,
    stop_event: threading.Event,
    idle_seconds: float | None = None,
    error_backoff_seconds: float | None = None,
) -> None:
    """Drain the queue until ``stop_event`` is set.

    After a pass that sent nothing (empty queue, or only failures) the worker
    waits ``idle_seconds`` before polling again.
    """
    if idle_seconds is None:
        idle_seconds = settings.WORKER_IDLE_SECONDS
    if error_backoff_seconds is None:
        error_backoff_seconds = settings.WORKER_ERROR_BACKOFF_SECONDS

    logger.info("Delivery worker %s started", threading.current_thread().name)
    while not stop_event.is_set():
        try:
            report = drain_queue(session_factory, email_client, stop_event)
        except Exception:
            logger.exception("Delivery worker pass failed")
            stop_event.wait(error_backoff_seconds)
            continue

        if report.sent == 0:
            stop_event.wait(idle_seconds)
    logger.info("Delivery worker %s stopped", threading.current_thread().name)
