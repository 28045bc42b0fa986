import logging
import signal
import threading
from types import FrameType
from typing import Any

from arq import cron

from newsletter.core.config import settings
from newsletter.core.database import SessionLocal
from newsletter.core.logging_config import configure_logging
from newsletter.repositories.idempotency_repository import IdempotencyRepository
from newsletter.services.email_client import EmailClient
from newsletter.services.issue_delivery_service import drain_queue, run_worker_until_stopped
from newsletter.tasks import redis_settings

logger = logging.getLogger(__name__)


async def dispatch_pending_emails_task(ctx: dict[str, Any]) -> int:
    """Background task: make one delivery pass over the issue delivery queue.

    Runs every minute as a safety net next to the long-running delivery
    workers. Returns the number of emails sent.
    """
    with EmailClient.from_settings() as email_client:
        report = drain_queue(SessionLocal, email_client)
    return report.sent


async def purge_expired_idempotency_records_task(ctx: dict[str, Any]) -> int:
    """Background task: delete idempotency records older than the TTL.

    Runs hourly.
    """
    db = SessionLocal()
    try:
        count = IdempotencyRepository(db).delete_expired(
            max_age_hours=settings.IDEMPOTENCY_TTL_HOURS
        )
        if count > 0:
            logger.info("Purged %d expired idempotency records", count)
        return count
    finally:
        db.close()


class WorkerSettings:
    functions = [
        dispatch_pending_emails_task,
        purge_expired_idempotency_records_task,
    ]
    cron_jobs = [
        cron(dispatch_pending_emails_task),  # every minute
        cron(purge_expired_idempotency_records_task, minute={0}),  # hourly
    ]
    redis_settings = redis_settings


def run_delivery_workers(concurrency: int | None = None) -> None:
    """Run ``concurrency`` polling delivery workers until SIGINT or SIGTERM."""
    configure_logging()
    concurrency = concurrency or settings.WORKER_CONCURRENCY
    stop_event = threading.Event()

    def _request_stop(signum: int, frame: FrameType | None) -> None:
        logger.info("Received signal %d, stopping delivery workers", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    with EmailClient.from_settings() as email_client:
        threads = [
            threading.Thread(
                target=run_worker_until_stopped,
                args=(SessionLocal, email_client, stop_event),
                name=f"delivery-worker-{index}",
            )
            for index in range(concurrency)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()


if __name__ == "__main__":
    run_delivery_workers()
