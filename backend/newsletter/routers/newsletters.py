from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from newsletter.core.auth import get_current_user_id
from newsletter.core.database import get_db
from newsletter.core.idempotency import IdempotencyKey, execute_idempotent
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.repositories.issue_delivery_queue_repository import IssueDeliveryQueueRepository
from newsletter.repositories.newsletter_issue_repository import NewsletterIssueRepository
from newsletter.schemas.newsletter import (
    NewsletterIssueCreate,
    NewsletterIssueDetailResponse,
    NewsletterIssueResponse,
)
from newsletter.services.newsletter_service import NewsletterService
from newsletter.tasks import enqueue_dispatch_pending_emails

router = APIRouter()

NEWSLETTERS_PATH = "/admin/newsletters"


def _validate_newsletter(data: NewsletterIssueCreate) -> None:
    if not data.title.strip():
        raise HTTPException(status_code=400, detail="Title cannot be empty.")
    if not data.html_content.strip():
        raise HTTPException(status_code=400, detail="Html content cannot be empty.")
    if not data.text_content.strip():
        raise HTTPException(status_code=400, detail="Plain text content cannot be empty.")


@router.post(
    "",
    status_code=303,
    summary="Publish newsletter issue",
    responses={
        303: {"description": "Issue published; redirect to the newsletters page"},
        400: {"description": "Invalid idempotency key or empty newsletter field"},
        401: {"description": "Missing caller identity"},
        409: {"description": "A request with this idempotency key is still in progress"},
    },
)
def publish_newsletter(
    data: NewsletterIssueCreate,
    request: Request,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> Response:
    """Publish an issue to all confirmed subscribers.

    Requires an ``Idempotency-Key`` header. Retrying with the same key
    returns the original response and does not publish the issue again.
    Emails are sent asynchronously by the delivery workers.
    """
    key = IdempotencyKey.parse(request.headers.get("Idempotency-Key"))
    _validate_newsletter(data)

    def _publish(session: Session) -> Response:
        NewsletterService(session).publish_issue(data)
        return RedirectResponse(NEWSLETTERS_PATH, status_code=303)

    return execute_idempotent(
        db,
        user_id,
        key,
        request.method,
        request.url.path,
        _publish,
    )


@router.get(
    "",
    response_model=list[NewsletterIssueResponse],
    summary="List newsletter issues",
)
async def list_newsletter_issues(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> list[NewsletterIssue]:
    """List published issues, newest first."""
    repo = NewsletterIssueRepository(db)
    response.headers["X-Total-Count"] = str(repo.count())
    return repo.get_all(skip=skip, limit=limit)


@router.post(
    "/dispatch",
    status_code=202,
    summary="Trigger a delivery pass",
)
async def dispatch_pending_emails(
    user_id: UUID = Depends(get_current_user_id),
) -> dict[str, str]:
    """Ask the background worker to drain the delivery queue now."""
    job = await enqueue_dispatch_pending_emails()
    return {"job_id": str(job.job_id)}


@router.get(
    "/{issue_id}",
    response_model=NewsletterIssueDetailResponse,
    summary="Get newsletter issue",
    responses={404: {"description": "Newsletter issue not found"}},
)
async def get_newsletter_issue(
    issue_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
) -> NewsletterIssueDetailResponse:
    """Get an issue with the number of deliveries still pending."""
    issue = NewsletterIssueRepository(db).get_by_id(issue_id)
    if not issue:
        raise HTTPException(status_code=404, detail="Newsletter issue not found")
    pending = IssueDeliveryQueueRepository(db).count_pending(issue_id)
    return NewsletterIssueDetailResponse(
        id=issue.id,
        title=issue.title,
        html_content=issue.html_content,
        text_content=issue.text_content,
        published_at=issue.published_at,
        pending_deliveries=pending,
    )
