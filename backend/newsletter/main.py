import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from newsletter.core.config import settings
from newsletter.core.errors import (
    CorruptSavedResponseError,
    IdempotencyConflictError,
    InvalidIdempotencyKeyError,
)
from newsletter.core.logging_config import configure_logging
from newsletter.routers import newsletters

logger = logging.getLogger(__name__)

OPENAPI_TAGS = [
    {"name": "Newsletters", "description": "Publish newsletter issues and track their delivery."},
]

configure_logging()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Newsletter publishing backend. Publishing is idempotent per "
        "Idempotency-Key and emails are delivered asynchronously."
    ),
    openapi_tags=OPENAPI_TAGS,
)


@app.exception_handler(InvalidIdempotencyKeyError)
async def invalid_idempotency_key_handler(
    request: Request, exc: InvalidIdempotencyKeyError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(IdempotencyConflictError)
async def idempotency_conflict_handler(
    request: Request, exc: IdempotencyConflictError
) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc)},
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


@app.exception_handler(CorruptSavedResponseError)
async def corrupt_saved_response_handler(
    request: Request, exc: CorruptSavedResponseError
) -> JSONResponse:
    logger.error("Cannot replay saved response for %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error while handling %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(newsletters.router, prefix="/admin/newsletters", tags=["Newsletters"])


@app.get("/health_check")
async def health_check() -> Response:
    return Response(status_code=200)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "status": "running",
    }
