"""Idempotency support for state-changing admin commands.

A command carries an ``Idempotency-Key``. The first request for a
``(user_id, key)`` pair inserts an in-flight ``IdempotencyRecord`` inside the
request's transaction, runs the business logic in that same transaction and
stores the finished response before committing. Any later request with the
same pair gets the stored response replayed byte-for-byte instead of running
the business logic again.

Typical use from a router::

    return execute_idempotent(
        db,
        user_id,
        IdempotencyKey.parse(request.headers.get("Idempotency-Key")),
        request.method,
        request.url.path,
        lambda session: publish(session, data),
    )
"""

import base64
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.responses import Response

from newsletter.core.config import settings
from newsletter.core.errors import (
    CorruptSavedResponseError,
    IdempotencyConflictError,
    InvalidIdempotencyKeyError,
)
from newsletter.models.idempotency_record import IdempotencyRecord
from newsletter.repositories.idempotency_repository import IdempotencyRepository

logger = logging.getLogger(__name__)

MAX_POLL_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True)
class IdempotencyKey:
    value: str

    @classmethod
    def parse(cls, raw: str | None) -> "IdempotencyKey":
        """Validate a caller-supplied key.

        Keys must be non-empty, at most ``IDEMPOTENCY_KEY_MAX_LENGTH``
        characters and made of visible ASCII characters only.
        """
        if not raw:
            raise InvalidIdempotencyKeyError("The idempotency key cannot be empty")
        max_length = settings.IDEMPOTENCY_KEY_MAX_LENGTH
        if len(raw) > max_length:
            raise InvalidIdempotencyKeyError(
                f"The idempotency key must be at most {max_length} characters long"
            )
        if not all("!" <= char <= "~" for char in raw):
            raise InvalidIdempotencyKeyError(
                "The idempotency key may only contain visible ASCII characters"
            )
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass
class StartProcessing:
    """A new command: the session holds an open transaction that must be finished."""

    db: Session


@dataclass
class ReturnSavedResponse:
    """A repeated command: replay ``response`` without doing any work."""

    response: Response


NextAction = StartProcessing | ReturnSavedResponse


def snapshot_headers(response: Response) -> list[dict[str, str]]:
    """Encode the raw response headers, keeping their order and exact bytes."""
    return [
        {
            "name": name.decode("latin-1"),
            "value": base64.b64encode(value).decode("ascii"),
        }
        for name, value in response.raw_headers
    ]


def restore_response(status_code: int, headers: Any, body: bytes) -> Response:
    """Rebuild a response from a stored snapshot."""
    try:
        raw_headers = [
            (
                str(header["name"]).encode("latin-1"),
                base64.b64decode(header["value"], validate=True),
            )
            for header in headers
        ]
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptSavedResponseError("Stored response headers are malformed") from exc

    response = Response(content=body, status_code=status_code)
    response.raw_headers = raw_headers
    return response


def _saved_response(record: IdempotencyRecord) -> Response:
    return restore_response(
        int(record.response_status_code),
        record.response_headers or [],
        bytes(record.response_body or b""),
    )


def try_processing(
    db: Session,
    user_id: UUID,
    key: IdempotencyKey,
    request_method: str,
    request_path: str,
    wait_timeout_seconds: float | None = None,
    poll_interval_seconds: float | None = None,
) -> NextAction:
    """Claim ``key`` for ``user_id`` or return the response saved for it.

    The in-flight record is inserted without committing. When another
    request with the same key is still running, this polls with exponential
    backoff until that request commits its response or ``wait_timeout_seconds``
    elapses, then raises ``IdempotencyConflictError``. If the other request
    rolled back, its record disappears and the insert is retried.
    """
    if wait_timeout_seconds is None:
        wait_timeout_seconds = settings.IDEMPOTENCY_WAIT_TIMEOUT_SECONDS
    if poll_interval_seconds is None:
        poll_interval_seconds = settings.IDEMPOTENCY_POLL_INTERVAL_SECONDS

    repo = IdempotencyRepository(db)
    deadline = time.monotonic() + wait_timeout_seconds
    delay = poll_interval_seconds

    while True:
        try:
            repo.create(
                user_id=user_id,
                idempotency_key=key.value,
                request_method=request_method,
                request_path=request_path,
            )
            return StartProcessing(db)
        except IntegrityError:
            db.rollback()

        existing = repo.get_by_key(user_id, key.value)
        if existing is not None and existing.response_status_code is not None:
            response = _saved_response(existing)
            db.rollback()
            return ReturnSavedResponse(response)
        db.rollback()

        if time.monotonic() >= deadline:
            logger.warning(
                "Gave up waiting for in-flight request with idempotency key %s (user %s)",
                key,
                user_id,
            )
            raise IdempotencyConflictError(
                key.value, retry_after_seconds=max(1, round(wait_timeout_seconds))
            )

        if existing is None:
            # The competing request rolled back between our insert and our read.
            continue

        time.sleep(delay)
        delay = min(delay * 2, MAX_POLL_INTERVAL_SECONDS)


def save_response(
    db: Session,
    user_id: UUID,
    key: IdempotencyKey,
    response: Response,
) -> Response:
    """Store ``response`` on the in-flight record and commit the transaction.

    Returns a response rebuilt from the stored snapshot so the first caller
    sees exactly what a replayed duplicate will see.
    """
    if not hasattr(response, "body"):
        raise TypeError(f"Cannot store a streaming response ({type(response).__name__})")

    repo = IdempotencyRepository(db)
    record = repo.get_by_key(user_id, key.value)
    if record is None:
        raise RuntimeError(
            f"No in-flight idempotency record for key {key} (user {user_id})"
        )

    status_code = response.status_code
    headers = snapshot_headers(response)
    body = bytes(response.body)
    repo.update_response(record, status_code, headers, body)
    db.commit()
    return restore_response(status_code, headers, body)


def execute_idempotent(
    db: Session,
    user_id: UUID,
    key: IdempotencyKey,
    request_method: str,
    request_path: str,
    operation: Callable[[Session], Response],
) -> Response:
    """Run ``operation`` at most once per ``(user_id, key)``.

    ``operation`` receives the session whose transaction also holds the
    idempotency record; it must not commit. Its side effects and the saved
    response are committed together by ``save_response``.
    """
    next_action = try_processing(db, user_id, key, request_method, request_path)
    if isinstance(next_action, ReturnSavedResponse):
        logger.info("Replaying saved response for idempotency key %s (user %s)", key, user_id)
        return next_action.response

    try:
        response = operation(next_action.db)
        return save_response(next_action.db, user_id, key, response)
    except Exception:
        db.rollback()
        raise
