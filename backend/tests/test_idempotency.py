"""Tests for idempotency keys, records, the repository and the processing flow."""

import base64
import os
import threading
import time
from datetime import UTC, datetime, timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from starlette.responses import JSONResponse, RedirectResponse, Response

from newsletter.core import database as db_module
from newsletter.core.database import Base
from newsletter.core.errors import (
    CorruptSavedResponseError,
    IdempotencyConflictError,
    InvalidIdempotencyKeyError,
)
from newsletter.core.idempotency import (
    IdempotencyKey,
    ReturnSavedResponse,
    StartProcessing,
    execute_idempotent,
    restore_response,
    save_response,
    snapshot_headers,
    try_processing,
)
from newsletter.models.idempotency_record import IdempotencyRecord
from newsletter.models.issue_delivery_task import IssueDeliveryTask
from newsletter.models.newsletter_issue import NewsletterIssue
from newsletter.models.subscriber import Subscriber, SubscriberStatus
from newsletter.repositories.idempotency_repository import IdempotencyRepository
from newsletter.schemas.newsletter import NewsletterIssueCreate
from newsletter.services.newsletter_service import NewsletterService
from tests.conftest import DEFAULT_USER_ID


@pytest.fixture
def repo(db_session: Session) -> IdempotencyRepository:
    return IdempotencyRepository(db_session)


def _commit_in_flight_record(key: str, user_id=DEFAULT_USER_ID) -> None:
    """Make an unfinished record visible to other sessions."""
    db = db_module.SessionLocal()
    try:
        IdempotencyRepository(db).create(
            user_id=user_id,
            idempotency_key=key,
            request_method="POST",
            request_path="/admin/newsletters",
        )
        db.commit()
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Key parsing
# ---------------------------------------------------------------------------


class TestIdempotencyKey:
    def test_valid_key(self) -> None:
        key = IdempotencyKey.parse("abc123")
        assert key.value == "abc123"
        assert str(key) == "abc123"

    def test_max_length_key_accepted(self) -> None:
        assert IdempotencyKey.parse("k" * 50).value == "k" * 50

    def test_empty_key_rejected(self) -> None:
        with pytest.raises(InvalidIdempotencyKeyError, match="cannot be empty"):
            IdempotencyKey.parse("")

    def test_missing_key_rejected(self) -> None:
        with pytest.raises(InvalidIdempotencyKeyError, match="cannot be empty"):
            IdempotencyKey.parse(None)

    def test_too_long_key_rejected(self) -> None:
        with pytest.raises(InvalidIdempotencyKeyError, match="at most 50 characters"):
            IdempotencyKey.parse("k" * 51)

    @pytest.mark.parametrize("raw", ["has space", "tab\tkey", "café"])
    def test_non_visible_ascii_rejected(self, raw: str) -> None:
        with pytest.raises(InvalidIdempotencyKeyError, match="visible ASCII"):
            IdempotencyKey.parse(raw)

    def test_invalid_key_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            IdempotencyKey.parse("")


# ---------------------------------------------------------------------------
# Model tests
# ---------------------------------------------------------------------------


class TestIdempotencyRecordModel:
    def test_create_record(self, db_session: Session) -> None:
        record = IdempotencyRecord(
            user_id=DEFAULT_USER_ID,
            idempotency_key="key-1",
            request_method="POST",
            request_path="/admin/newsletters",
        )
        db_session.add(record)
        db_session.commit()
        db_session.refresh(record)

        assert record.id is not None
        assert record.user_id == DEFAULT_USER_ID
        assert record.response_status_code is None
        assert record.response_headers is None
        assert record.response_body is None
        assert record.created_at is not None

    def test_unique_per_user_and_key(self, db_session: Session) -> None:
        for _ in range(2):
            db_session.add(
                IdempotencyRecord(
                    user_id=DEFAULT_USER_ID,
                    idempotency_key="dup-key",
                    request_method="POST",
                    request_path="/admin/newsletters",
                )
            )
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


# ---------------------------------------------------------------------------
# Repository tests
# ---------------------------------------------------------------------------


class TestIdempotencyRepository:
    def test_create_and_get_by_key(self, repo: IdempotencyRepository) -> None:
        record = repo.create(
            user_id=DEFAULT_USER_ID,
            idempotency_key="repo-key-1",
            request_method="POST",
            request_path="/admin/newsletters",
        )
        fetched = repo.get_by_key(DEFAULT_USER_ID, "repo-key-1")
        assert fetched is not None
        assert fetched.id == record.id

    def test_get_by_key_not_found(self, repo: IdempotencyRepository) -> None:
        assert repo.get_by_key(DEFAULT_USER_ID, "nonexistent") is None

    def test_same_key_for_different_users(self, repo: IdempotencyRepository) -> None:
        other_user = uuid4()
        repo.create(
            user_id=DEFAULT_USER_ID,
            idempotency_key="shared",
            request_method="POST",
            request_path="/admin/newsletters",
        )
        repo.create(
            user_id=other_user,
            idempotency_key="shared",
            request_method="POST",
            request_path="/admin/newsletters",
        )
        repo.db.commit()

        first = repo.get_by_key(DEFAULT_USER_ID, "shared")
        second = repo.get_by_key(other_user, "shared")
        assert first is not None and second is not None
        assert first.id != second.id

    def test_update_response(self, repo: IdempotencyRepository) -> None:
        record = repo.create(
            user_id=DEFAULT_USER_ID,
            idempotency_key="update-key",
            request_method="POST",
            request_path="/admin/newsletters",
        )
        headers = [{"name": "location", "value": "L2FkbWlu"}]
        repo.update_response(record, 303, headers, b"")
        repo.db.commit()

        fetched = repo.get_by_key(DEFAULT_USER_ID, "update-key")
        assert fetched is not None
        assert fetched.response_status_code == 303
        assert fetched.response_headers == headers
        assert fetched.response_body == b""

    def test_delete_expired(self, repo: IdempotencyRepository) -> None:
        old = repo.create(
            user_id=DEFAULT_USER_ID,
            idempotency_key="old-key",
            request_method="POST",
            request_path="/admin/newsletters",
        )
        old.created_at = datetime.now(UTC) - timedelta(hours=200)  # type: ignore[assignment]
        repo.create(
            user_id=DEFAULT_USER_ID,
            idempotency_key="fresh-key",
            request_method="POST",
            request_path="/admin/newsletters",
        )
        repo.db.commit()

        assert repo.delete_expired(max_age_hours=168) == 1
        assert repo.get_by_key(DEFAULT_USER_ID, "old-key") is None
        assert repo.get_by_key(DEFAULT_USER_ID, "fresh-key") is not None


# ---------------------------------------------------------------------------
# Response snapshots
# ---------------------------------------------------------------------------


class TestResponseSnapshot:
    def test_snapshot_keeps_order_and_bytes(self) -> None:
        response = Response(content=b"body", status_code=201)
        response.raw_headers = [
            (b"x-second", b"2"),
            (b"set-cookie", b"a=1"),
            (b"set-cookie", b"b=2"),
        ]
        headers = snapshot_headers(response)

        assert [h["name"] for h in headers] == ["x-second", "set-cookie", "set-cookie"]
        assert base64.b64decode(headers[2]["value"]) == b"b=2"

        restored = restore_response(201, headers, b"body")
        assert restored.status_code == 201
        assert restored.body == b"body"
        assert restored.raw_headers == response.raw_headers

    def test_restore_rejects_bad_base64(self) -> None:
        with pytest.raises(CorruptSavedResponseError):
            restore_response(200, [{"name": "x", "value": "not base64!"}], b"")

    def test_restore_rejects_missing_fields(self) -> None:
        with pytest.raises(CorruptSavedResponseError):
            restore_response(200, [{"name": "x"}], b"")

    def test_restore_rejects_non_list(self) -> None:
        with pytest.raises(CorruptSavedResponseError):
            restore_response(200, 42, b"")


# ---------------------------------------------------------------------------
# Processing flow
# ---------------------------------------------------------------------------


class TestTryProcessing:
    def test_new_key_starts_processing(self, db_session: Session) -> None:
        key = IdempotencyKey.parse("new-key")
        action = try_processing(db_session, DEFAULT_USER_ID, key, "POST", "/admin/newsletters")

        assert isinstance(action, StartProcessing)
        assert action.db is db_session
        record = IdempotencyRepository(db_session).get_by_key(DEFAULT_USER_ID, "new-key")
        assert record is not None
        assert record.response_status_code is None

    def test_saved_response_is_replayed(self, db_session: Session) -> None:
        key = IdempotencyKey.parse("replay-key")
        action = try_processing(db_session, DEFAULT_USER_ID, key, "POST", "/admin/newsletters")
        assert isinstance(action, StartProcessing)
        original = save_response(
            db_session, DEFAULT_USER_ID, key, RedirectResponse("/admin/newsletters", 303)
        )

        replay = try_processing(db_session, DEFAULT_USER_ID, key, "POST", "/admin/newsletters")

        assert isinstance(replay, ReturnSavedResponse)
        assert replay.response.status_code == 303
        assert replay.response.raw_headers == original.raw_headers
        assert replay.response.body == original.body

    def test_in_flight_key_times_out_with_conflict(self, db_session: Session) -> None:
        _commit_in_flight_record("busy-key")
        key = IdempotencyKey.parse("busy-key")

        with pytest.raises(IdempotencyConflictError) as exc_info:
            try_processing(
                db_session,
                DEFAULT_USER_ID,
                key,
                "POST",
                "/admin/newsletters",
                wait_timeout_seconds=0,
            )
        assert exc_info.value.idempotency_key == "busy-key"
        assert exc_info.value.retry_after_seconds == 1

    def test_waits_for_in_flight_request_to_finish(self, db_session: Session) -> None:
        _commit_in_flight_record("slow-key")
        key = IdempotencyKey.parse("slow-key")

        def _finish_other_request(seconds: float) -> None:
            db = db_module.SessionLocal()
            try:
                other_repo = IdempotencyRepository(db)
                record = other_repo.get_by_key(DEFAULT_USER_ID, "slow-key")
                assert record is not None
                response = JSONResponse({"done": True}, status_code=201)
                other_repo.update_response(
                    record, 201, snapshot_headers(response), bytes(response.body)
                )
                db.commit()
            finally:
                db.close()

        with patch(
            "newsletter.core.idempotency.time.sleep", side_effect=_finish_other_request
        ) as mock_sleep:
            action = try_processing(
                db_session,
                DEFAULT_USER_ID,
                key,
                "POST",
                "/admin/newsletters",
                wait_timeout_seconds=5,
                poll_interval_seconds=0.01,
            )

        mock_sleep.assert_called_once_with(0.01)
        assert isinstance(action, ReturnSavedResponse)
        assert action.response.status_code == 201
        assert action.response.body == b'{"done":true}'

    def test_poll_interval_backs_off(self, db_session: Session) -> None:
        _commit_in_flight_record("backoff-key")
        key = IdempotencyKey.parse("backoff-key")
        now = [0.0]

        def _fake_sleep(seconds: float) -> None:
            now[0] += seconds

        with (
            patch("newsletter.core.idempotency.time.monotonic", side_effect=lambda: now[0]),
            patch(
                "newsletter.core.idempotency.time.sleep", side_effect=_fake_sleep
            ) as mock_sleep,
            pytest.raises(IdempotencyConflictError) as exc_info,
        ):
            try_processing(
                db_session,
                DEFAULT_USER_ID,
                key,
                "POST",
                "/admin/newsletters",
                wait_timeout_seconds=2,
                poll_interval_seconds=0.4,
            )

        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.4, 0.8, 1.0]
        assert exc_info.value.retry_after_seconds == 2


class TestSaveResponse:
    def test_requires_in_flight_record(self, db_session: Session) -> None:
        key = IdempotencyKey.parse("missing-key")
        with pytest.raises(RuntimeError, match="No in-flight idempotency record"):
            save_response(db_session, DEFAULT_USER_ID, key, Response(status_code=200))

    def test_returns_rebuilt_response(self, db_session: Session) -> None:
        key = IdempotencyKey.parse("saved-key")
        try_processing(db_session, DEFAULT_USER_ID, key, "POST", "/admin/newsletters")

        result = save_response(
            db_session, DEFAULT_USER_ID, key, JSONResponse({"ok": 1}, status_code=202)
        )

        assert result.status_code == 202
        assert result.body == b'{"ok":1}'
        record = IdempotencyRepository(db_session).get_by_key(DEFAULT_USER_ID, "saved-key")
        assert record is not None
        assert record.response_status_code == 202


class TestExecuteIdempotent:
    def _publish(self, session: Session) -> Response:
        session.add(NewsletterIssue(title="T", text_content="t", html_content="<p>t</p>"))
        session.flush()
        return RedirectResponse("/admin/newsletters", status_code=303)

    def _run(self, db: Session, key: str, operation) -> Response:
        return execute_idempotent(
            db,
            DEFAULT_USER_ID,
            IdempotencyKey.parse(key),
            "POST",
            "/admin/newsletters",
            operation,
        )

    def test_operation_runs_once(self, db_session: Session) -> None:
        first = self._run(db_session, "exec-key", self._publish)
        second = self._run(db_session, "exec-key", self._publish)

        assert first.status_code == second.status_code == 303
        assert first.raw_headers == second.raw_headers
        assert db_session.query(NewsletterIssue).count() == 1

    def test_failed_operation_releases_key(self, db_session: Session) -> None:
        def _explode(session: Session) -> Response:
            self._publish(session)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            self._run(db_session, "retry-key", _explode)
        assert db_session.query(IdempotencyRecord).count() == 0
        assert db_session.query(NewsletterIssue).count() == 0

        response = self._run(db_session, "retry-key", self._publish)
        assert response.status_code == 303
        assert db_session.query(NewsletterIssue).count() == 1


def _shared_database_engines():
    """File-backed SQLite always; PostgreSQL when TEST_POSTGRES_DSN is set."""
    yield pytest.param("sqlite", id="sqlite-file")
    yield pytest.param(
        "postgresql",
        id="postgresql",
        marks=pytest.mark.skipif(
            not os.environ.get("TEST_POSTGRES_DSN"),
            reason="TEST_POSTGRES_DSN not set",
        ),
    )


@pytest.fixture(params=list(_shared_database_engines()))
def shared_session_factory(request, tmp_path):
    """Sessions on separate connections, so concurrent transactions really contend."""
    if request.param == "sqlite":
        engine = create_engine(
            f"sqlite:///{tmp_path / 'shared.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    else:
        engine = create_engine(os.environ["TEST_POSTGRES_DSN"])
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


class TestConcurrentSameKeyPublish:
    def test_second_request_replays_first_response(self, shared_session_factory) -> None:
        setup = shared_session_factory()
        try:
            for email in ("a@example.com", "b@example.com"):
                setup.add(
                    Subscriber(email=email, name="Reader", status=SubscriberStatus.CONFIRMED.value)
                )
            setup.commit()
        finally:
            setup.close()

        in_operation = threading.Event()
        release = threading.Event()
        responses: dict[str, Response] = {}
        errors: list[Exception] = []

        def _slow_publish(session: Session) -> Response:
            NewsletterService(session).publish_issue(
                NewsletterIssueCreate(title="T", html_content="<p>t</p>", text_content="t")
            )
            in_operation.set()
            release.wait(10)
            return RedirectResponse("/admin/newsletters", status_code=303)

        def _request(name: str) -> None:
            db = shared_session_factory()
            try:
                responses[name] = execute_idempotent(
                    db,
                    DEFAULT_USER_ID,
                    IdempotencyKey.parse("race-key"),
                    "POST",
                    "/admin/newsletters",
                    _slow_publish,
                )
            except Exception as exc:
                errors.append(exc)
            finally:
                db.close()

        first = threading.Thread(target=_request, args=("first",))
        second = threading.Thread(target=_request, args=("second",))
        first.start()
        assert in_operation.wait(10)
        second.start()
        # Give the second request time to reach the unique insert.
        time.sleep(0.3)
        release.set()
        first.join(15)
        second.join(15)

        assert errors == []
        assert responses["first"].status_code == responses["second"].status_code == 303
        assert responses["first"].raw_headers == responses["second"].raw_headers
        assert responses["first"].body == responses["second"].body

        check = shared_session_factory()
        try:
            assert check.query(NewsletterIssue).count() == 1
            assert check.query(IssueDeliveryTask).count() == 2
            assert check.query(IdempotencyRecord).count() == 1
        finally:
            check.close()
