"""Tests for application settings."""

import pytest
from pydantic import ValidationError

from newsletter.core.config import IDEMPOTENCY_KEY_COLUMN_LENGTH, Settings
from newsletter.models.idempotency_record import IdempotencyRecord


class TestSettings:
    def test_idempotency_key_length_defaults_to_column_width(self):
        assert Settings().IDEMPOTENCY_KEY_MAX_LENGTH == IDEMPOTENCY_KEY_COLUMN_LENGTH

    def test_idempotency_key_length_cannot_exceed_column(self):
        with pytest.raises(ValidationError):
            Settings(IDEMPOTENCY_KEY_MAX_LENGTH=IDEMPOTENCY_KEY_COLUMN_LENGTH + 1)

    def test_idempotency_key_length_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(IDEMPOTENCY_KEY_MAX_LENGTH=0)

    def test_shorter_idempotency_key_length_is_accepted(self):
        assert Settings(IDEMPOTENCY_KEY_MAX_LENGTH=20).IDEMPOTENCY_KEY_MAX_LENGTH == 20

    def test_column_matches_configured_width(self):
        column = IdempotencyRecord.__table__.c.idempotency_key
        assert column.type.length == IDEMPOTENCY_KEY_COLUMN_LENGTH  # type: ignore[attr-defined]
