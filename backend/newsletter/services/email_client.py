"""HTTP client for the transactional email API (Postmark-compatible)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from types import TracebackType

import httpx

from newsletter.core.config import settings
from newsletter.schemas.subscriber import SubscriberEmail

logger = logging.getLogger(__name__)

# 4xx statuses worth retrying; every other 4xx means the request itself is wrong.
RETRYABLE_CLIENT_STATUSES = {408, 429}


class DeliveryStatus(str, Enum):
    SENT = "sent"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single send attempt."""

    status: DeliveryStatus
    error: str | None = None
    http_status: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is DeliveryStatus.SENT

    @classmethod
    def sent(cls, http_status: int | None = None) -> DeliveryResult:
        return cls(DeliveryStatus.SENT, http_status=http_status)

    @classmethod
    def retryable(cls, error: str, http_status: int | None = None) -> DeliveryResult:
        return cls(DeliveryStatus.RETRYABLE_FAILURE, error=error, http_status=http_status)

    @classmethod
    def permanent(cls, error: str, http_status: int | None = None) -> DeliveryResult:
        return cls(DeliveryStatus.PERMANENT_FAILURE, error=error, http_status=http_status)


class EmailClient:
    """Sends emails through ``POST {base_url}/email``.

    Failures are reported through ``DeliveryResult`` rather than raised, so
    the caller can decide whether a task is worth retrying.
    """

    def __init__(
        self,
        base_url: str,
        sender: SubscriberEmail,
        authorization_token: str,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.sender = sender
        self._authorization_token = authorization_token
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, transport: httpx.BaseTransport | None = None) -> EmailClient:
        return cls(
            base_url=settings.EMAIL_BASE_URL,
            sender=SubscriberEmail.parse(settings.EMAIL_SENDER),
            authorization_token=settings.EMAIL_AUTHORIZATION_TOKEN,
            timeout_seconds=settings.EMAIL_TIMEOUT_MILLISECONDS / 1000,
            transport=transport,
        )

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> DeliveryResult:
        """Send one email.

        Args:
            recipient: Validated recipient address.
            subject: Email subject line.
            html_body: HTML content of the email.
            text_body: Plain-text content of the email.

        Returns:
            ``SENT`` on a 2xx response, ``RETRYABLE_FAILURE`` on network
            errors, timeouts, 408, 429 and 5xx, ``PERMANENT_FAILURE`` on
            any other 4xx.
        """
        payload = {
            "From": str(self.sender),
            "To": str(recipient),
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
        }
        try:
            resp = self._http.post(
                "/email",
                json=payload,
                headers={"X-Postmark-Server-Token": self._authorization_token},
            )
        except httpx.HTTPError as exc:
            logger.warning("Email API request to %s failed: %s", recipient, exc)
            return DeliveryResult.retryable(f"{type(exc).__name__}: {exc}")

        if 200 <= resp.status_code < 300:
            return DeliveryResult.sent(resp.status_code)

        error = f"Email API returned {resp.status_code}"
        if resp.text:
            error = f"{error}: {resp.text[:1000]}"
        if resp.status_code >= 500 or resp.status_code in RETRYABLE_CLIENT_STATUSES:
            return DeliveryResult.retryable(error, resp.status_code)
        return DeliveryResult.permanent(error, resp.status_code)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> EmailClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
