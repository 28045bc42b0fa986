"""Subscriber email parsing."""

from pydantic import EmailStr, TypeAdapter, ValidationError

_email_adapter: TypeAdapter[str] = TypeAdapter(EmailStr)


class SubscriberEmail(str):
    """A syntactically valid email address."""

    @classmethod
    def parse(cls, raw: str) -> "SubscriberEmail":
        try:
            _email_adapter.validate_python(raw)
        except ValidationError:
            raise ValueError(f"{raw!r} is not a valid subscriber email") from None
        return cls(raw)
