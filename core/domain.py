# core/domain.py
"""
Validated value types for subscriber data

Anything read back from storage is re-parsed through these types before it
is used: the delivery pipeline never trusts a previously stored address.
"""

from dataclasses import dataclass

from email_validator import validate_email, EmailNotValidError

FORBIDDEN_NAME_CHARACTERS = frozenset('/()"<>\\{}')
MAX_NAME_LENGTH = 256


class InvalidSubscriberEmail(ValueError):
    """Raised when a string is not a syntactically valid email address"""

    def __init__(self, email: str, reason: str):
        self.email = email
        self.reason = reason
        super().__init__(f"{email!r} is not a valid subscriber email: {reason}")


class InvalidSubscriberName(ValueError):
    """Raised when a subscriber name is blank, too long or has forbidden characters"""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"{name!r} is not a valid subscriber name: {reason}")


@dataclass(frozen=True)
class SubscriberEmail:
    value: str

    @classmethod
    def parse(cls, raw: str) -> 'SubscriberEmail':
        if raw is None:
            raise InvalidSubscriberEmail('', 'no address given')
        try:
            # Syntax only; MX lookups belong to the transport, not to us
            validate_email(raw, check_deliverability=False)
        except EmailNotValidError as e:
            raise InvalidSubscriberEmail(raw, str(e)) from e
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class SubscriberName:
    value: str

    @classmethod
    def parse(cls, raw: str) -> 'SubscriberName':
        if raw is None or not raw.strip():
            raise InvalidSubscriberName(raw or '', 'name is empty')
        if len(raw) > MAX_NAME_LENGTH:
            raise InvalidSubscriberName(raw, f'name is longer than {MAX_NAME_LENGTH} characters')
        if any(c in FORBIDDEN_NAME_CHARACTERS for c in raw):
            raise InvalidSubscriberName(raw, 'name contains forbidden characters')
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NewSubscriber:
    email: SubscriberEmail
    name: SubscriberName

    @classmethod
    def parse(cls, email: str, name: str) -> 'NewSubscriber':
        return cls(email=SubscriberEmail.parse(email), name=SubscriberName.parse(name))
