# core/subscriber_directory.py
"""
Subscriber directory: subscription write paths and the confirmed snapshot
"""

import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.database_models import Subscription, SubscriptionStatus, SubscriptionToken, utcnow
from core.domain import NewSubscriber

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_letters + string.digits
TOKEN_LENGTH = 25


class SubscribeError(Exception):
    """Base exception for subscription handling"""
    pass


class SubscriptionValidationError(SubscribeError):
    """Submitted name or email failed validation"""

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(reason)


class SubscriptionStorageError(SubscribeError):
    """Persisting the subscription or sending its confirmation failed"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class UnknownTokenError(SubscribeError):
    """No subscriber is associated with the confirmation token"""

    def __init__(self, token: str):
        self.token = token
        super().__init__("Unknown subscription token")


@dataclass
class SubscriptionTicket:
    subscriber_id: uuid.UUID
    token: Optional[str]  # None when the address is already confirmed

    @property
    def needs_confirmation(self) -> bool:
        return self.token is not None


def generate_subscription_token() -> str:
    """Random 25-character case-sensitive alphanumeric token"""
    return ''.join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


class SubscriberDirectory:

    def confirmed_emails(self, session: Session) -> List[str]:
        """Raw stored addresses of confirmed subscribers, as a point-in-time read"""
        rows = session.execute(
            select(Subscription.email).where(Subscription.status == SubscriptionStatus.CONFIRMED)
        ).scalars().all()
        return list(rows)

    def subscribe(self, session: Session, new_subscriber: NewSubscriber) -> SubscriptionTicket:
        """
        Record a pending subscription and stage a confirmation token

        A pending address gets a fresh token; a confirmed one gets none.
        Does not commit.
        """
        subscriber = session.execute(
            select(Subscription).where(Subscription.email == new_subscriber.email.value)
        ).scalar_one_or_none()

        if subscriber is not None and subscriber.status == SubscriptionStatus.CONFIRMED:
            logger.info(f"Subscriber {subscriber.id} is already confirmed")
            return SubscriptionTicket(subscriber_id=subscriber.id, token=None)

        if subscriber is None:
            subscriber = Subscription(
                id=uuid.uuid4(),
                email=new_subscriber.email.value,
                name=new_subscriber.name.value,
                subscribed_at=utcnow(),
                status=SubscriptionStatus.PENDING,
            )
            session.add(subscriber)
            logger.info(f"Saving new subscriber {subscriber.id}")

        token = generate_subscription_token()
        session.add(SubscriptionToken(subscription_token=token, subscriber_id=subscriber.id))
        session.flush()
        return SubscriptionTicket(subscriber_id=subscriber.id, token=token)

    def confirm(self, session: Session, token: str) -> uuid.UUID:
        """Mark the token's subscriber as confirmed. Does not commit."""
        subscriber_id = session.execute(
            select(SubscriptionToken.subscriber_id).where(SubscriptionToken.subscription_token == token)
        ).scalar_one_or_none()
        if subscriber_id is None:
            raise UnknownTokenError(token)

        subscriber = session.get(Subscription, subscriber_id)
        subscriber.status = SubscriptionStatus.CONFIRMED
        session.flush()
        logger.info(f"Subscriber {subscriber_id} confirmed")
        return subscriber_id


subscriber_directory = SubscriberDirectory()
