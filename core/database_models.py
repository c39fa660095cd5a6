from datetime import datetime, timezone
import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Text, LargeBinary, ForeignKey,
    PrimaryKeyConstraint, Uuid
)

from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionStatus:
    PENDING = 'pending_confirmation'
    CONFIRMED = 'confirmed'


class Subscription(Base):
    __tablename__ = 'subscriptions'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(256), nullable=False)
    subscribed_at = Column(DateTime, nullable=False, default=utcnow)
    status = Column(String(32), nullable=False, default=SubscriptionStatus.PENDING, index=True)

    # Relationships
    tokens = relationship("SubscriptionToken", back_populates="subscriber", cascade="all, delete-orphan")


class SubscriptionToken(Base):
    __tablename__ = 'subscription_tokens'

    subscription_token = Column(String(25), primary_key=True)
    subscriber_id = Column(Uuid, ForeignKey('subscriptions.id'), nullable=False)

    # Relationships
    subscriber = relationship("Subscription", back_populates="tokens")


class User(Base):
    __tablename__ = 'users'

    user_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(100), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)


class NewsletterIssue(Base):
    __tablename__ = 'newsletter_issues'

    newsletter_issue_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(Text, nullable=False)
    text_content = Column(Text, nullable=False)
    html_content = Column(Text, nullable=False)
    published_at = Column(DateTime, nullable=False, default=utcnow)


class IssueDeliveryTask(Base):
    """One row per (issue, recipient) still waiting for a terminal outcome"""
    __tablename__ = 'issue_delivery_queue'
    __table_args__ = (
        PrimaryKeyConstraint('newsletter_issue_id', 'subscriber_email'),
    )

    newsletter_issue_id = Column(Uuid, ForeignKey('newsletter_issues.newsletter_issue_id'), nullable=False)
    subscriber_email = Column(String(255), nullable=False)


class IdempotencyRecord(Base):
    __tablename__ = 'idempotency'
    __table_args__ = (
        PrimaryKeyConstraint('user_id', 'idempotency_key'),
    )

    user_id = Column(Uuid, ForeignKey('users.user_id'), nullable=False)
    idempotency_key = Column(String(50), nullable=False)
    response_status_code = Column(Integer, nullable=False)
    response_headers = Column(JSON, nullable=False)  # list of [name, value] pairs
    response_body = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
