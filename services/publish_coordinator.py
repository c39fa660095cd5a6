# services/publish_coordinator.py
"""
Publish Coordinator

Turns "publish this issue" into one atomic unit of work:

    persist the issue -> snapshot confirmed subscribers -> enqueue one delivery
    task per valid address -> render the response -> cache it under
    (caller, idempotency key) -> commit

A retry carrying an already committed key gets the cached response back and
causes no new issue, no new tasks and no new email. When two requests with the
same key race, the first to commit wins; the loser's ``save`` conflicts, its
work is rolled back and it replays the winner's response.

Emails are never sent from here: enqueuing is the transactional unit, the
delivery worker does the sending.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from core.database_models import NewsletterIssue, utcnow
from core.delivery_queue import DeliveryQueue, EnqueueResult
from core.idempotency import (
    CachedResponse, FingerprintStore, IdempotencyConflictError, IdempotencyKey,
    InvalidIdempotencyKeyError, fingerprint_store
)
from core.subscriber_directory import SubscriberDirectory, subscriber_directory

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Base exception for publishing an issue"""
    pass


class PublishValidationError(PublishError):
    """Malformed publish payload or idempotency key; nothing was persisted"""

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(reason)


class PublishStorageError(PublishError):
    """The enqueue transaction failed and was rolled back; safe to retry"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


@dataclass(frozen=True)
class PublishRequest:
    title: str
    html_content: str
    text_content: str
    idempotency_key: IdempotencyKey

    @classmethod
    def parse(cls, title: Any, html_content: Any, text_content: Any,
              idempotency_key: Any) -> 'PublishRequest':
        """
        Validate a publish payload before any I/O happens

        Raises:
            PublishValidationError: a field is missing/empty or the key is malformed
        """
        try:
            key = IdempotencyKey.parse(idempotency_key)
        except InvalidIdempotencyKeyError as e:
            raise PublishValidationError('idempotency_key', e.reason) from e

        for field_name, value in (('title', title),
                                  ('html_content', html_content),
                                  ('text_content', text_content)):
            if not isinstance(value, str) or not value.strip():
                raise PublishValidationError(field_name, f"The '{field_name}' field is required")

        return cls(title=title, html_content=html_content, text_content=text_content,
                   idempotency_key=key)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'PublishRequest':
        return cls.parse(
            title=data.get('title'),
            html_content=data.get('html_content'),
            text_content=data.get('text_content'),
            idempotency_key=data.get('idempotency_key'),
        )


@dataclass
class PublishOutcome:
    response: CachedResponse
    replayed: bool
    issue_id: Optional[uuid.UUID] = None
    enqueued: Optional[EnqueueResult] = None


# Builds the response to cache, given the new issue and what got enqueued
ResponseRenderer = Callable[[NewsletterIssue, EnqueueResult], CachedResponse]


class PublishCoordinator:

    def __init__(self,
                 session_factory: sessionmaker,
                 delivery_queue: Optional[DeliveryQueue] = None,
                 fingerprints: FingerprintStore = fingerprint_store,
                 directory: SubscriberDirectory = subscriber_directory):
        self.session_factory = session_factory
        self.delivery_queue = delivery_queue or DeliveryQueue(session_factory)
        self.fingerprints = fingerprints
        self.directory = directory

    def publish(self, caller_id: uuid.UUID, request: PublishRequest,
                render: ResponseRenderer) -> PublishOutcome:
        """
        Publish an issue at most once per (caller, idempotency key)

        Raises:
            PublishStorageError: the store failed; nothing was persisted
        """
        key = request.idempotency_key

        cached = self._lookup(caller_id, key)
        if cached is not None:
            logger.info(f"Replaying saved response for caller {caller_id}, idempotency key {key}")
            return PublishOutcome(response=cached, replayed=True)

        session = self.session_factory()
        try:
            issue = self._insert_issue(session, request)
            emails = self.directory.confirmed_emails(session)
            enqueued = self.delivery_queue.enqueue_issue(session, issue.newsletter_issue_id, emails)
            response = render(issue, enqueued)
            self.fingerprints.save(session, caller_id, key, response)
            session.commit()
        except IdempotencyConflictError:
            # Lost the race: our work is already rolled back, serve the winner's reply
            return self._replay_winner(caller_id, key)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to publish issue for caller {caller_id}: {e}", exc_info=True)
            raise PublishStorageError('Failed to store the newsletter issue', e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(f"Issue {issue.newsletter_issue_id} published by {caller_id}: "
                    f"{enqueued.queued} deliveries queued")
        return PublishOutcome(response=response, replayed=False,
                              issue_id=issue.newsletter_issue_id, enqueued=enqueued)

    def _lookup(self, caller_id: uuid.UUID, key: IdempotencyKey) -> Optional[CachedResponse]:
        try:
            with self.session_factory() as session:
                return self.fingerprints.lookup(session, caller_id, key)
        except SQLAlchemyError as e:
            logger.error(f"Failed to look up idempotency key {key}: {e}", exc_info=True)
            raise PublishStorageError('Failed to look up the idempotency key', e) from e

    def _replay_winner(self, caller_id: uuid.UUID, key: IdempotencyKey) -> PublishOutcome:
        cached = self._lookup(caller_id, key)
        if cached is None:
            raise PublishStorageError(f'Idempotency key {key} conflicted but no saved response was found')
        logger.info(f"Concurrent publish with idempotency key {key} lost the race; replaying")
        return PublishOutcome(response=cached, replayed=True)

    @staticmethod
    def _insert_issue(session: Session, request: PublishRequest) -> NewsletterIssue:
        issue = NewsletterIssue(
            newsletter_issue_id=uuid.uuid4(),
            title=request.title,
            text_content=request.text_content,
            html_content=request.html_content,
            published_at=utcnow(),
        )
        session.add(issue)
        session.flush()
        return issue
