# core/delivery_queue.py
"""
Durable, row-based delivery queue

One row per (issue, recipient) in ``issue_delivery_queue``. A row exists until
a worker reaches a terminal outcome for it; there is no in-flight state. A
worker claims a row by locking it inside an open transaction
(``SELECT ... FOR UPDATE SKIP LOCKED``) and deletes it in that same
transaction, so a crash between claim and delete leaves the row queued for
the next worker.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from core.database_models import IssueDeliveryTask
from core.domain import SubscriberEmail, InvalidSubscriberEmail

logger = logging.getLogger(__name__)


@dataclass
class EnqueueResult:
    queued: int
    skipped: List[str] = field(default_factory=list)


class LeasedTask:
    """
    A claimed queue row and the transaction holding its lock

    Exactly one of ``complete`` or ``release`` ends the lease. Used as a
    context manager, an unfinished lease is released on exit.
    """

    def __init__(self, session: Session, issue_id: uuid.UUID, subscriber_email: str):
        self.session = session
        self.issue_id = issue_id
        self.subscriber_email = subscriber_email
        self.finished = False

    def complete(self) -> None:
        """Delete the row and commit: the task leaves the queue for good"""
        try:
            self.session.execute(
                delete(IssueDeliveryTask).where(
                    IssueDeliveryTask.newsletter_issue_id == self.issue_id,
                    IssueDeliveryTask.subscriber_email == self.subscriber_email,
                )
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        finally:
            self.finished = True
            self.session.close()

    def release(self) -> None:
        """Drop the lock without touching the row: the task stays queued"""
        try:
            self.session.rollback()
        finally:
            self.finished = True
            self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.finished:
            self.release()
        return False

    def __repr__(self):
        return f"<LeasedTask issue={self.issue_id} recipient={self.subscriber_email}>"


class DeliveryQueue:

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def enqueue_issue(self, session: Session, issue_id: uuid.UUID,
                      raw_emails: Iterable[str]) -> EnqueueResult:
        """
        Stage one task per valid recipient in the caller's transaction

        Addresses that fail validation are logged and skipped; they never fail
        the batch. Duplicate addresses collapse into one task.
        """
        result = EnqueueResult(queued=0)
        seen = set()
        for raw in raw_emails:
            try:
                email = SubscriberEmail.parse(raw)
            except InvalidSubscriberEmail as e:
                logger.warning(f"Skipping a confirmed subscriber for issue {issue_id}. "
                               f"Their stored contact details are invalid: {e.reason}")
                result.skipped.append(raw)
                continue
            if email.value in seen:
                continue
            seen.add(email.value)
            session.add(IssueDeliveryTask(newsletter_issue_id=issue_id, subscriber_email=email.value))
            result.queued += 1
        session.flush()
        logger.info(f"Enqueued {result.queued} deliveries for issue {issue_id} "
                    f"({len(result.skipped)} invalid recipients skipped)")
        return result

    def claim_one(self) -> Optional[LeasedTask]:
        """
        Lock one queued task, skipping rows other workers hold

        Returns None when nothing is claimable. The returned lease owns an
        open transaction until completed or released.
        """
        session = self.session_factory()
        try:
            row = session.execute(
                select(IssueDeliveryTask.newsletter_issue_id, IssueDeliveryTask.subscriber_email)
                .limit(1)
                .with_for_update(skip_locked=True)
            ).first()
        except Exception:
            session.rollback()
            session.close()
            raise

        if row is None:
            session.rollback()
            session.close()
            return None
        return LeasedTask(session, row.newsletter_issue_id, row.subscriber_email)

    def pending_count(self, issue_id: Optional[uuid.UUID] = None) -> int:
        with self.session_factory() as session:
            query = select(func.count()).select_from(IssueDeliveryTask)
            if issue_id is not None:
                query = query.where(IssueDeliveryTask.newsletter_issue_id == issue_id)
            return session.execute(query).scalar_one()
