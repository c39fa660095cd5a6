# tasks/delivery_worker.py
"""
Issue delivery worker

Repeatedly claims one task from the delivery queue, sends the issue to that
recipient and removes the task once the outcome is terminal:

    delivered            -> task deleted
    invalid recipient    -> task deleted, logged, no email attempted
    transport failure    -> task deleted, logged (one attempt per claim)
    unexpected error     -> task left queued, worker backs off

Many workers can run against the same database; the claim skips rows another
worker holds. Run standalone with ``python -m tasks.delivery_worker``.
"""

import enum
import logging
import signal
import threading
from typing import Optional

from sqlalchemy.orm import sessionmaker

from core.database_models import NewsletterIssue
from core.delivery_queue import DeliveryQueue, LeasedTask
from core.domain import SubscriberEmail, InvalidSubscriberEmail
from core.email_client import DeliveryError, EmailClient, EmailDeliveryError

logger = logging.getLogger(__name__)


class ExecutionOutcome(enum.Enum):
    TASK_COMPLETED = "task_completed"
    TASK_DEFERRED = "task_deferred"
    EMPTY_QUEUE = "empty_queue"


class TaskOutcome(enum.Enum):
    DELIVERED = "delivered"
    INVALID_RECIPIENT = "invalid_recipient"
    DELIVERY_FAILED = "delivery_failed"
    RETRY_LATER = "retry_later"


class IssueNotFoundError(DeliveryError):
    """A queued task references an issue that cannot be loaded"""

    def __init__(self, issue_id):
        self.issue_id = issue_id
        super().__init__(f"Newsletter issue {issue_id} not found")


class Clock:
    """Sleeps that a cancellation signal can cut short"""

    def sleep(self, seconds: float, stop_event: threading.Event) -> None:
        stop_event.wait(seconds)


class DeliveryWorker:

    def __init__(self,
                 session_factory: sessionmaker,
                 email_client: EmailClient,
                 poll_interval: float = 1.0,
                 retry_transport_failures: bool = False,
                 clock: Optional[Clock] = None,
                 delivery_queue: Optional[DeliveryQueue] = None):
        self.session_factory = session_factory
        self.email_client = email_client
        self.poll_interval = poll_interval
        self.retry_transport_failures = retry_transport_failures
        self.clock = clock or Clock()
        self.delivery_queue = delivery_queue or DeliveryQueue(session_factory)

    @classmethod
    def from_config(cls, config, session_factory: sessionmaker,
                    email_client: EmailClient) -> 'DeliveryWorker':
        return cls(
            session_factory=session_factory,
            email_client=email_client,
            poll_interval=config.get('DELIVERY_POLL_INTERVAL', 1.0),
            retry_transport_failures=config.get('DELIVERY_RETRY_TRANSPORT_FAILURES', False),
        )

    def run_until_stopped(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Poll the queue until ``stop_event`` is set

        Sleeps ``poll_interval`` after an empty poll or a failed attempt and
        loops straight on after a resolved task. A failure never ends the loop.
        """
        stop_event = stop_event or threading.Event()
        logger.info(f"Delivery worker started (poll interval {self.poll_interval}s)")

        while not stop_event.is_set():
            try:
                outcome = self.try_execute_task()
            except Exception as e:
                # TODO: exponential backoff with jitter instead of the fixed interval
                logger.error(f"Delivery attempt failed, backing off: {e}", exc_info=True)
                self.clock.sleep(self.poll_interval, stop_event)
                continue

            if outcome is not ExecutionOutcome.TASK_COMPLETED:
                self.clock.sleep(self.poll_interval, stop_event)

        logger.info("Delivery worker stopped")

    def try_execute_task(self) -> ExecutionOutcome:
        lease = self.delivery_queue.claim_one()
        if lease is None:
            return ExecutionOutcome.EMPTY_QUEUE

        with lease:
            outcome = self.deliver(lease)
            if outcome is TaskOutcome.RETRY_LATER:
                lease.release()
                return ExecutionOutcome.TASK_DEFERRED
            lease.complete()
        return ExecutionOutcome.TASK_COMPLETED

    def deliver(self, lease: LeasedTask) -> TaskOutcome:
        log_context = f"issue={lease.issue_id} recipient={lease.subscriber_email}"

        try:
            recipient = SubscriberEmail.parse(lease.subscriber_email)
        except InvalidSubscriberEmail as e:
            logger.error(f"Skipping a confirmed subscriber. Their stored details are invalid "
                         f"({log_context}): {e.reason}")
            return TaskOutcome.INVALID_RECIPIENT

        issue = lease.session.get(NewsletterIssue, lease.issue_id)
        if issue is None:
            raise IssueNotFoundError(lease.issue_id)

        try:
            self.email_client.send_email(recipient, issue.title, issue.html_content, issue.text_content)
        except EmailDeliveryError as e:
            if self.retry_transport_failures:
                logger.warning(f"Failed to deliver issue, leaving it queued ({log_context}): {e.reason}")
                return TaskOutcome.RETRY_LATER
            logger.error(f"Failed to deliver issue to a confirmed subscriber. Skipping "
                         f"({log_context}): {e.reason}")
            return TaskOutcome.DELIVERY_FAILED

        logger.info(f"Delivered ({log_context})")
        return TaskOutcome.DELIVERED


def start_in_background(worker: DeliveryWorker, stop_event: threading.Event) -> threading.Thread:
    """Run the loop in a daemon thread next to the HTTP server"""
    thread = threading.Thread(
        target=worker.run_until_stopped,
        args=(stop_event,),
        name='issue-delivery-worker',
        daemon=True,
    )
    thread.start()
    return thread


def main(config_name: Optional[str] = None) -> None:
    from config import load_config
    from core.database import create_database_engine, create_session_factory
    from core.logging_setup import configure_logging

    config = load_config(config_name)
    configure_logging(config)

    session_factory = create_session_factory(create_database_engine(config))
    worker = DeliveryWorker.from_config(config, session_factory, EmailClient.from_config(config))

    stop_event = threading.Event()

    def shutdown_handler(signum, frame):
        logger.info("Received shutdown signal, stopping after the current task")
        stop_event.set()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)
    worker.run_until_stopped(stop_event)


if __name__ == '__main__':
    main()
