"""Tests for idempotent publishing."""

import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from core.database_models import (
    IdempotencyRecord, IssueDeliveryTask, NewsletterIssue, SubscriptionStatus, utcnow
)
from core.idempotency import CachedResponse
from services.publish_coordinator import (
    PublishCoordinator,
    PublishRequest,
    PublishStorageError,
    PublishValidationError,
)
from tasks.delivery_worker import DeliveryWorker, ExecutionOutcome

from conftest import add_subscriber


def render(issue, enqueued):
    body = json.dumps({
        'newsletter_issue_id': str(issue.newsletter_issue_id),
        'queued_deliveries': enqueued.queued,
    }).encode('utf-8')
    return CachedResponse(status_code=202, headers=(('Content-Type', 'application/json'),), body=body)


def publish_request(key='abc123', title='Issue #1'):
    return PublishRequest.parse(
        title=title,
        html_content='<p>Hello subscribers</p>',
        text_content='Hello subscribers',
        idempotency_key=key,
    )


def count(session_factory, model):
    with session_factory() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


@pytest.fixture
def coordinator(session_factory):
    return PublishCoordinator(session_factory)


def drain(session_factory, email_client):
    worker = DeliveryWorker(session_factory, email_client)
    while worker.try_execute_task() is not ExecutionOutcome.EMPTY_QUEUE:
        pass


class TestPublishRequest:
    """Tests for PublishRequest.parse."""

    def test_valid_request(self):
        request = publish_request()

        assert request.title == 'Issue #1'
        assert request.idempotency_key.value == 'abc123'

    @pytest.mark.parametrize('field_name', ['title', 'html_content', 'text_content'])
    def test_missing_fields_are_rejected(self, field_name):
        data = {
            'title': 'Issue #1',
            'html_content': '<p>Hi</p>',
            'text_content': 'Hi',
            'idempotency_key': 'abc123',
        }
        del data[field_name]

        with pytest.raises(PublishValidationError) as exc_info:
            PublishRequest.from_mapping(data)

        assert exc_info.value.field_name == field_name

    def test_blank_title_is_rejected(self):
        with pytest.raises(PublishValidationError):
            PublishRequest.parse('   ', '<p>Hi</p>', 'Hi', 'abc123')

    def test_key_is_validated_first(self):
        """A bad key is reported even when the rest of the payload is empty."""
        with pytest.raises(PublishValidationError) as exc_info:
            PublishRequest.parse(None, None, None, 'not a valid key!')

        assert exc_info.value.field_name == 'idempotency_key'


class TestPublish:
    """Tests for PublishCoordinator.publish."""

    def test_publish_enqueues_one_task_per_confirmed_subscriber(self, coordinator, session_factory,
                                                                confirmed_subscribers, user):
        add_subscriber(session_factory, 'pending.reader@gmail.com', status=SubscriptionStatus.PENDING)

        outcome = coordinator.publish(user.user_id, publish_request(), render)

        assert outcome.replayed is False
        assert outcome.enqueued.queued == 3
        assert outcome.response.status_code == 202
        assert json.loads(outcome.response.body)['queued_deliveries'] == 3
        assert count(session_factory, NewsletterIssue) == 1
        assert count(session_factory, IdempotencyRecord) == 1
        with session_factory() as session:
            queued = session.execute(select(IssueDeliveryTask.subscriber_email)).scalars().all()
        assert sorted(queued) == sorted(confirmed_subscribers)

    def test_no_email_is_sent_at_publish_time(self, coordinator, confirmed_subscribers, user, email_client):
        coordinator.publish(user.user_id, publish_request(), render)

        assert email_client.attempts == []

    def test_same_key_is_replayed(self, coordinator, session_factory, confirmed_subscribers, user):
        first = coordinator.publish(user.user_id, publish_request(), render)
        second = coordinator.publish(user.user_id, publish_request(), render)

        assert second.replayed is True
        assert second.response == first.response
        assert count(session_factory, NewsletterIssue) == 1
        assert count(session_factory, IssueDeliveryTask) == 3

    def test_replay_ignores_a_different_body(self, coordinator, session_factory, confirmed_subscribers, user):
        """The key alone identifies the operation."""
        first = coordinator.publish(user.user_id, publish_request(title='Original'), render)
        second = coordinator.publish(user.user_id, publish_request(title='Edited'), render)

        assert second.response == first.response
        with session_factory() as session:
            titles = session.execute(select(NewsletterIssue.title)).scalars().all()
        assert titles == ['Original']

    def test_different_keys_publish_separately(self, coordinator, session_factory, confirmed_subscribers, user):
        coordinator.publish(user.user_id, publish_request(key='first'), render)
        coordinator.publish(user.user_id, publish_request(key='second'), render)

        assert count(session_factory, NewsletterIssue) == 2
        assert count(session_factory, IssueDeliveryTask) == 6

    def test_same_key_for_different_callers(self, coordinator, session_factory, confirmed_subscribers,
                                            user, other_user):
        coordinator.publish(user.user_id, publish_request(), render)
        outcome = coordinator.publish(other_user.user_id, publish_request(), render)

        assert outcome.replayed is False
        assert count(session_factory, NewsletterIssue) == 2

    def test_invalid_stored_address_is_skipped(self, coordinator, session_factory, user):
        add_subscriber(session_factory, 'good.reader@gmail.com')
        add_subscriber(session_factory, 'definitely not an email')

        outcome = coordinator.publish(user.user_id, publish_request(), render)

        assert outcome.enqueued.queued == 1
        assert outcome.enqueued.skipped == ['definitely not an email']
        assert count(session_factory, IssueDeliveryTask) == 1

    def test_publish_with_no_subscribers(self, coordinator, session_factory, user):
        outcome = coordinator.publish(user.user_id, publish_request(), render)

        assert outcome.enqueued.queued == 0
        assert count(session_factory, NewsletterIssue) == 1

    def test_issue_is_stamped_with_naive_utc(self, coordinator, session_factory, user):
        before = datetime.now(timezone.utc).replace(tzinfo=None)

        coordinator.publish(user.user_id, publish_request(), render)

        with session_factory() as session:
            published_at = session.execute(select(NewsletterIssue.published_at)).scalar_one()
        assert published_at.tzinfo is None
        assert before <= published_at <= utcnow()

    def test_subscriber_confirmed_after_publish_gets_nothing(self, coordinator, session_factory,
                                                             confirmed_subscribers, user, email_client):
        coordinator.publish(user.user_id, publish_request(), render)
        add_subscriber(session_factory, 'late.reader@gmail.com')

        drain(session_factory, email_client)

        recipients = {email.recipient for email in email_client.sent}
        assert recipients == set(confirmed_subscribers)


class TestPublishFailures:
    """Tests for rollback on failure."""

    def test_storage_failure_persists_nothing(self, coordinator, session_factory, confirmed_subscribers,
                                              user, monkeypatch):
        def failing_snapshot(session):
            raise OperationalError('SELECT email FROM subscriptions', {}, Exception('disk I/O error'))

        monkeypatch.setattr(coordinator.directory, 'confirmed_emails', failing_snapshot)

        with pytest.raises(PublishStorageError):
            coordinator.publish(user.user_id, publish_request(), render)

        assert count(session_factory, NewsletterIssue) == 0
        assert count(session_factory, IssueDeliveryTask) == 0
        assert count(session_factory, IdempotencyRecord) == 0

    def test_key_is_usable_after_a_failed_attempt(self, coordinator, session_factory, confirmed_subscribers,
                                                  user, monkeypatch):
        def failing_snapshot(session):
            raise OperationalError('SELECT', {}, Exception('connection reset'))

        with monkeypatch.context() as m:
            m.setattr(coordinator.directory, 'confirmed_emails', failing_snapshot)
            with pytest.raises(PublishStorageError):
                coordinator.publish(user.user_id, publish_request(), render)

        outcome = coordinator.publish(user.user_id, publish_request(), render)

        assert outcome.replayed is False
        assert outcome.enqueued.queued == 3

    def test_render_failure_rolls_back(self, coordinator, session_factory, confirmed_subscribers, user):
        def broken_render(issue, enqueued):
            raise ValueError('template missing')

        with pytest.raises(ValueError):
            coordinator.publish(user.user_id, publish_request(), broken_render)

        assert count(session_factory, NewsletterIssue) == 0
        assert count(session_factory, IssueDeliveryTask) == 0


class TestConcurrentPublish:
    """The loser of a same-key race replays the winner's response."""

    def test_losing_the_race_replays_the_winner(self, coordinator, session_factory, confirmed_subscribers,
                                                user, monkeypatch):
        winner = coordinator.publish(user.user_id, publish_request(), render)

        # The loser's initial lookup ran before the winner committed
        real_lookup = coordinator._lookup
        lookups = []

        def racing_lookup(caller_id, key):
            lookups.append(key)
            if len(lookups) == 1:
                return None
            return real_lookup(caller_id, key)

        monkeypatch.setattr(coordinator, '_lookup', racing_lookup)

        loser = coordinator.publish(user.user_id, publish_request(), render)

        assert loser.replayed is True
        assert loser.response == winner.response
        assert len(lookups) == 2
        assert count(session_factory, NewsletterIssue) == 1
        assert count(session_factory, IssueDeliveryTask) == 3


class TestPublishAndDeliverScenario:
    """Key abc123, three confirmed subscribers, drained, then resubmitted."""

    def test_end_to_end(self, coordinator, session_factory, confirmed_subscribers, user, email_client):
        first = coordinator.publish(user.user_id, publish_request(key='abc123'), render)
        assert count(session_factory, IssueDeliveryTask) == 3

        drain(session_factory, email_client)

        assert count(session_factory, IssueDeliveryTask) == 0
        assert len(email_client.attempts) == 3

        second = coordinator.publish(user.user_id, publish_request(key='abc123'), render)
        drain(session_factory, email_client)

        assert second.replayed is True
        assert second.response == first.response
        assert count(session_factory, IssueDeliveryTask) == 0
        assert count(session_factory, NewsletterIssue) == 1
        assert len(email_client.attempts) == 3
