"""Pytest fixtures for the newsletter delivery service tests."""

import base64
import uuid
from dataclasses import dataclass

import pytest

from app import create_app
from core.authentication import create_user
from core.database_models import NewsletterIssue, Subscription, SubscriptionStatus, utcnow
from core.email_client import EmailDeliveryError


@dataclass
class SentEmail:
    recipient: str
    subject: str
    html_content: str
    text_content: str


class FakeEmailClient:
    """Records every send attempt instead of talking to an SMTP relay.

    Recipients listed in ``failing_recipients`` (or every recipient when
    ``fail_all`` is set) raise ``EmailDeliveryError``; ``error`` replaces that
    with an arbitrary exception.
    """

    def __init__(self):
        self.attempts = []
        self.sent = []
        self.failing_recipients = set()
        self.fail_all = False
        self.error = None

    def send_email(self, recipient, subject, html_content, text_content):
        email = SentEmail(recipient.value, subject, html_content, text_content)
        self.attempts.append(email)
        if self.error is not None:
            raise self.error
        if self.fail_all or recipient.value in self.failing_recipients:
            raise EmailDeliveryError(recipient.value, "550 mailbox unavailable")
        self.sent.append(email)


@dataclass
class TestUser:
    __test__ = False

    user_id: uuid.UUID
    username: str
    password: str


@pytest.fixture
def email_client():
    """Recording transport shared by the app, its worker and the tests."""
    return FakeEmailClient()


@pytest.fixture
def app(tmp_path, email_client):
    """Application on a fresh file-backed SQLite database."""
    app = create_app(
        'testing',
        config_overrides={'DATABASE_URL': f"sqlite:///{tmp_path / 'newsletter.db'}"},
        email_client=email_client,
    )
    yield app
    app.delivery_stop_event.set()
    app.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session_factory(app):
    return app.session_factory


@pytest.fixture
def user(app):
    """Operator account with a known password."""
    password = 'everythinghastostartsomewhere'
    with app.session_factory() as session:
        user_id = create_user(session, 'operator', password)
        session.commit()
    return TestUser(user_id=user_id, username='operator', password=password)


@pytest.fixture
def other_user(app):
    password = 'anotherlongenoughpassword'
    with app.session_factory() as session:
        user_id = create_user(session, 'second-operator', password)
        session.commit()
    return TestUser(user_id=user_id, username='second-operator', password=password)


@pytest.fixture
def logged_in_client(client, user):
    """Test client with an authenticated admin session."""
    response = client.post('/login', data={'username': user.username, 'password': user.password})
    assert response.status_code == 303
    return client


def basic_auth(user):
    token = base64.b64encode(f"{user.username}:{user.password}".encode('utf-8')).decode('ascii')
    return {'Authorization': f'Basic {token}'}


def add_subscriber(session_factory, email, name='Subscriber', status=SubscriptionStatus.CONFIRMED):
    """Insert a subscription row directly, bypassing validation."""
    with session_factory() as session:
        subscriber = Subscription(
            id=uuid.uuid4(),
            email=email,
            name=name,
            subscribed_at=utcnow(),
            status=status,
        )
        session.add(subscriber)
        session.commit()
        return subscriber.id


def add_issue(session_factory, title='Issue title'):
    with session_factory() as session:
        issue = NewsletterIssue(
            newsletter_issue_id=uuid.uuid4(),
            title=title,
            text_content='Newsletter body as plain text',
            html_content='<p>Newsletter body as HTML</p>',
            published_at=utcnow(),
        )
        session.add(issue)
        session.commit()
        return issue.newsletter_issue_id


@pytest.fixture
def confirmed_subscribers(session_factory):
    """Three confirmed subscribers."""
    emails = ['ursula_le_guin@gmail.com', 'octavia.butler@gmail.com', 'nk.jemisin@gmail.com']
    for email in emails:
        add_subscriber(session_factory, email)
    return emails
