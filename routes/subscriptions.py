# routes/subscriptions.py
"""
Public subscription endpoints: sign up and confirm
"""

import logging
from urllib.parse import urlencode

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from core.domain import InvalidSubscriberEmail, InvalidSubscriberName, NewSubscriber
from core.email_client import EmailDeliveryError
from core.subscriber_directory import (
    SubscribeError, SubscriptionStorageError, SubscriptionValidationError, UnknownTokenError,
    subscriber_directory
)

subscriptions_bp = Blueprint('subscriptions', __name__)
logger = logging.getLogger(__name__)


@subscriptions_bp.errorhandler(SubscribeError)
def handle_subscribe_error(e):
    if isinstance(e, SubscriptionValidationError):
        return jsonify({'error': e.reason, 'field': e.field_name}), 400
    if isinstance(e, UnknownTokenError):
        return jsonify({'error': str(e)}), 401
    logger.error(f"Subscription request failed: {e} ({getattr(e, 'cause', None)!r})")
    return jsonify({'error': 'Internal server error'}), 500


def confirmation_link(token):
    base_url = current_app.config['APPLICATION_BASE_URL'].rstrip('/')
    return f"{base_url}/subscriptions/confirm?{urlencode({'subscription_token': token})}"


def send_confirmation_email(new_subscriber, token):
    link = confirmation_link(token)
    html_content = (
        f'Welcome to our newsletter!<br />'
        f'Click <a href="{link}">here</a> to confirm your subscription.'
    )
    text_content = f'Welcome to our newsletter!\nVisit {link} to confirm your subscription.'
    current_app.email_client.send_email(new_subscriber.email, 'Welcome!', html_content, text_content)


@subscriptions_bp.route('/subscriptions', methods=['POST'])
def subscribe():
    try:
        new_subscriber = NewSubscriber.parse(request.form.get('email'), request.form.get('name'))
    except InvalidSubscriberEmail as e:
        raise SubscriptionValidationError('email', e.reason) from e
    except InvalidSubscriberName as e:
        raise SubscriptionValidationError('name', e.reason) from e

    db_session = current_app.session_factory()
    try:
        ticket = subscriber_directory.subscribe(db_session, new_subscriber)
        db_session.commit()
    except SQLAlchemyError as e:
        db_session.rollback()
        raise SubscriptionStorageError('Failed to store the new subscriber', e) from e
    finally:
        db_session.close()

    if not ticket.needs_confirmation:
        return '', 200

    try:
        send_confirmation_email(new_subscriber, ticket.token)
    except EmailDeliveryError as e:
        raise SubscriptionStorageError('Failed to send a confirmation email', e) from e

    logger.info(f"Confirmation email sent to subscriber {ticket.subscriber_id}")
    return '', 200


@subscriptions_bp.route('/subscriptions/confirm', methods=['GET'])
def confirm():
    token = request.args.get('subscription_token')
    if not token:
        raise SubscriptionValidationError('subscription_token', 'The subscription token is missing')

    db_session = current_app.session_factory()
    try:
        subscriber_directory.confirm(db_session, token)
        db_session.commit()
    except SQLAlchemyError as e:
        db_session.rollback()
        raise SubscriptionStorageError('Failed to confirm the subscriber', e) from e
    finally:
        db_session.close()

    return '', 200
