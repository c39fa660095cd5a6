# api/newsletters.py
"""
Newsletter publishing API (HTTP Basic authentication)
"""

from flask import Blueprint, current_app, g, jsonify, make_response, request
import logging

from core.idempotency import CachedResponse
from middleware.security import require_basic_auth
from services.publish_coordinator import PublishRequest, PublishStorageError, PublishValidationError

newsletters_api_bp = Blueprint('newsletters_api', __name__)
logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = 'Idempotency-Key'


def parse_publish_payload(data, headers):
    """
    Accept ``{title, content: {html, text}}`` or flat ``{title, html_content, text_content}``

    The idempotency key comes from the ``Idempotency-Key`` header, falling
    back to an ``idempotency_key`` body field.
    """
    content = data.get('content')
    if isinstance(content, dict):
        html_content = content.get('html')
        text_content = content.get('text')
    else:
        html_content = data.get('html_content')
        text_content = data.get('text_content')

    return PublishRequest.parse(
        title=data.get('title'),
        html_content=html_content,
        text_content=text_content,
        idempotency_key=headers.get(IDEMPOTENCY_HEADER) or data.get('idempotency_key'),
    )


@newsletters_api_bp.route('/newsletters', methods=['POST'])
@require_basic_auth()
def publish_newsletter():
    """
    Publish a newsletter issue to every confirmed subscriber

    Returns 202 once the deliveries are queued. A retry with the same
    idempotency key returns the first response unchanged.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Request body must be a JSON object'}), 400

    try:
        publish_request = parse_publish_payload(data, request.headers)
    except PublishValidationError as e:
        return jsonify({'error': e.reason, 'field': e.field_name}), 400

    def render(issue, enqueued):
        response = make_response(jsonify({
            'newsletter_issue_id': str(issue.newsletter_issue_id),
            'queued_deliveries': enqueued.queued,
        }), 202)
        return CachedResponse.from_response(response)

    try:
        outcome = current_app.publish_coordinator.publish(g.user_id, publish_request, render)
    except PublishStorageError:
        return jsonify({'error': 'Failed to publish the newsletter issue'}), 500

    if outcome.replayed:
        logger.info(f"Replayed publish response for user {g.user_id}")
    return outcome.response.to_response()
