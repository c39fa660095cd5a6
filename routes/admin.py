# routes/admin.py
"""
Operator pages: dashboard, publishing form and password change
"""

import logging
import uuid

from flask import (
    Blueprint, current_app, flash, g, jsonify, redirect, render_template, request, session, url_for
)

from core.authentication import (
    AuthBackendError, Credentials, InvalidCredentialsError, change_password, get_username,
    validate_credentials
)
from core.idempotency import CachedResponse
from middleware.security import require_login
from services.publish_coordinator import PublishRequest, PublishStorageError, PublishValidationError

admin_bp = Blueprint('admin', __name__)
logger = logging.getLogger(__name__)

PUBLISH_ACCEPTED_MESSAGE = 'The newsletter issue has been accepted - emails will go out shortly.'


def _username():
    with current_app.session_factory() as db_session:
        return get_username(db_session, g.user_id)


@admin_bp.route('/dashboard')
@require_login
def dashboard():
    return render_template('admin/dashboard.html', username=_username())


@admin_bp.route('/newsletters', methods=['GET'])
@require_login
def publish_newsletter_form():
    # A fresh key per rendered form: resubmitting this form is a retry, a new form is a new issue
    return render_template('admin/newsletters.html', idempotency_key=str(uuid.uuid4()))


@admin_bp.route('/newsletters', methods=['POST'])
@require_login
def publish_newsletter():
    try:
        publish_request = PublishRequest.from_mapping(request.form)
    except PublishValidationError as e:
        logger.warning(f"Rejected publish form from user {g.user_id}: {e.reason}")
        return jsonify({'error': e.reason, 'field': e.field_name}), 400

    def render(issue, enqueued):
        return CachedResponse.from_response(
            redirect(url_for('admin.publish_newsletter_form'), code=303)
        )

    try:
        outcome = current_app.publish_coordinator.publish(g.user_id, publish_request, render)
    except PublishStorageError:
        return jsonify({'error': 'Failed to publish the newsletter issue'}), 500

    flash(PUBLISH_ACCEPTED_MESSAGE, 'info')
    return outcome.response.to_response()


@admin_bp.route('/password', methods=['GET'])
@require_login
def change_password_form():
    return render_template('admin/password.html')


@admin_bp.route('/password', methods=['POST'])
@require_login
def change_password_submit():
    current_password = request.form.get('current_password', '')
    new_password = request.form.get('new_password', '')
    new_password_check = request.form.get('new_password_check', '')
    back = redirect(url_for('admin.change_password_form'), code=303)

    if new_password != new_password_check:
        flash('You entered two different new passwords - the field values must match.', 'error')
        return back

    min_length = current_app.config.get('PASSWORD_MIN_LENGTH', 12)
    max_length = current_app.config.get('PASSWORD_MAX_LENGTH', 128)
    if not min_length <= len(new_password) <= max_length:
        flash(f'The new password must be between {min_length} and {max_length} characters long.', 'error')
        return back

    try:
        with current_app.session_factory() as db_session:
            username = get_username(db_session, g.user_id)
            validate_credentials(db_session, Credentials(username=username, password=current_password))
            change_password(db_session, g.user_id, new_password)
            db_session.commit()
    except InvalidCredentialsError:
        flash('The current password is incorrect.', 'error')
        return back
    except AuthBackendError:
        return jsonify({'error': 'Failed to change the password'}), 500

    flash('Your password has been changed.', 'info')
    return back


@admin_bp.route('/logout', methods=['POST'])
@require_login
def logout():
    logger.info(f"User {g.user_id} logged out")
    session.clear()
    flash('You have successfully logged out.', 'info')
    return redirect(url_for('auth_routes.login_form'), code=303)
