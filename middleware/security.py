# middleware/security.py
"""
Security Middleware for Request Processing
"""

import logging
import uuid
from datetime import datetime
from functools import wraps

from flask import current_app, flash, g, jsonify, redirect, request, session, url_for

from core.authentication import (
    AuthBackendError, InvalidCredentialsError, basic_auth_credentials, validate_credentials
)
from core.database_models import utcnow

logger = logging.getLogger(__name__)


def security_headers(response):
    """Add security headers to all responses"""
    for name, value in current_app.config.get('SECURITY_HEADERS', {}).items():
        response.headers.setdefault(name, value)
    return response


def require_login(f):
    """Session-authenticated admin pages: redirect to the login form when logged out"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_user_id = session.get('user_id')
        try:
            g.user_id = uuid.UUID(raw_user_id) if raw_user_id else None
        except ValueError:
            g.user_id = None
        if g.user_id is None:
            logger.warning(f"Unauthenticated access to {request.endpoint} from {request.remote_addr}")
            flash('Please log in to access this page.', 'error')
            return redirect(url_for('auth_routes.login_form'), code=303)

        now = utcnow()
        last_activity = session.get('last_activity')
        idle_timeout = current_app.config.get('SESSION_IDLE_TIMEOUT')
        if last_activity and idle_timeout and now - datetime.fromisoformat(last_activity) > idle_timeout:
            logger.info(f"Session expired for user {g.user_id}")
            session.clear()
            flash('Your session has expired. Please log in again.', 'error')
            return redirect(url_for('auth_routes.login_form'), code=303)

        session['last_activity'] = now.isoformat()
        return f(*args, **kwargs)
    return decorated_function


def require_basic_auth(realm=None):
    """API endpoints: authenticate every request with HTTP Basic credentials"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                credentials = basic_auth_credentials(request.headers.get('Authorization'))
                with current_app.session_factory() as db_session:
                    g.user_id = validate_credentials(db_session, credentials)
            except InvalidCredentialsError as e:
                logger.warning(f"Rejected API credentials from {request.remote_addr}: {e.reason}")
                response = jsonify({'error': 'Authentication failed'})
                response.status_code = 401
                auth_realm = realm or current_app.config.get('BASIC_AUTH_REALM', 'publish')
                response.headers['WWW-Authenticate'] = f'Basic realm="{auth_realm}"'
                return response
            except AuthBackendError:
                return jsonify({'error': 'Internal server error'}), 500
            return f(*args, **kwargs)
        return decorated_function
    return decorator
