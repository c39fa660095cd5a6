from flask import Blueprint, current_app, flash, redirect, render_template, request, session, url_for
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import logging

from core.authentication import (
    AuthBackendError, Credentials, InvalidCredentialsError, validate_credentials
)

auth_routes_bp = Blueprint('auth_routes', __name__)
logger = logging.getLogger(__name__)

# Bound to the app in create_app(); limits and storage come from RATELIMIT_* config
limiter = Limiter(key_func=get_remote_address)


def _login_rate_limit():
    return current_app.config.get('LOGIN_RATE_LIMIT', '5 per minute')


@auth_routes_bp.route('/login', methods=['GET'])
def login_form():
    return render_template('login.html')


@auth_routes_bp.route('/login', methods=['POST'])
@limiter.limit(_login_rate_limit)
def login():
    credentials = Credentials(
        username=request.form.get('username', '').strip(),
        password=request.form.get('password', ''),
    )

    try:
        with current_app.session_factory() as db_session:
            user_id = validate_credentials(db_session, credentials)
    except InvalidCredentialsError as e:
        logger.warning(f"Failed login for '{credentials.username}' from {request.remote_addr}: {e.reason}")
        flash('Authentication failed', 'error')
        return redirect(url_for('auth_routes.login_form'), code=303)
    except AuthBackendError:
        flash('Something went wrong. Please try again later.', 'error')
        return redirect(url_for('auth_routes.login_form'), code=303)

    # Fresh session on privilege change
    session.clear()
    session.permanent = True
    session['user_id'] = str(user_id)
    session['username'] = credentials.username
    logger.info(f"User {user_id} logged in from {request.remote_addr}")
    return redirect(url_for('admin.dashboard'), code=303)
