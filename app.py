# app.py
"""
Flask Application Factory for the Newsletter Delivery Service

Wires together:
- Class-based configuration with environment overrides
- SQLAlchemy engine and session factory shared with the delivery worker
- Publish coordinator (idempotent publish) and the durable delivery queue
- Session-authenticated admin pages and a Basic-auth JSON API
- CSRF protection, rate limiting and security headers
- Celery beat drain of the delivery queue and an optional in-process worker
- Health check endpoints
"""

import atexit
import os
import threading
from typing import Any, Dict, Optional

import redis
from flask import Flask, g, jsonify, request
from flask_wtf.csrf import CSRFProtect
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from api.newsletters import newsletters_api_bp
from config import get_config
from core.authentication import ensure_user
from core.database import create_database_engine, create_schema, create_session_factory, ping
from core.database_models import utcnow
from core.delivery_queue import DeliveryQueue
from core.email_client import EmailClient
from core.logging_setup import configure_logging
from middleware.security import security_headers
from routes.admin import admin_bp
from routes.auth import auth_routes_bp, limiter
from routes.subscriptions import subscriptions_bp
from services.publish_coordinator import PublishCoordinator
from tasks.delivery_worker import DeliveryWorker, start_in_background
from tasks.email_sender import configure_celery

csrf = CSRFProtect()


def configure_database(app: Flask) -> None:
    """
    Create the engine and session factory and, where enabled, the schema

    Production deployments create the schema with migrations; development and
    tests set ``AUTO_CREATE_SCHEMA``.
    """
    engine = create_database_engine(app.config)
    app.engine = engine
    app.session_factory = create_session_factory(engine)

    if app.config.get('AUTO_CREATE_SCHEMA'):
        create_schema(engine)
        app.logger.info("Database tables created")

    admin_password = app.config.get('ADMIN_PASSWORD')
    if admin_password:
        with app.session_factory() as db_session:
            ensure_user(db_session, app.config['ADMIN_USERNAME'], admin_password)
            db_session.commit()


def configure_delivery(app: Flask, email_client: Optional[EmailClient] = None) -> None:
    """Build the publish and delivery services every request and task shares"""
    app.email_client = email_client or EmailClient.from_config(app.config)
    app.delivery_queue = DeliveryQueue(app.session_factory)
    app.publish_coordinator = PublishCoordinator(app.session_factory, app.delivery_queue)
    app.delivery_worker = DeliveryWorker.from_config(app.config, app.session_factory, app.email_client)

    app.celery = configure_celery(app, app.delivery_worker)

    app.delivery_stop_event = threading.Event()
    if app.config.get('DELIVERY_WORKER_IN_PROCESS'):
        start_in_background(app.delivery_worker, app.delivery_stop_event)
        atexit.register(app.delivery_stop_event.set)
        app.logger.info("In-process delivery worker started")


def configure_security(app: Flask) -> None:
    """CSRF for the HTML forms, rate limiting everywhere"""
    csrf.init_app(app)
    limiter.init_app(app)
    app.logger.info("Security features configured")


def register_blueprints(app: Flask) -> None:
    app.register_blueprint(auth_routes_bp)
    app.register_blueprint(admin_bp, url_prefix='/admin')
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(newsletters_api_bp, url_prefix='/api')

    # Authenticated per request with Basic credentials, or public
    csrf.exempt(newsletters_api_bp)
    csrf.exempt(subscriptions_bp)

    app.logger.info("Application blueprints registered")


def configure_error_handlers(app: Flask) -> None:
    """
    JSON error bodies for everything the views do not handle themselves
    """
    @app.errorhandler(400)
    def bad_request(error):
        app.logger.warning(f"Bad request from {request.remote_addr}: {error}")
        return jsonify({
            'error': 'Bad Request',
            'message': 'Invalid request format or parameters',
            'status_code': 400
        }), 400

    @app.errorhandler(401)
    def unauthorized(error):
        app.logger.warning(f"Unauthorized access attempt from {request.remote_addr}")
        return jsonify({
            'error': 'Unauthorized',
            'message': 'Authentication required',
            'status_code': 401
        }), 401

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'Not Found',
            'message': 'The requested resource was not found',
            'status_code': 404
        }), 404

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded for {request.remote_addr}")
        return jsonify({
            'error': 'Rate Limit Exceeded',
            'message': 'Too many requests. Please try again later.',
            'status_code': 429
        }), 429

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Internal server error: {error}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred',
            'status_code': 500
        }), 500

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return e

        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred',
            'status_code': 500
        }), 500


def configure_health_checks(app: Flask) -> None:
    """
    Health check endpoints for monitoring and load balancing
    """
    @app.route('/health_check')
    def health_check():
        """Liveness: the process answers HTTP"""
        return '', 200

    @app.route('/health/detailed')
    def detailed_health_check():
        """Readiness: database and redis reachable"""
        health_status: Dict[str, Any] = {
            'status': 'healthy',
            'timestamp': utcnow().isoformat(),
            'version': app.config.get('VERSION', '1.0.0'),
            'components': {}
        }

        try:
            ping(app.session_factory)
            health_status['components']['database'] = 'healthy'
            health_status['pending_deliveries'] = app.delivery_queue.pending_count()
        except Exception as e:
            health_status['components']['database'] = f'unhealthy: {str(e)}'
            health_status['status'] = 'unhealthy'

        redis_url = app.config.get('REDIS_URL')
        if redis_url:
            try:
                client = redis.Redis.from_url(redis_url, socket_connect_timeout=5, socket_timeout=5)
                client.ping()
                health_status['components']['redis'] = 'healthy'
            except redis.RedisError as e:
                health_status['components']['redis'] = f'unhealthy: {str(e)}'
                health_status['status'] = 'unhealthy'
        else:
            health_status['components']['redis'] = 'not configured'

        status_code = 200 if health_status['status'] == 'healthy' else 503
        return jsonify(health_status), status_code


def configure_request_middleware(app: Flask) -> None:
    """
    Request/response middleware for security and monitoring
    """
    @app.before_request
    def before_request():
        g.start_time = utcnow()

        if request.endpoint and any(sensitive in request.endpoint for sensitive in ('auth', 'admin')):
            app.logger.info(f"Sensitive endpoint access: {request.endpoint} from {request.remote_addr}")

    @app.after_request
    def after_request(response):
        response = security_headers(response)

        if hasattr(g, 'start_time'):
            duration = (utcnow() - g.start_time).total_seconds() * 1000
            if duration > app.config.get('SLOW_REQUEST_THRESHOLD', 1000):
                app.logger.warning(f"Slow request ({duration:.0f}ms): {request.method} {request.path}")

        return response


def create_app(config_name: str = None,
               config_overrides: Optional[Dict[str, Any]] = None,
               email_client: Optional[EmailClient] = None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')
        config_overrides: Values applied on top of the configuration class
        email_client: Transport to use instead of the SMTP client built from config

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__, template_folder='templates')

    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    app.config.from_object(get_config(config_name))
    if config_overrides:
        app.config.update(config_overrides)

    # Deployed behind nginx
    if config_name == 'production':
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    configure_logging(app.config, debug=app.debug)
    app.logger.info(f"Starting newsletter service in {config_name} mode")

    configure_database(app)
    configure_delivery(app, email_client)
    configure_security(app)
    register_blueprints(app)
    configure_error_handlers(app)
    configure_health_checks(app)
    configure_request_middleware(app)

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    # Development server
    create_app('development').run(host='0.0.0.0', port=5000, debug=True, use_reloader=False)
