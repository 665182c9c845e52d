# app.py
"""
Flask Application Factory for the MailCannon email marketing platform

This application factory wires the existing modules together:
- SQLAlchemy models with Flask-Migrate migrations
- Session authentication with CSRF protection and rate limiting
- Campaign dispatch on Celery workers
- Live campaign progress via SocketIO
- JSON error handling and health checks
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from flask import Flask, request, jsonify, g
from flask_migrate import Migrate
from flask_cors import CORS
from flask_wtf.csrf import CSRFProtect, CSRFError
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.exceptions import HTTPException

import redis
from sqlalchemy import event, text

from config.settings import get_config
from core.database_models import db, utcnow
from core.security_manager import init_security_manager
from api.admin import admin_bp
from api.auth import auth_bp, limiter
from api.billing import billing_bp
from api.campaigns import campaigns_bp
from api.leads import leads_bp
from api.realtime import init_socketio
from api.recipients import recipients_bp
from api.send_email import send_email_bp
from api.smtp_accounts import smtp_accounts_bp
from api.tracking import tracking_bp
from middleware.security import security_headers
from services.errors import ServiceError
from tasks.email_sender import bind_flask_app

csrf = CSRFProtect()
migrate = Migrate()


def setup_logging(app: Flask) -> None:
    """
    Configure logging for journald-style collection

    One stream handler on the root logger so module loggers share the
    format; a rotating file handler is added when LOG_FILE is set.
    """
    journal_formatter = logging.Formatter(
        fmt='%(name)s[%(process)d]: %(levelname)s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    log_level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(getattr(h, '_mailcannon', False) for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(journal_formatter)
        stream_handler._mailcannon = True
        root.addHandler(stream_handler)

        log_file = app.config.get('LOG_FILE')
        if log_file:
            Path(log_file).parent.mkdir(exist_ok=True, parents=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setFormatter(detailed_formatter)
            file_handler.setLevel(logging.DEBUG)
            file_handler._mailcannon = True
            root.addHandler(file_handler)

    # Suppress verbose third-party logs outside debug
    if not app.debug:
        for name in ('werkzeug', 'socketio', 'engineio', 'urllib3'):
            logging.getLogger(name).setLevel(logging.WARNING)


def create_redis_client(app: Flask) -> redis.Redis:
    """Redis client shared by throttling, the audit log and the analytics cache"""
    client = redis.Redis.from_url(
        app.config['REDIS_URL'],
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    try:
        client.ping()
        app.logger.info("Redis client connected successfully")
    except redis.RedisError as e:
        # Throttling and caching fail open; the app still serves requests
        app.logger.error(f"Redis connection failed: {e}")
    return client


def configure_database(app: Flask) -> None:
    """
    Configure SQLAlchemy with pooling for server databases and slow query logging
    """
    database_url = app.config['SQLALCHEMY_DATABASE_URI']

    if not database_url.startswith('sqlite'):
        engine_options = {
            'pool_size': app.config.get('DB_POOL_SIZE', 10),
            'max_overflow': app.config.get('DB_MAX_OVERFLOW', 20),
            'pool_pre_ping': True,  # Verify connections before use
            'pool_recycle': 3600,   # Recycle connections every hour
        }
        if database_url.startswith('postgresql'):
            engine_options['connect_args'] = {
                'application_name': 'mailcannon',
                'connect_timeout': 10,
            }
        app.config.setdefault('SQLALCHEMY_ENGINE_OPTIONS', engine_options)

    db.init_app(app)
    migrate.init_app(app, db)

    threshold = app.config.get('SLOW_QUERY_THRESHOLD', 1.0)

    with app.app_context():
        engine = db.engine

        @event.listens_for(engine, "before_cursor_execute")
        def receive_before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            context._query_start_time = utcnow()

        @event.listens_for(engine, "after_cursor_execute")
        def receive_after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            total = (utcnow() - context._query_start_time).total_seconds()
            if total > threshold:
                app.logger.warning(f"Slow query ({total:.2f}s): {statement[:100]}...")

    app.logger.info(f"Database configured: {database_url.split('@')[-1]}")


def configure_security(app: Flask, redis_client: redis.Redis) -> None:
    """
    Configure security manager, CSRF protection, rate limiting and CORS
    """
    init_security_manager(app, redis_client)

    csrf.init_app(app)
    csrf.exempt(send_email_bp)

    limiter.init_app(app)

    # /api/send-email sets its own wildcard CORS headers
    CORS(app,
         resources={r"/api/(?!send-email).*": {'origins': app.config.get('CORS_ORIGINS')}},
         supports_credentials=True,
         allow_headers=['Content-Type', 'X-CSRFToken'])

    app.logger.info("Security features configured")


def register_blueprints(app: Flask) -> None:
    """
    Register all application blueprints with proper URL prefixes
    """
    app.register_blueprint(send_email_bp, url_prefix='/api')
    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(campaigns_bp, url_prefix='/api/campaigns')
    app.register_blueprint(recipients_bp, url_prefix='/api/recipient-lists')
    app.register_blueprint(smtp_accounts_bp, url_prefix='/api/smtp-accounts')
    app.register_blueprint(leads_bp, url_prefix='/api/leads')
    app.register_blueprint(billing_bp, url_prefix='/api/billing')
    app.register_blueprint(tracking_bp, url_prefix='/api/tracking')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')

    app.logger.info("Application blueprints registered")


def _error(message: str, status_code: int):
    return jsonify({'success': False, 'error': message}), status_code


def configure_error_handlers(app: Flask) -> None:
    """
    Render every error as {"success": false, "error": ...}
    """
    @app.errorhandler(ServiceError)
    def service_error(error):
        if error.status_code >= 500:
            app.logger.error(f"Service error on {request.path}: {error.message}")
        return _error(error.message, error.status_code)

    @app.errorhandler(CSRFError)
    def csrf_error(error):
        app.logger.warning(f"CSRF validation failed for {request.path} from {request.remote_addr}")
        return _error(error.description, 400)

    @app.errorhandler(400)
    def bad_request(error):
        app.logger.warning(f"Bad request from {request.remote_addr}: {error}")
        return _error('Invalid request format or parameters', 400)

    @app.errorhandler(401)
    def unauthorized(error):
        app.logger.warning(f"Unauthorized access attempt from {request.remote_addr}")
        return _error('Authentication required', 401)

    @app.errorhandler(403)
    def forbidden(error):
        app.logger.warning(f"Forbidden access attempt from {request.remote_addr}")
        return _error('Insufficient permissions', 403)

    @app.errorhandler(404)
    def not_found(error):
        return _error('The requested resource was not found', 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return _error('Method not allowed', 405)

    @app.errorhandler(413)
    def too_large(error):
        return _error('Upload is too large', 413)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded for {request.remote_addr}")
        return _error('Too many requests. Please try again later.', 429)

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f"Internal server error: {error}", exc_info=True)
        return _error('An unexpected error occurred', 500)

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return _error(e.description or e.name, e.code or 500)

        db.session.rollback()
        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return _error('An unexpected error occurred', 500)


def configure_health_checks(app: Flask, redis_client: redis.Redis) -> None:
    """
    Health check endpoint for monitoring and load balancing
    """
    @app.route('/health')
    def health_check():
        components = {}
        healthy = True

        try:
            db.session.execute(text('SELECT 1'))
            components['database'] = 'healthy'
        except Exception as e:
            components['database'] = f'unhealthy: {str(e)}'
            healthy = False

        try:
            redis_client.ping()
            components['redis'] = 'healthy'
        except redis.RedisError as e:
            components['redis'] = f'unhealthy: {str(e)}'
            healthy = False

        return jsonify({
            'status': 'healthy' if healthy else 'unhealthy',
            'timestamp': utcnow().isoformat(),
            'version': app.config.get('VERSION', '1.0.0'),
            'components': components,
        }), 200 if healthy else 503


def configure_request_middleware(app: Flask) -> None:
    """
    Configure request/response middleware for security and monitoring
    """
    @app.before_request
    def before_request():
        g.start_time = utcnow()
        # g outlives the request when an app context is already pushed
        g.pop('current_user', None)

    @app.after_request
    def after_request(response):
        response = security_headers(response)

        if hasattr(g, 'start_time'):
            duration = (utcnow() - g.start_time).total_seconds() * 1000
            if duration > app.config.get('SLOW_REQUEST_THRESHOLD', 1000):
                app.logger.warning(f"Slow request ({duration:.0f}ms): {request.method} {request.path}")

        return response


def create_app(config_name: str = None, redis_client: Optional[redis.Redis] = None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')
        redis_client: Redis client to use instead of one built from REDIS_URL

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config = get_config(config_name)
    app.config.from_object(config)

    # Proxy handling for production deployment behind nginx
    if not app.debug and not app.testing:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    setup_logging(app)
    app.logger.info(f"Starting MailCannon with {config.__name__}")

    if redis_client is None:
        redis_client = create_redis_client(app)
    app.extensions['redis'] = redis_client

    configure_database(app)
    configure_security(app, redis_client)
    bind_flask_app(app)
    init_socketio(app)

    register_blueprints(app)
    configure_error_handlers(app)
    configure_health_checks(app, redis_client)
    configure_request_middleware(app)

    # Create database tables (in production, use migrations instead)
    if app.debug or app.testing:
        with app.app_context():
            db.create_all()
            app.logger.info("Database tables created")

    app.logger.info("Flask application factory completed successfully")
    return app
