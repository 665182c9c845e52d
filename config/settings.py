# config/settings.py
"""
Configuration classes for the MailCannon application

Values are read from the environment once at import time. The application
factory picks a class with get_config() and applies it with
app.config.from_object().
"""

import os
import secrets
from datetime import timedelta


def _env_list(name: str, default: str) -> list:
    return [item.strip() for item in os.environ.get(name, default).split(',') if item.strip()]


class BaseConfig:
    """Settings shared by every environment"""

    VERSION = os.environ.get('APP_VERSION', '1.0.0')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Session settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_urlsafe(32)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_COOKIE_SECURE = True
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///mailcannon.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DB_POOL_SIZE = int(os.environ.get('DB_POOL_SIZE', 10))
    DB_MAX_OVERFLOW = int(os.environ.get('DB_MAX_OVERFLOW', 20))
    SLOW_QUERY_THRESHOLD = 1.0

    # Redis and Celery
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/1')
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/1')
    CELERY_TASK_ALWAYS_EAGER = False

    # Socket.IO; a message queue lets Celery workers emit to browser clients
    SOCKETIO_MESSAGE_QUEUE = os.environ.get('SOCKETIO_MESSAGE_QUEUE')

    # Security
    ENCRYPTION_KEY = os.environ.get('ENCRYPTION_KEY') or secrets.token_urlsafe(32)
    EMAIL_API_SECRET_KEY = os.environ.get('EMAIL_API_SECRET_KEY')
    CORS_ORIGINS = _env_list('CORS_ORIGINS', 'http://localhost:3000')
    WTF_CSRF_ENABLED = True
    WTF_CSRF_CHECK_DEFAULT = True
    WTF_CSRF_TIME_LIMIT = 3600
    AUDIT_LOG_RETENTION_DAYS = 90

    # Flask-Limiter
    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'redis://localhost:6379/3')
    RATELIMIT_HEADERS_ENABLED = True
    LOGIN_RATE_LIMIT = '5 per minute'
    SEND_EMAIL_RATE_LIMIT = '120 per minute'

    # Campaign dispatch
    DISPATCH_MAX_ATTEMPTS = 3
    DISPATCH_RETRY_BASE_SECONDS = 60
    DISPATCH_RETRY_MAX_SECONDS = 900
    DISPATCH_JITTER = 0.25
    SMTP_TIMEOUT_SECONDS = 30
    SCHEDULER_INTERVAL_SECONDS = 60
    ANALYTICS_CACHE_TTL = 60

    # Billing
    TRIAL_DAYS = 1
    TRIAL_SMTP_ACCOUNT_LIMIT = 1

    # Uploads (CSV recipient imports)
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
    LOG_FILE = os.environ.get('LOG_FILE', 'logs/mailcannon.log')


class TestingConfig(BaseConfig):
    TESTING = True
    SECRET_KEY = 'testing-secret-key'
    SESSION_COOKIE_SECURE = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    ENCRYPTION_KEY = 'testing-encryption-key'
    EMAIL_API_SECRET_KEY = 'testing-api-key'
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'
    CELERY_BROKER_URL = 'memory://'
    CELERY_RESULT_BACKEND = 'cache+memory://'
    CELERY_TASK_ALWAYS_EAGER = True
    DISPATCH_JITTER = 0.0
    SMTP_TIMEOUT_SECONDS = 1


class ProductionConfig(BaseConfig):
    DEBUG = False


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(name: str = None):
    """Resolve a config class by name, falling back to FLASK_ENV then production"""
    name = name or os.environ.get('FLASK_ENV', 'production')
    return CONFIGS.get(name, ProductionConfig)
