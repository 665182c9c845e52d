# middleware/security.py
"""
Security Middleware for Request Processing
"""

from flask import request, jsonify, session, g
from functools import wraps
import logging
from typing import Optional

from core.database_models import User, utcnow
from core.security_manager import get_security_manager
from services import users as user_service

logger = logging.getLogger(__name__)


def security_headers(response):
    """Add security headers to all responses"""
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    response.headers['Permissions-Policy'] = 'camera=(), microphone=(), geolocation=()'

    return response


def current_user() -> Optional[User]:
    """Signed-in user for this request, or None"""
    if 'current_user' not in g:
        user_id = session.get('user_id')
        g.current_user = user_service.get_user_profile(user_id) if user_id else None
    return g.current_user


def _unauthorized():
    return jsonify({'success': False, 'error': 'Authentication required'}), 401


def require_auth(f):
    """Decorator to require a signed-in, non-banned user"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            get_security_manager().log_security_event('unauthorized_access_attempt', {
                'endpoint': request.endpoint,
                'method': request.method
            })
            return _unauthorized()

        user = current_user()
        if user is None:
            session.clear()
            return _unauthorized()
        if user.is_banned:
            session.clear()
            return jsonify({'success': False, 'error': 'Your account has been suspended.'}), 403

        # Update last activity
        session['last_activity'] = utcnow().isoformat()

        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    """Decorator to require an admin user"""
    @require_auth
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_user()
        if not user.is_admin:
            get_security_manager().log_security_event('admin_access_denied', {
                'endpoint': request.endpoint
            }, user_id=user.id)
            return jsonify({'success': False, 'error': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated_function


def require_api_key(f):
    """Decorator for server-to-server endpoints authenticated with x-api-key"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        security = get_security_manager()
        if not security.verify_api_key(request.headers.get('x-api-key')):
            security.log_security_event('api_key_rejected', {
                'endpoint': request.endpoint,
                'key_present': bool(request.headers.get('x-api-key'))
            })
            return jsonify({'success': False, 'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated_function


def rate_limit(limit_type='api'):
    """Decorator for per-user throttling through SecurityManager.check_rate_limit"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Use IP address or user ID as key
            key = session.get('user_id', request.remote_addr)

            allowed, limit_info = get_security_manager().check_rate_limit(key, limit_type)

            if not allowed:
                get_security_manager().log_security_event('rate_limit_exceeded', {
                    'endpoint': request.endpoint,
                    'key': key,
                    'limit_type': limit_type
                })
                return jsonify({
                    'success': False,
                    'error': 'Too many requests. Please try again shortly.',
                    'reset_in': limit_info.get('reset_in', 60)
                }), 429

            return f(*args, **kwargs)
        return decorated_function
    return decorator
