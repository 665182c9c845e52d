# api/auth.py
"""
Session Authentication API
"""

from flask import Blueprint, request, jsonify, session, current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import generate_csrf
import logging

from core.security_manager import get_security_manager
from middleware.security import require_auth, current_user
from services import users as user_service
from services.errors import AuthenticationError, PermissionDenied

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# Shared limiter, bound to the app in create_app()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per hour", "100 per minute"]
)


def _start_session(user):
    session.clear()
    session.permanent = True
    session['user_id'] = user.id


@auth_bp.route('/csrf', methods=['GET'])
def csrf_token():
    """Token for the X-CSRFToken header of session-authenticated mutations"""
    return jsonify({'csrf_token': generate_csrf()})


@auth_bp.route('/register', methods=['POST'])
@limiter.limit(lambda: current_app.config['LOGIN_RATE_LIMIT'])
def register():
    data = request.get_json(silent=True) or {}
    user = user_service.create_user_profile(data.get('email'), data.get('password'))
    _start_session(user)

    get_security_manager().log_security_event('user_registered', {'email': user.email}, user_id=user.id)
    return jsonify({'success': True, 'user': user.to_dict()}), 201


@auth_bp.route('/login', methods=['POST'])
@limiter.limit(lambda: current_app.config['LOGIN_RATE_LIMIT'])
def login():
    """
    Sign in with email and password

    Attempts are throttled per address as well as per client IP.
    """
    security = get_security_manager()
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({'success': False, 'error': 'Email and password are required.'}), 400

    allowed, limit_info = security.check_rate_limit(f"login:{email}", 'login')
    if not allowed:
        security.log_security_event('rate_limit_exceeded', {'email': email, 'limit_type': 'login'})
        return jsonify({
            'success': False,
            'error': 'Too many login attempts. Please try again shortly.',
            'reset_in': limit_info.get('reset_in', 60)
        }), 429

    try:
        user = user_service.authenticate(email, password)
    except (AuthenticationError, PermissionDenied) as e:
        security.log_security_event('login_failed', {'email': email, 'reason': e.message})
        raise

    _start_session(user)
    security.log_security_event('login_success', {'email': user.email}, user_id=user.id)
    return jsonify({'success': True, 'user': user.to_dict()})


@auth_bp.route('/logout', methods=['POST'])
def logout():
    user_id = session.get('user_id')
    if user_id:
        get_security_manager().log_security_event('logout', user_id=user_id)
    session.clear()
    return jsonify({'success': True, 'message': 'Logged out successfully'})


@auth_bp.route('/me', methods=['GET'])
@require_auth
def me():
    return jsonify({'success': True, 'user': current_user().to_dict()})
