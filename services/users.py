# services/users.py
"""
User accounts and their embedded subscription
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from flask import current_app
from email_validator import validate_email, EmailNotValidError

from core.database_models import db, User, Plan, utcnow
from core.security_manager import get_security_manager
from services.errors import (
    ValidationError, AuthenticationError, PermissionDenied, NotFoundError, ConflictError
)

logger = logging.getLogger(__name__)

TRIAL_PLAN_ID = 'trial'
TRIAL_PLAN_NAME = '1-Day Trial'
SUBSCRIPTION_STATUSES = ('trial', 'active', 'pending', 'rejected', 'expired')
SENDING_STATUSES = ('trial', 'active')
MIN_PASSWORD_LENGTH = 8


def normalize_email(email: str) -> str:
    """
    Validate an address and return its normalized form

    Raises:
        ValidationError: address is malformed
    """
    try:
        result = validate_email((email or '').strip(), check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email address: {str(e)}")
    return result.normalized.lower()


def create_user_profile(email: str, password: str, role: str = 'user') -> User:
    """
    Register a user with a trial subscription

    Args:
        email: Login address, stored lowercase
        password: Plain text password, at least 8 characters
        role: 'user' or 'admin'

    Returns:
        The new User
    """
    email = normalize_email(email)
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if role not in ('user', 'admin'):
        raise ValidationError("Role must be 'user' or 'admin'.")
    if User.query.filter_by(email=email).first():
        raise ConflictError("An account with this email already exists.")

    password_hash, salt = get_security_manager().hash_password(password)
    now = utcnow()
    user = User(
        email=email,
        password_hash=password_hash,
        password_salt=salt,
        role=role,
        subscription_plan_id=TRIAL_PLAN_ID,
        subscription_plan_name=TRIAL_PLAN_NAME,
        subscription_status='trial',
        subscription_start=now,
        subscription_end=now + timedelta(days=current_app.config.get('TRIAL_DAYS', 1)),
    )
    db.session.add(user)
    db.session.commit()

    logger.info(f"Created {role} account {user.id} ({email})")
    return user


def authenticate(email: str, password: str) -> User:
    """
    Check login credentials

    Raises:
        AuthenticationError: unknown email or wrong password
        PermissionDenied: the account is banned
    """
    try:
        email = normalize_email(email)
    except ValidationError:
        raise AuthenticationError("Invalid email or password.")

    user = User.query.filter_by(email=email).first()
    security = get_security_manager()
    if not user or not security.verify_password(password, user.password_hash, user.password_salt):
        raise AuthenticationError("Invalid email or password.")
    if user.is_banned:
        raise PermissionDenied("This account has been suspended.")
    return user


def get_user_profile(uid: str) -> Optional[User]:
    if not uid:
        return None
    return db.session.get(User, uid)


def require_user(uid: str) -> User:
    user = get_user_profile(uid)
    if not user:
        raise NotFoundError("User not found.")
    return user


def get_all_users() -> List[User]:
    return User.query.order_by(User.created_at.desc()).all()


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def update_user_subscription(uid: str, subscription: Dict) -> User:
    """
    Replace the user's subscription fields

    Args:
        uid: User id
        subscription: Dict with plan_id, plan_name, status, start_date, end_date
    """
    user = require_user(uid)
    status = subscription.get('status', user.subscription_status)
    if status not in SUBSCRIPTION_STATUSES:
        raise ValidationError(f"Invalid subscription status: {status}")

    user.subscription_plan_id = subscription.get('plan_id', user.subscription_plan_id)
    user.subscription_plan_name = subscription.get('plan_name', user.subscription_plan_name)
    user.subscription_status = status
    if 'start_date' in subscription:
        user.subscription_start = _parse_datetime(subscription['start_date'])
    if 'end_date' in subscription:
        user.subscription_end = _parse_datetime(subscription['end_date'])
    db.session.commit()

    logger.info(f"Subscription of user {uid} set to {status} ({user.subscription_plan_name})")
    return user


def _set_banned(uid: str, banned: bool) -> User:
    user = require_user(uid)
    if user.is_admin and banned:
        raise PermissionDenied("Admin accounts cannot be banned.")
    user.is_banned = banned
    db.session.commit()
    get_security_manager().log_security_event('user_banned' if banned else 'user_unbanned',
                                              {'target_user_id': uid})
    return user


def ban_user(uid: str) -> User:
    return _set_banned(uid, True)


def unban_user(uid: str) -> User:
    return _set_banned(uid, False)


def effective_subscription_status(user: User, now: datetime = None) -> Optional[str]:
    """Stored status, or 'expired' when a trial/active subscription has run out"""
    now = now or utcnow()
    status = user.subscription_status
    if status in SENDING_STATUSES and user.subscription_end and user.subscription_end <= now:
        return 'expired'
    return status


def can_send(user: User, now: datetime = None) -> bool:
    return not user.is_banned and effective_subscription_status(user, now) in SENDING_STATUSES


def expire_subscriptions(now: datetime = None) -> int:
    """
    Persist 'expired' for every trial/active subscription past its end date

    Returns:
        Number of users updated
    """
    now = now or utcnow()
    users = User.query.filter(
        User.subscription_status.in_(SENDING_STATUSES),
        User.subscription_end.isnot(None),
        User.subscription_end <= now,
    ).all()
    for user in users:
        user.subscription_status = 'expired'
    if users:
        db.session.commit()
        logger.info(f"Expired {len(users)} subscriptions")
    return len(users)


def smtp_account_limit(user: User, now: datetime = None) -> int:
    """Number of SMTP accounts the user's subscription allows"""
    status = effective_subscription_status(user, now)
    if status == 'trial':
        return current_app.config.get('TRIAL_SMTP_ACCOUNT_LIMIT', 1)
    if status == 'active':
        plan = db.session.get(Plan, user.subscription_plan_id) if user.subscription_plan_id else None
        return plan.smtp_account_limit if plan else 0
    return 0
