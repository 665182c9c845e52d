# services/smtp_accounts.py
"""
Tenant SMTP accounts

Passwords are stored as Fernet tokens and only leave this module inside
SmtpCredentials for server-side sending.
"""

import logging
from typing import Dict, List

from core.database_models import db, SmtpAccount, SmtpStatus, utcnow
from core.security_manager import get_security_manager
from core.smtp_client import SmtpCredentials
from services import users as user_service
from services.errors import ValidationError, NotFoundError, LimitExceeded

logger = logging.getLogger(__name__)


def _clean_fields(data: Dict, partial: bool = False) -> Dict:
    cleaned = {}

    if not partial or 'server' in data:
        server = (data.get('server') or '').strip()
        if not server:
            raise ValidationError("Server is required.")
        cleaned['server'] = server

    if not partial or 'port' in data:
        try:
            port = int(data.get('port'))
        except (TypeError, ValueError):
            raise ValidationError("Port must be a number.")
        if port < 1 or port > 65535:
            raise ValidationError("Port must be between 1 and 65535.")
        cleaned['port'] = port

    if not partial or 'username' in data:
        username = (data.get('username') or '').strip()
        if not username:
            raise ValidationError("Username is required.")
        cleaned['username'] = username

    if 'secure' in data:
        cleaned['secure'] = bool(data.get('secure'))

    return cleaned


def add_smtp_account(user_id: str, data: Dict) -> SmtpAccount:
    """
    Add an SMTP account within the subscription's account limit

    Args:
        user_id: Owner
        data: server, port, username, secure and optional password
    """
    user = user_service.require_user(user_id)
    fields = _clean_fields(data)

    limit = user_service.smtp_account_limit(user)
    existing = SmtpAccount.query.filter_by(user_id=user_id).count()
    if existing >= limit:
        raise LimitExceeded(
            f"Your plan allows {limit} SMTP account{'s' if limit != 1 else ''}. "
            "Upgrade your plan to add more."
        )

    account = SmtpAccount(user_id=user_id, status=SmtpStatus.CONNECTED, **fields)
    if data.get('password'):
        account.password_encrypted = get_security_manager().encrypt_sensitive_data(data['password'])
    db.session.add(account)
    db.session.commit()

    logger.info(f"SMTP account {account.id} ({account.username}@{account.server}) added for {user_id}")
    return account


def get_smtp_account(user_id: str, account_id: str) -> SmtpAccount:
    account = SmtpAccount.query.filter_by(id=account_id, user_id=user_id).first() if account_id else None
    if not account:
        raise NotFoundError("SMTP account not found.")
    return account


def update_smtp_account(user_id: str, account_id: str, data: Dict) -> SmtpAccount:
    """Partial update; the stored password is kept unless a new one is supplied"""
    account = get_smtp_account(user_id, account_id)
    for field, value in _clean_fields(data, partial=True).items():
        setattr(account, field, value)
    if data.get('password'):
        account.password_encrypted = get_security_manager().encrypt_sensitive_data(data['password'])
    account.status = SmtpStatus.DISCONNECTED
    db.session.commit()

    logger.info(f"SMTP account {account_id} updated")
    return account


def delete_smtp_account(user_id: str, account_id: str):
    account = get_smtp_account(user_id, account_id)
    db.session.delete(account)
    db.session.commit()
    logger.info(f"SMTP account {account_id} deleted")


def get_smtp_accounts(user_id: str) -> List[SmtpAccount]:
    return SmtpAccount.query.filter_by(user_id=user_id).order_by(SmtpAccount.created_at.asc()).all()


def update_smtp_account_status(user_id: str, account_id: str, status: str) -> SmtpAccount:
    if status not in SmtpStatus.ALL:
        raise ValidationError(f"Invalid SMTP status: {status}")
    account = get_smtp_account(user_id, account_id)
    account.status = status
    account.last_tested_at = utcnow()
    db.session.commit()
    return account


def get_smtp_credentials(user_id: str, account_id: str) -> SmtpCredentials:
    """
    Load an account with its decrypted password

    The password is None when the account was saved without one.
    """
    account = get_smtp_account(user_id, account_id)
    password = None
    if account.password_encrypted:
        password = get_security_manager().decrypt_sensitive_data(account.password_encrypted)
    return SmtpCredentials(
        server=account.server,
        port=account.port,
        username=account.username,
        password=password,
        secure=bool(account.secure),
    )
