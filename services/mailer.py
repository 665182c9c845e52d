# services/mailer.py
"""
One-off mail actions: campaign test sends, lead emails, SMTP tests and the
API send endpoint

Every action returns a SendResult instead of raising, and logs the reason
when it fails.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple

from core.database_models import SmtpStatus
from core.security_manager import DecryptionError
from core.smtp_client import (
    MessageBuildError, SmtpClient, SmtpCredentials, SmtpSendError, build_message, friendly_error,
    get_smtp_client,
)
from core.template_engine import text_to_html
from services import smtp_accounts as smtp_service
from services import leads as lead_service
from services.errors import NotFoundError, ServiceError

logger = logging.getLogger(__name__)

TEST_EMAIL_SUBJECT = 'MailCannon - SMTP Connection Test'
TEST_EMAIL_TEXT = ('Success! This is a test email from your MailCannon application to confirm '
                   'your SMTP settings are working correctly.')
TEST_EMAIL_HTML = ('<p><b>Success!</b></p><p>This is a test email from your MailCannon application '
                   'to confirm your SMTP settings are working correctly.</p>')

VERIFIED_SUBJECT = 'MailCannon SMTP Configuration Verified'
VERIFIED_TEXT = 'Your SMTP account was successfully verified and is now ready to use with MailCannon.'
VERIFIED_HTML = ('<h1>Success!</h1><p>Your SMTP account was successfully verified and is now ready '
                 'to use with MailCannon.</p>')

API_REQUIRED_FIELDS = ('to', 'subject', 'html', 'userId', 'fromEmailId')


@dataclass
class SendResult:
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CredentialsError(Exception):
    """SMTP account missing or unusable; message is shown to the user"""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _load_credentials(user_id: str, smtp_account_id: str, require_password: bool = True) -> SmtpCredentials:
    try:
        creds = smtp_service.get_smtp_credentials(user_id, smtp_account_id)
    except NotFoundError:
        raise CredentialsError('SMTP account not found.', 404)
    except DecryptionError:
        raise CredentialsError('SMTP account credentials could not be decrypted.', 500)
    if require_password and not creds.password:
        raise CredentialsError('SMTP account credentials are not complete.', 500)
    return creds


def send_campaign_email(to: str, subject: str, html: str, user_id: Optional[str],
                        smtp_account_id: str, client: SmtpClient = None) -> SendResult:
    """
    Send one email through the user's SMTP account

    Args:
        to: Recipient address
        subject: Subject line
        html: HTML body
        user_id: Sending user, None when the caller is not signed in
        smtp_account_id: Account to send with
    """
    if not user_id:
        return SendResult(False, 'Authentication required.')

    try:
        creds = _load_credentials(user_id, smtp_account_id)
        message = build_message(creds.from_address, to, subject, html)
        (client or get_smtp_client()).send(creds, message)
    except CredentialsError as e:
        logger.warning(f"Campaign email to {to} not sent: {e.message}")
        return SendResult(False, e.message)
    except MessageBuildError as e:
        logger.warning(f"Campaign email to {to!r} not built: {e}")
        return SendResult(False, str(e))
    except SmtpSendError as e:
        logger.error(f"Failed to send campaign email to {to}: {e.message}")
        return SendResult(False, friendly_error(e))

    return SendResult(True)


def send_lead_email(user_id: Optional[str], lead_id: str, smtp_account_id: str,
                    subject: str, message: str, client: SmtpClient = None) -> SendResult:
    """
    Email a lead from the lead manager

    The message is plain text; newlines become <br> in the HTML part.
    """
    if not user_id:
        return SendResult(False, 'Authentication required.')

    subject = subject.strip() if isinstance(subject, str) else ''
    message = message.strip() if isinstance(message, str) else ''
    if len(subject) < 3:
        return SendResult(False, 'Subject must be at least 3 characters.')
    if len(message) < 10:
        return SendResult(False, 'Message must be at least 10 characters.')

    try:
        lead = lead_service.get_lead(user_id, lead_id)
    except NotFoundError as e:
        return SendResult(False, e.message)

    try:
        creds = _load_credentials(user_id, smtp_account_id)
        msg = build_message(creds.from_address, lead.email, subject, text_to_html(message), text=message)
        (client or get_smtp_client()).send(creds, msg)
    except CredentialsError as e:
        return SendResult(False, e.message)
    except MessageBuildError as e:
        return SendResult(False, str(e))
    except SmtpSendError as e:
        logger.error(f"Failed to send lead email to {lead.email}: {e.message}")
        return SendResult(False, e.message or 'Failed to send email')

    logger.info(f"Lead email sent to lead {lead_id}")
    return SendResult(True)


def _record_status(user_id: str, smtp_account_id: str, status: str):
    try:
        smtp_service.update_smtp_account_status(user_id, smtp_account_id, status)
    except ServiceError as e:
        logger.error(f"Failed to update status of SMTP account {smtp_account_id} to {status}: {e.message}")


def send_test_email(user_id: Optional[str], smtp_account_id: str, to_email: str,
                    client: SmtpClient = None) -> SendResult:
    """
    Verify a saved SMTP account by sending the fixed test message

    The account is marked Connected on success and Error on failure.
    """
    if not user_id:
        return SendResult(False, 'Authentication required.')
    if not to_email:
        return SendResult(False, 'Test recipient email is required.')

    client = client or get_smtp_client()
    try:
        creds = _load_credentials(user_id, smtp_account_id, require_password=False)
    except CredentialsError as e:
        return SendResult(False, e.message)

    try:
        client.verify(creds)
        message = build_message(creds.from_address, to_email, TEST_EMAIL_SUBJECT,
                                TEST_EMAIL_HTML, text=TEST_EMAIL_TEXT)
        client.send(creds, message)
    except MessageBuildError as e:
        return SendResult(False, str(e))
    except SmtpSendError as e:
        logger.error(f"Failed to send test email with account {smtp_account_id}: {e.message}")
        _record_status(user_id, smtp_account_id, SmtpStatus.ERROR)
        return SendResult(False, friendly_error(e, connection_test=True))

    _record_status(user_id, smtp_account_id, SmtpStatus.CONNECTED)
    return SendResult(True)


def test_smtp_connection(account_data: Dict[str, Any], test_email: str,
                         test_message: Optional[str] = None, client: SmtpClient = None) -> SendResult:
    """
    Check unsaved SMTP settings by verifying them and sending a confirmation

    Args:
        account_data: server, port, secure, username, password
        test_email: Recipient of the confirmation
        test_message: Optional text replacing the default confirmation body
    """
    if not account_data.get('password'):
        return SendResult(False, 'Password is required for testing.')
    if not test_email:
        return SendResult(False, 'Test recipient email is required.')

    server, username = account_data.get('server') or '', account_data.get('username') or ''
    if not isinstance(server, str) or not isinstance(username, str):
        return SendResult(False, 'Connection failed: server and username must be text')
    if test_message is not None and not isinstance(test_message, str):
        return SendResult(False, 'Test message must be text.')

    try:
        creds = SmtpCredentials(
            server=server.strip(),
            port=int(account_data.get('port')),
            username=username.strip(),
            password=account_data['password'],
            secure=bool(account_data.get('secure', True)),
        )
    except (TypeError, ValueError):
        return SendResult(False, 'Connection failed: invalid port')

    if test_message:
        text, html = test_message, f"<p>{text_to_html(test_message)}</p>"
    else:
        text, html = VERIFIED_TEXT, VERIFIED_HTML

    client = client or get_smtp_client()
    try:
        client.verify(creds)
        client.send(creds, build_message(creds.from_address, test_email, VERIFIED_SUBJECT, html, text=text))
    except MessageBuildError as e:
        return SendResult(False, str(e))
    except SmtpSendError as e:
        logger.error(f"Failed to verify SMTP connection to {creds.server}:{creds.port}: {e.message}")
        return SendResult(False, friendly_error(e, connection_test=True))

    return SendResult(True)


def send_via_api(payload: Dict[str, Any], client: SmtpClient = None) -> Tuple[Dict[str, Any], int]:
    """
    Body and status code for POST /api/send-email

    The caller has already checked the API key.
    """
    payload = payload or {}
    if any(not payload.get(field) for field in API_REQUIRED_FIELDS):
        return {'success': False, 'error': 'Missing required fields'}, 400
    if any(not isinstance(payload[field], str) for field in API_REQUIRED_FIELDS):
        return {'success': False, 'error': 'Fields must be strings'}, 400

    user_id = payload['userId']
    account_id = payload['fromEmailId']
    try:
        creds = _load_credentials(user_id, account_id)
    except CredentialsError as e:
        return {'success': False, 'error': e.message}, e.status_code

    client = client or get_smtp_client()
    try:
        client.verify(creds)
        message = build_message(creds.from_address, payload['to'], payload['subject'], payload['html'])
        client.send(creds, message)
    except MessageBuildError as e:
        logger.warning(f"API send for user {user_id} rejected: {e}")
        return {'success': False, 'error': str(e)}, 400
    except SmtpSendError as e:
        logger.error(f"API send for user {user_id} failed: {e.message}")
        return {'success': False, 'error': friendly_error(e) or 'An internal server error occurred'}, 500

    logger.info(f"API email sent for user {user_id} to {payload['to']}")
    return {'success': True, 'message': 'Email sent successfully'}, 200
