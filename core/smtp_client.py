# core/smtp_client.py
"""
SMTP delivery over aiosmtplib

Every tenant sends through their own SMTP account, so a connection is opened
per operation with the account's credentials. Failures surface as
SmtpSendError carrying the SMTP reply code (when the server gave one) and
whether the failure is worth retrying.
"""

import asyncio
import logging
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Optional

import aiosmtplib

from core.smtp_rfc_handler import SMTPResponseAnalyzer
from core.template_engine import get_template_engine

logger = logging.getLogger(__name__)

AUTH_FAILED_MESSAGE = 'Authentication failed. Please check your username and password.'
TIMEOUT_MESSAGE = 'Connection timed out. Please check your server and port.'


@dataclass
class SmtpCredentials:
    """Connection settings of one SMTP account, password decrypted"""
    server: str
    port: int
    username: str
    password: Optional[str]
    secure: bool = True

    @property
    def from_address(self) -> str:
        return formataddr((self.username, self.username))


class SmtpSendError(Exception):
    """
    SMTP operation failed

    Attributes:
        message: Human readable reason
        code: SMTP reply code as a string, None for connection-level failures
        temporary: True when a later retry may succeed
        kind: 'auth', 'timeout', 'connection' or 'response'
    """

    def __init__(self, message: str, code: Optional[str] = None, temporary: bool = False,
                 kind: str = 'response'):
        super().__init__(message)
        self.message = message
        self.code = code
        self.temporary = temporary
        self.kind = kind


class MessageBuildError(ValueError):
    """Message fields cannot form a valid email, such as a header with a line break"""


def _check_header(name: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MessageBuildError(f"{name} must be a non-empty string.")
    if '\r' in value or '\n' in value:
        raise MessageBuildError(f"{name} must not contain line breaks.")
    return value


def build_message(from_address: str, to: str, subject: str, html: str,
                  text: Optional[str] = None, headers: Optional[dict] = None) -> EmailMessage:
    """
    Build a multipart/alternative message

    Args:
        from_address: Formatted From header
        to: Recipient address
        subject: Subject line
        html: HTML body
        text: Plain-text body, derived from the HTML when omitted
        headers: Extra headers such as X-Campaign-ID

    Returns:
        EmailMessage ready for SmtpClient.send

    Raises:
        MessageBuildError: a header is missing, not a string or spans lines,
            or a body part is not a string
    """
    _check_header('Sender', from_address)
    _check_header('Recipient', to)
    _check_header('Subject', subject)
    for name, part in (('HTML body', html), ('Text body', text)):
        if part is not None and not isinstance(part, str):
            raise MessageBuildError(f"{name} must be a string.")

    if text is None:
        text = get_template_engine().html_to_text(html or '')

    domain = from_address.rsplit('@', 1)[-1].strip('>" ') if '@' in from_address else None

    msg = EmailMessage()
    try:
        msg['From'] = from_address
        msg['To'] = to
        msg['Subject'] = subject
        msg['Date'] = formatdate(usegmt=True)
        msg['Message-ID'] = make_msgid(domain=domain or None)
        msg['X-Mailer'] = 'MailCannon'
        for name, value in (headers or {}).items():
            msg[name] = value

        msg.set_content(text or ' ')
        msg.add_alternative(html or '', subtype='html')
    except (ValueError, TypeError, IndexError) as e:
        raise MessageBuildError(f"Invalid email message: {e}") from e
    return msg


def friendly_error(exc: Exception, connection_test: bool = False) -> str:
    """
    Map an SMTP failure to the message shown to the user

    Args:
        exc: Exception raised by SmtpClient
        connection_test: Prefix generic failures with "Connection failed:"
    """
    kind = getattr(exc, 'kind', None)
    message = getattr(exc, 'message', None) or str(exc)
    if kind == 'auth':
        return AUTH_FAILED_MESSAGE
    if kind == 'timeout':
        return TIMEOUT_MESSAGE
    if connection_test:
        return f"Connection failed: {message}"
    return message


class SmtpClient:
    """
    Connects, authenticates and sends with one account's credentials

    Args:
        timeout: Socket timeout in seconds
        transport_factory: Callable returning an aiosmtplib.SMTP compatible object
    """

    def __init__(self, timeout: float = 30, transport_factory=None):
        self.timeout = timeout
        self.transport_factory = transport_factory or aiosmtplib.SMTP
        self.analyzer = SMTPResponseAnalyzer()

    def _transport(self, creds: SmtpCredentials):
        return self.transport_factory(
            hostname=creds.server,
            port=int(creds.port),
            use_tls=bool(creds.secure),
            start_tls=False if creds.secure else None,
            # Relays commonly present self-signed or mismatched certificates
            validate_certs=False,
            timeout=self.timeout,
        )

    async def _session(self, creds: SmtpCredentials, message: Optional[EmailMessage]) -> Optional[str]:
        smtp = self._transport(creds)
        await smtp.connect()
        try:
            if creds.password:
                await smtp.login(creds.username, creds.password)
            if message is None:
                return None
            _, response = await smtp.send_message(message)
            return response
        finally:
            try:
                await smtp.quit()
            except aiosmtplib.SMTPException:
                smtp.close()

    def _run(self, creds: SmtpCredentials, message: Optional[EmailMessage]) -> Optional[str]:
        try:
            return asyncio.run(self._session(creds, message))
        except aiosmtplib.SMTPAuthenticationError as e:
            raise SmtpSendError(e.message or AUTH_FAILED_MESSAGE, str(e.code), False, 'auth') from e
        except aiosmtplib.SMTPRecipientsRefused as e:
            refused = e.recipients[0] if e.recipients else None
            code = str(refused.code) if refused else None
            reason = refused.message if refused else str(e)
            raise SmtpSendError(reason, code, self.analyzer.categorize_response(code).is_temporary) from e
        except aiosmtplib.SMTPResponseException as e:
            code = str(e.code)
            raise SmtpSendError(e.message or str(e), code,
                                self.analyzer.categorize_response(code).is_temporary) from e
        except (aiosmtplib.SMTPTimeoutError, asyncio.TimeoutError) as e:
            raise SmtpSendError(str(e) or 'Timed out', None, True, 'timeout') from e
        except (aiosmtplib.SMTPException, OSError) as e:
            raise SmtpSendError(str(e) or e.__class__.__name__, None, True, 'connection') from e

    def verify(self, creds: SmtpCredentials) -> None:
        """Connect and authenticate without sending; raises SmtpSendError"""
        logger.debug(f"Verifying SMTP account {creds.username}@{creds.server}:{creds.port}")
        self._run(creds, None)

    def send(self, creds: SmtpCredentials, message: EmailMessage) -> Optional[str]:
        """
        Deliver one message

        Returns:
            The server's final reply text
        """
        response = self._run(creds, message)
        logger.info(f"Sent message {message['Message-ID']} to {message['To']} via {creds.server}")
        return response


def get_smtp_client() -> SmtpClient:
    """Client configured from the current app, or the one tests installed"""
    from flask import current_app
    client = current_app.extensions.get('smtp_client')
    if client is None:
        client = SmtpClient(timeout=current_app.config.get('SMTP_TIMEOUT_SECONDS', 30))
        current_app.extensions['smtp_client'] = client
    return client
