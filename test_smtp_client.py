# test_smtp_client.py
"""Tests for message building and SMTP error mapping"""

import asyncio

import aiosmtplib
import pytest

from conftest import FakeSmtpServer
from core.smtp_client import (
    AUTH_FAILED_MESSAGE, TIMEOUT_MESSAGE, MessageBuildError, SmtpClient, SmtpCredentials, SmtpSendError,
    build_message, friendly_error,
)

CREDS = SmtpCredentials('smtp.example.com', 465, 'sender@example.com', 'smtp-secret', True)


@pytest.fixture
def server():
    return FakeSmtpServer()


@pytest.fixture
def smtp(server):
    return SmtpClient(timeout=1, transport_factory=server.transport)


def test_build_message_has_both_parts_and_headers():
    message = build_message(CREDS.from_address, 'ann@example.com', 'Hello', '<p>Hi <b>Ann</b></p>',
                            headers={'X-Campaign-ID': 'c-1'})

    assert message['From'].endswith('<sender@example.com>')
    assert message['To'] == 'ann@example.com'
    assert message['Subject'] == 'Hello'
    assert message['Message-ID'].endswith('@example.com>')
    assert message['Date']
    assert message['X-Campaign-ID'] == 'c-1'

    text = message.get_body(preferencelist=('plain',)).get_content()
    html = message.get_body(preferencelist=('html',)).get_content()
    assert text.strip() == 'Hi Ann'
    assert '<b>Ann</b>' in html


def test_build_message_uses_given_text():
    message = build_message(CREDS.from_address, 'ann@example.com', 'Hello', '<p>Hi</p>', text='Plain hi')

    assert message.get_body(preferencelist=('plain',)).get_content().strip() == 'Plain hi'


def test_send_logs_in_and_delivers(server, smtp):
    message = build_message(CREDS.from_address, 'ann@example.com', 'Hello', '<p>Hi</p>')

    response = smtp.send(CREDS, message)

    assert response == 'OK queued'
    assert server.logins == [('sender@example.com', 'smtp-secret')]
    assert server.recipients == ['ann@example.com']
    assert server.connections[0]['use_tls'] is True
    assert server.connections[0]['validate_certs'] is False


def test_plain_port_uses_opportunistic_starttls(server, smtp):
    smtp.verify(SmtpCredentials('smtp.example.com', 587, 'sender@example.com', 'pw', False))

    assert server.connections[0]['use_tls'] is False
    assert server.connections[0]['start_tls'] is None


def test_account_without_password_skips_login(server, smtp):
    smtp.verify(SmtpCredentials('relay.example.com', 25, 'sender@example.com', None, False))

    assert server.logins == []


def test_authentication_failure(server, smtp):
    server.fail('login', aiosmtplib.SMTPAuthenticationError(535, '5.7.8 Bad credentials'))

    with pytest.raises(SmtpSendError) as exc_info:
        smtp.verify(CREDS)

    assert exc_info.value.kind == 'auth'
    assert exc_info.value.code == '535'
    assert not exc_info.value.temporary
    assert friendly_error(exc_info.value) == AUTH_FAILED_MESSAGE


def test_temporary_reply_is_retryable(server, smtp):
    server.fail('send', aiosmtplib.SMTPResponseException(451, 'Try again later'))

    with pytest.raises(SmtpSendError) as exc_info:
        smtp.send(CREDS, build_message(CREDS.from_address, 'ann@example.com', 'Hello', '<p>Hi</p>'))

    assert exc_info.value.code == '451'
    assert exc_info.value.temporary


def test_refused_recipient_is_permanent(server, smtp):
    refused = aiosmtplib.SMTPRecipientRefused(550, 'User unknown', 'ann@example.com')
    server.fail('send', aiosmtplib.SMTPRecipientsRefused([refused]))

    with pytest.raises(SmtpSendError) as exc_info:
        smtp.send(CREDS, build_message(CREDS.from_address, 'ann@example.com', 'Hello', '<p>Hi</p>'))

    assert exc_info.value.code == '550'
    assert exc_info.value.message == 'User unknown'
    assert not exc_info.value.temporary


def test_timeout_maps_to_friendly_message(server, smtp):
    server.fail('connect', asyncio.TimeoutError())

    with pytest.raises(SmtpSendError) as exc_info:
        smtp.verify(CREDS)

    assert exc_info.value.kind == 'timeout'
    assert friendly_error(exc_info.value, connection_test=True) == TIMEOUT_MESSAGE


def test_connection_refused_is_temporary(server, smtp):
    server.fail('connect', ConnectionRefusedError('Connection refused'))

    with pytest.raises(SmtpSendError) as exc_info:
        smtp.verify(CREDS)

    assert exc_info.value.kind == 'connection'
    assert exc_info.value.temporary
    assert friendly_error(exc_info.value, connection_test=True) == 'Connection failed: Connection refused'
    assert friendly_error(exc_info.value) == 'Connection refused'


@pytest.mark.parametrize('to, subject, html', [
    ('ann@example.com', 'Hello\r\nBcc: x@evil.com', '<p>Hi</p>'),
    ('ann@example.com\n', 'Hello', '<p>Hi</p>'),
    ('ann@example.com', '', '<p>Hi</p>'),
    ('ann@example.com', 'Hello', 42),
])
def test_build_message_rejects_invalid_fields(to, subject, html):
    with pytest.raises(MessageBuildError):
        build_message(CREDS.from_address, to, subject, html)
