# conftest.py
"""
Shared pytest fixtures

Every test gets a fresh app on in-memory SQLite and fakeredis, an SMTP
client backed by FakeSmtpServer, and a recorder in place of the Celery
enqueue so dispatcher steps only run when a test calls them.
"""

import pytest
import fakeredis

from app import create_app
from core.database_models import db
from core.events import set_emitter
from core.smtp_client import SmtpClient
from services import campaigns as campaign_service
from services import recipients as recipient_service
from services import smtp_accounts as smtp_service
from services import users as user_service

PASSWORD = 'correct-horse-battery'


class FakeSmtpServer:
    """
    Stands in for aiosmtplib.SMTP

    fail(stage, exc, times) makes the next `times` calls of a stage
    ('connect', 'login' or 'send') raise exc.
    """

    def __init__(self):
        self.connections = []
        self.logins = []
        self.sent = []
        self._failures = {'connect': [], 'login': [], 'send': []}

    def fail(self, stage, exc, times=1):
        self._failures[stage].extend([exc] * times)

    def _maybe_fail(self, stage):
        if self._failures[stage]:
            raise self._failures[stage].pop(0)

    def transport(self, **kwargs):
        self.connections.append(kwargs)
        return _FakeTransport(self)

    @property
    def recipients(self):
        return [m['To'] for m in self.sent]


class _FakeTransport:
    def __init__(self, server):
        self.server = server

    async def connect(self):
        self.server._maybe_fail('connect')

    async def login(self, username, password):
        self.server._maybe_fail('login')
        self.server.logins.append((username, password))

    async def send_message(self, message):
        self.server._maybe_fail('send')
        self.server.sent.append(message)
        return {}, 'OK queued'

    async def quit(self):
        pass

    def close(self):
        pass


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def app(redis_client):
    app = create_app('testing', redis_client=redis_client)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
    set_emitter(None)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def smtp_server(app):
    server = FakeSmtpServer()
    app.extensions['smtp_client'] = SmtpClient(timeout=1, transport_factory=server.transport)
    return server


@pytest.fixture(autouse=True)
def enqueued(monkeypatch):
    """Dispatcher steps queued by the code under test, as (campaign_id, token, attempt, countdown)"""
    calls = []

    def record(campaign_id, token, attempt=1, countdown=0):
        calls.append((campaign_id, token, attempt, countdown))

    monkeypatch.setattr(campaign_service, 'enqueue_campaign_step', record)
    return calls


@pytest.fixture
def emitted(app):
    """Realtime updates published during the test, as (room, event, data)"""
    events = []
    set_emitter(lambda event, data, room=None: events.append((room, event, data)))
    return events


@pytest.fixture
def user(app):
    return user_service.create_user_profile('owner@example.com', PASSWORD)


@pytest.fixture
def other_user(app):
    return user_service.create_user_profile('someone.else@example.com', PASSWORD)


@pytest.fixture
def admin(app):
    return user_service.create_user_profile('admin@example.com', PASSWORD, role='admin')


def login(client, email, password=PASSWORD):
    return client.post('/api/auth/login', json={'email': email, 'password': password})


@pytest.fixture
def auth_client(client, user):
    response = login(client, user.email)
    assert response.status_code == 200
    return client


@pytest.fixture
def admin_client(client, admin):
    response = login(client, admin.email)
    assert response.status_code == 200
    return client


@pytest.fixture
def smtp_account(user):
    return smtp_service.add_smtp_account(user.id, {
        'server': 'smtp.example.com',
        'port': 465,
        'username': 'sender@example.com',
        'password': 'smtp-secret',
        'secure': True,
    })


@pytest.fixture
def recipient_list(user):
    return recipient_service.add_recipient_list(
        user.id, 'Customers', 'Paying customers',
        ['first@example.com', 'second@example.com', 'third@example.com'],
    )


def campaign_data(smtp_account, recipient_list, **overrides):
    data = {
        'campaign_name': 'Spring launch',
        'email_subject': 'Hello {{ email }}',
        'email_body': '<p>Welcome to {{ campaign_name }}, {{ email }}!</p>',
        'smtp_account_id': smtp_account.id,
        'recipient_list_id': recipient_list.id,
        'delay': 0,
        'speed_limit': 0,
    }
    data.update(overrides)
    return data


@pytest.fixture
def campaign(user, smtp_account, recipient_list):
    return campaign_service.add_campaign(user.id, campaign_data(smtp_account, recipient_list))
