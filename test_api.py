# test_api.py
"""HTTP tests for the JSON API, the send endpoint and the Socket.IO channel"""

import io

import pytest

from conftest import PASSWORD, campaign_data, login
from api.realtime import socketio
from core.database_models import CampaignStatus
from services import campaigns as campaign_service
from services import leads as lead_service
from services import payments as payment_service
from services import plans as plan_service
from services import users as user_service

API_KEY = {'x-api-key': 'testing-api-key'}


# Auth

def test_register_signs_the_user_in(client):
    response = client.post('/api/auth/register', json={'email': 'new@example.com', 'password': PASSWORD})

    assert response.status_code == 201
    assert response.json['user']['subscription']['status'] == 'trial'
    assert client.get('/api/auth/me').json['user']['email'] == 'new@example.com'


def test_register_duplicate_is_a_conflict(client, user):
    response = client.post('/api/auth/register', json={'email': user.email, 'password': PASSWORD})

    assert response.status_code == 409
    assert response.json == {'success': False, 'error': 'An account with this email already exists.'}


def test_login_and_logout(client, user):
    assert login(client, user.email).json['user']['uid'] == user.id
    assert client.get('/api/auth/me').status_code == 200

    client.post('/api/auth/logout')

    assert client.get('/api/auth/me').status_code == 401


def test_login_with_wrong_password(client, user):
    response = login(client, user.email, 'wrong-password')

    assert response.status_code == 401
    assert response.json['error'] == 'Invalid email or password.'


def test_login_requires_both_fields(client):
    assert client.post('/api/auth/login', json={'email': 'a@example.com'}).status_code == 400


def test_login_attempts_are_throttled_per_address(client, user):
    statuses = [login(client, user.email, 'wrong-password').status_code for _ in range(6)]

    assert statuses == [401] * 5 + [429]


def test_banned_user_cannot_log_in(client, user):
    user_service.ban_user(user.id)

    assert login(client, user.email).status_code == 403


def test_banned_session_is_suspended(auth_client, user):
    user_service.ban_user(user.id)

    response = auth_client.get('/api/auth/me')

    assert response.status_code == 403
    assert response.json['error'] == 'Your account has been suspended.'


def test_protected_routes_require_a_session(client):
    response = client.get('/api/campaigns')

    assert response.status_code == 401
    assert response.json == {'success': False, 'error': 'Authentication required'}


def test_csrf_token_endpoint(client):
    assert client.get('/api/auth/csrf').json['csrf_token']


# Campaigns

def test_campaign_lifecycle_over_http(auth_client, smtp_account, recipient_list, enqueued):
    created = auth_client.post('/api/campaigns', json=campaign_data(smtp_account, recipient_list))
    campaign_id = created.json['campaign']['id']

    assert created.status_code == 201
    assert created.json['campaign']['status'] == CampaignStatus.DRAFT

    started = auth_client.post(f'/api/campaigns/{campaign_id}/start')
    assert started.json['campaign']['status'] == CampaignStatus.RUNNING
    assert len(enqueued) == 1

    assert auth_client.post(f'/api/campaigns/{campaign_id}/pause').json['campaign']['status'] == CampaignStatus.PAUSED
    assert auth_client.post(f'/api/campaigns/{campaign_id}/pause').status_code == 409
    assert auth_client.post(f'/api/campaigns/{campaign_id}/resume').json['campaign']['status'] == CampaignStatus.RUNNING
    assert auth_client.post(f'/api/campaigns/{campaign_id}/stop').json['campaign']['status'] == CampaignStatus.COMPLETED

    assert auth_client.post(f'/api/campaigns/{campaign_id}/explode').status_code == 404


def test_campaign_validation_error(auth_client, smtp_account, recipient_list):
    response = auth_client.post('/api/campaigns', json=campaign_data(smtp_account, recipient_list, campaign_name='x'))

    assert response.status_code == 400
    assert response.json['success'] is False
    assert 'Campaign name' in response.json['error']


def test_campaign_edit_and_delete(auth_client, campaign):
    updated = auth_client.patch(f'/api/campaigns/{campaign.id}', json={'campaign_name': 'Summer launch'})

    assert updated.json['campaign']['campaign_name'] == 'Summer launch'
    assert auth_client.delete(f'/api/campaigns/{campaign.id}').json == {'success': True}
    assert auth_client.get(f'/api/campaigns/{campaign.id}').status_code == 404


def test_other_users_campaign_is_not_found(client, other_user, campaign):
    login(client, other_user.email)

    assert client.get(f'/api/campaigns/{campaign.id}').status_code == 404
    assert client.post(f'/api/campaigns/{campaign.id}/start').status_code == 404


def test_campaign_failures_and_metrics(auth_client, campaign):
    campaign_service.log_campaign_failure(campaign, 'first@example.com', 'User unknown', '550',
                                          bounce_category='invalid_recipient')

    failures = auth_client.get(f'/api/campaigns/{campaign.id}/failures').json['failures']
    metrics = auth_client.get(f'/api/campaigns/{campaign.id}/metrics?refresh=true').json['metrics']

    assert failures[0]['recipient_email'] == 'first@example.com'
    assert metrics['failed_count'] == 1
    assert metrics['total_recipients'] == 3


def test_campaign_preview_send(auth_client, smtp_account, smtp_server):
    response = auth_client.post('/api/campaigns/send-email', json={
        'to': 'ann@example.com', 'subject': 'Preview', 'html': '<p>Body</p>',
        'smtp_account_id': smtp_account.id,
    })

    assert response.status_code == 200
    assert response.json == {'success': True, 'error': None}
    assert smtp_server.recipients == ['ann@example.com']


# Recipient lists

def test_create_list_from_pasted_text(auth_client):
    response = auth_client.post('/api/recipient-lists', json={
        'name': 'Pasted', 'text': 'a@example.com, b@example.com; junk',
    })

    assert response.status_code == 201
    assert response.json['list']['count'] == 2


def test_create_list_from_csv_upload(auth_client):
    upload = (io.BytesIO(b'email\nann@example.com\nbob@example.com\n'), 'contacts.csv')

    response = auth_client.post('/api/recipient-lists', data={'name': 'Imported', 'file': upload},
                                content_type='multipart/form-data')

    assert response.status_code == 201
    assert response.json['list']['name'] == 'Imported'
    assert response.json['list']['count'] == 2


def test_non_csv_upload_is_rejected(auth_client):
    upload = (io.BytesIO(b'ann@example.com'), 'contacts.xlsx')

    response = auth_client.post('/api/recipient-lists', data={'name': 'Imported', 'file': upload},
                                content_type='multipart/form-data')

    assert response.status_code == 400
    assert response.json['error'] == 'Please upload a .csv file.'


def test_pasted_text_without_valid_addresses_is_rejected(auth_client):
    response = auth_client.post('/api/recipient-lists', json={'name': 'Pasted', 'text': 'junk; more junk'})

    assert response.status_code == 400
    assert response.json['error'] == 'Please paste at least one valid email.'
    assert auth_client.get('/api/recipient-lists').json['lists'] == []


def test_csv_without_valid_addresses_is_rejected(auth_client):
    upload = (io.BytesIO(b'email\nbroken\n'), 'contacts.csv')

    response = auth_client.post('/api/recipient-lists', data={'name': 'Imported', 'file': upload},
                                content_type='multipart/form-data')

    assert response.status_code == 400
    assert response.json['error'] == 'No valid emails found in the CSV file.'


def test_non_string_addresses_are_rejected(auth_client, recipient_list):
    created = auth_client.post('/api/recipient-lists', json={'name': 'Numbers', 'emails': [123]})
    appended = auth_client.post(f'/api/recipient-lists/{recipient_list.id}/recipients',
                                json={'emails': [123]})

    assert created.status_code == 400
    assert appended.status_code == 400
    assert appended.json['error'] == 'No valid emails found.'


def test_manage_recipients(auth_client, recipient_list):
    url = f'/api/recipient-lists/{recipient_list.id}/recipients'

    added = auth_client.post(url, json={'emails': ['fourth@example.com']})
    recipients = auth_client.get(url).json['recipients']
    removed = auth_client.delete(f"{url}/{recipients[0]['id']}")

    assert added.json['list']['count'] == 4
    assert [r['email'] for r in recipients][-1] == 'fourth@example.com'
    assert removed.json['list']['count'] == 3


# SMTP accounts

def test_smtp_accounts_never_expose_passwords(auth_client, smtp_account):
    accounts = auth_client.get('/api/smtp-accounts').json['accounts']

    assert accounts[0]['username'] == 'sender@example.com'
    assert 'password' not in accounts[0]
    assert 'password_encrypted' not in accounts[0]


def test_smtp_account_limit_is_forbidden(auth_client, smtp_account):
    response = auth_client.post('/api/smtp-accounts', json={
        'server': 'smtp.other.com', 'port': 587, 'username': 'second@example.com', 'password': 'pw',
    })

    assert response.status_code == 403
    assert 'Upgrade your plan' in response.json['error']


def test_smtp_connection_test(auth_client, smtp_server):
    response = auth_client.post('/api/smtp-accounts/test-connection', json={
        'server': 'smtp.example.com', 'port': 465, 'secure': True, 'username': 'me@example.com',
        'password': 'pw', 'test_email': 'me@example.com',
    })

    assert response.status_code == 200
    assert smtp_server.recipients == ['me@example.com']


def test_smtp_send_test_failure(auth_client, smtp_account, smtp_server):
    smtp_server.fail('connect', ConnectionRefusedError('Connection refused'))

    response = auth_client.post(f'/api/smtp-accounts/{smtp_account.id}/send-test', json={'to_email': 'me@example.com'})

    assert response.status_code == 400
    assert response.json['error'] == 'Connection failed: Connection refused'


# Leads, billing and tracking

def test_lead_board(auth_client):
    auth_client.post('/api/leads', json={'name': 'Ann Buyer', 'email': 'ann@example.com', 'status': 'Active'})

    board = auth_client.get('/api/leads?view=board').json['board']

    assert [lead['name'] for lead in board['Active']] == ['Ann Buyer']
    assert board['New'] == []


def test_lead_email(auth_client, user, smtp_account, smtp_server):
    lead = lead_service.add_lead(user.id, {'name': 'Ann Buyer', 'email': 'ann@example.com'})

    response = auth_client.post(f'/api/leads/{lead.id}/send-email', json={
        'smtp_account_id': smtp_account.id, 'subject': 'Following up', 'message': 'Thanks for your interest.',
    })

    assert response.status_code == 200
    assert smtp_server.recipients == ['ann@example.com']


def test_subscription_and_payment(auth_client):
    plan = plan_service.add_plan({'name': 'Pro', 'duration_days': 30, 'smtp_account_limit': 5, 'price': 29})

    submitted = auth_client.post('/api/billing/payments', json={'plan_id': plan.id, 'transaction_id': 'TXN-12345'})
    subscription = auth_client.get('/api/billing/subscription').json

    assert submitted.status_code == 201
    assert subscription['effective_status'] == 'pending'
    assert subscription['smtp_account_limit'] == 0
    assert subscription['payments'][0]['transaction_id'] == 'TXN-12345'


def test_tracking_summary(auth_client):
    summary = auth_client.get('/api/tracking/summary').json['summary']

    assert summary['total_sent'] == 0


# Admin

def test_admin_routes_reject_regular_users(auth_client):
    response = auth_client.get('/api/admin/dashboard')

    assert response.status_code == 403
    assert response.json['error'] == 'Admin access required'


def test_admin_reviews_payments(client, user, admin):
    plan = plan_service.add_plan({'name': 'Pro', 'duration_days': 30, 'smtp_account_limit': 5, 'price': 29})
    payment = payment_service.submit_payment(user.id, plan.id, 'TXN-12345')
    login(client, admin.email)

    pending = client.get('/api/admin/payments?status=pending').json['payments']
    approved = client.post(f'/api/admin/payments/{payment.id}/approve')
    again = client.post(f'/api/admin/payments/{payment.id}/reject')

    assert [p['id'] for p in pending] == [payment.id]
    assert approved.json['payment']['status'] == 'approved'
    assert again.status_code == 409
    assert user.subscription_status == 'active'


def test_admin_manages_plans_and_users(admin_client, user):
    created = admin_client.post('/api/admin/plans', json={
        'name': 'Starter', 'duration_days': 30, 'smtp_account_limit': 1, 'price': 9,
    })
    banned = admin_client.post(f'/api/admin/users/{user.id}/ban')
    users = admin_client.get('/api/admin/users').json['users']

    assert created.status_code == 201
    assert banned.json['user']['is_banned'] is True
    assert {u['email'] for u in users} == {'owner@example.com', 'admin@example.com'}
    assert admin_client.get('/api/admin/dashboard').json['dashboard']['total_users'] == 2


def test_admin_security_metrics(client, user, admin):
    login(client, user.email, 'wrong-password')
    login(client, admin.email)

    metrics = client.get('/api/admin/security-metrics?hours=1').json['metrics']

    assert metrics['event_types']['login_failed'] == 1
    assert metrics['event_types']['login_success'] == 1


# Send endpoint

def send_payload(user, smtp_account):
    return {
        'to': 'ann@example.com', 'subject': 'Receipt', 'html': '<p>Thanks</p>',
        'userId': user.id, 'fromEmailId': smtp_account.id,
    }


def test_send_endpoint_requires_api_key(client, user, smtp_account, smtp_server):
    missing = client.post('/api/send-email', json=send_payload(user, smtp_account))
    wrong = client.post('/api/send-email', json=send_payload(user, smtp_account), headers={'x-api-key': 'nope'})

    assert missing.status_code == 401
    assert wrong.json == {'success': False, 'error': 'Unauthorized'}
    assert smtp_server.sent == []


def test_send_endpoint_delivers(client, user, smtp_account, smtp_server):
    response = client.post('/api/send-email', json=send_payload(user, smtp_account), headers=API_KEY)

    assert response.status_code == 200
    assert response.json['message'] == 'Email sent successfully'
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert smtp_server.recipients == ['ann@example.com']


@pytest.mark.parametrize('field, value, status', [
    ('subject', '', 400),
    ('fromEmailId', 'missing', 404),
])
def test_send_endpoint_errors(client, user, smtp_account, smtp_server, field, value, status):
    payload = dict(send_payload(user, smtp_account), **{field: value})

    response = client.post('/api/send-email', json=payload, headers=API_KEY)

    assert response.status_code == status
    assert response.json['success'] is False


def test_send_endpoint_preflight(client):
    response = client.options('/api/send-email')

    assert response.status_code == 204
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert 'x-api-key' in response.headers['Access-Control-Allow-Headers']


# Application

def test_health_check(client):
    response = client.get('/health')

    assert response.status_code == 200
    assert response.json['components'] == {'database': 'healthy', 'redis': 'healthy'}


def test_unknown_route_is_json(client):
    response = client.get('/api/nowhere')

    assert response.status_code == 404
    assert response.json == {'success': False, 'error': 'The requested resource was not found'}


def test_security_headers(client):
    response = client.get('/health')

    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert response.headers['X-Frame-Options'] == 'DENY'


# Realtime

def test_anonymous_socket_is_rejected(app, client):
    socket = socketio.test_client(app, flask_test_client=client)

    assert not socket.is_connected()


def test_socket_follows_campaign_updates(app, auth_client, campaign):
    socket = socketio.test_client(app, flask_test_client=auth_client)
    assert socket.is_connected()
    assert socket.get_received()[0]['name'] == 'connected'

    socket.emit('subscribe_campaign_updates', {'campaign_id': campaign.id})
    received = socket.get_received()

    assert received[0]['name'] == 'campaign_status'
    assert received[0]['args'][0]['status'] == CampaignStatus.DRAFT


def test_socket_cannot_follow_foreign_campaigns(app, client, other_user, campaign):
    login(client, other_user.email)
    socket = socketio.test_client(app, flask_test_client=client)
    socket.get_received()

    socket.emit('subscribe_campaign_updates', {'campaign_id': campaign.id})

    assert socket.get_received()[0]['name'] == 'error'
