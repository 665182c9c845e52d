# api/smtp_accounts.py
"""
SMTP account API, including the connection test used by the account form
"""

from flask import Blueprint, request, jsonify
import logging

from middleware.security import require_auth, current_user, rate_limit
from services import mailer
from services import smtp_accounts as smtp_service

smtp_accounts_bp = Blueprint('smtp_accounts', __name__)
logger = logging.getLogger(__name__)


def _payload():
    return request.get_json(silent=True) or {}


def _result_response(result):
    return jsonify(result.to_dict()), 200 if result.success else 400


@smtp_accounts_bp.route('', methods=['GET'])
@require_auth
def list_accounts():
    accounts = smtp_service.get_smtp_accounts(current_user().id)
    return jsonify({'success': True, 'accounts': [a.to_dict() for a in accounts]})


@smtp_accounts_bp.route('', methods=['POST'])
@require_auth
def create_account():
    account = smtp_service.add_smtp_account(current_user().id, _payload())
    return jsonify({'success': True, 'account': account.to_dict()}), 201


@smtp_accounts_bp.route('/<account_id>', methods=['PUT', 'PATCH'])
@require_auth
def update_account(account_id):
    account = smtp_service.update_smtp_account(current_user().id, account_id, _payload())
    return jsonify({'success': True, 'account': account.to_dict()})


@smtp_accounts_bp.route('/<account_id>', methods=['DELETE'])
@require_auth
def delete_account(account_id):
    smtp_service.delete_smtp_account(current_user().id, account_id)
    return jsonify({'success': True})


@smtp_accounts_bp.route('/test-connection', methods=['POST'])
@require_auth
@rate_limit('smtp_test')
def test_connection():
    """Verify unsaved settings and send a confirmation to test_email"""
    data = _payload()
    result = mailer.test_smtp_connection(data, data.get('test_email'), data.get('test_message'))
    return _result_response(result)


@smtp_accounts_bp.route('/<account_id>/send-test', methods=['POST'])
@require_auth
@rate_limit('smtp_test')
def send_test(account_id):
    result = mailer.send_test_email(current_user().id, account_id, _payload().get('to_email'))
    return _result_response(result)
