# api/billing.py
"""
Billing API: available plans, the user's subscription and payment claims
"""

from flask import Blueprint, request, jsonify
import logging

from middleware.security import require_auth, current_user
from services import payments as payment_service
from services import plans as plan_service
from services import users as user_service

billing_bp = Blueprint('billing', __name__)
logger = logging.getLogger(__name__)


@billing_bp.route('/plans', methods=['GET'])
@require_auth
def list_plans():
    return jsonify({'success': True, 'plans': [p.to_dict() for p in plan_service.get_plans()]})


@billing_bp.route('/subscription', methods=['GET'])
@require_auth
def subscription():
    """Stored subscription plus the status it effectively has right now"""
    user = current_user()
    return jsonify({
        'success': True,
        'subscription': user.subscription,
        'effective_status': user_service.effective_subscription_status(user),
        'smtp_account_limit': user_service.smtp_account_limit(user),
        'payments': [p.to_dict() for p in payment_service.get_user_payments(user.id)],
    })


@billing_bp.route('/payments', methods=['POST'])
@require_auth
def submit_payment():
    data = request.get_json(silent=True) or {}
    payment = payment_service.submit_payment(current_user().id, data.get('plan_id'), data.get('transaction_id'))
    return jsonify({'success': True, 'payment': payment.to_dict()}), 201
