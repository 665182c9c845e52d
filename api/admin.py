# api/admin.py
"""
Admin API: dashboard totals, user moderation, plans and payment review
"""

from flask import Blueprint, request, jsonify
import logging

from core.security_manager import get_security_manager
from middleware.security import require_admin
from services import analytics as analytics_service
from services import payments as payment_service
from services import plans as plan_service
from services import users as user_service

admin_bp = Blueprint('admin', __name__)
logger = logging.getLogger(__name__)


@admin_bp.route('/dashboard', methods=['GET'])
@require_admin
def dashboard():
    return jsonify({'success': True, 'dashboard': analytics_service.get_admin_dashboard()})


@admin_bp.route('/security-metrics', methods=['GET'])
@require_admin
def security_metrics():
    hours = request.args.get('hours', 24, type=int)
    return jsonify({'success': True, 'metrics': get_security_manager().get_security_metrics(max(1, hours))})


@admin_bp.route('/users', methods=['GET'])
@require_admin
def list_users():
    return jsonify({'success': True, 'users': [u.to_dict() for u in user_service.get_all_users()]})


@admin_bp.route('/users/<uid>/ban', methods=['POST'])
@require_admin
def ban_user(uid):
    user = user_service.ban_user(uid)
    return jsonify({'success': True, 'user': user.to_dict()})


@admin_bp.route('/users/<uid>/unban', methods=['POST'])
@require_admin
def unban_user(uid):
    user = user_service.unban_user(uid)
    return jsonify({'success': True, 'user': user.to_dict()})


@admin_bp.route('/plans', methods=['GET'])
@require_admin
def list_plans():
    return jsonify({'success': True, 'plans': [p.to_dict() for p in plan_service.get_plans()]})


@admin_bp.route('/plans', methods=['POST'])
@require_admin
def create_plan():
    plan = plan_service.add_plan(request.get_json(silent=True) or {})
    return jsonify({'success': True, 'plan': plan.to_dict()}), 201


@admin_bp.route('/plans/<plan_id>', methods=['PUT', 'PATCH'])
@require_admin
def update_plan(plan_id):
    plan = plan_service.update_plan(plan_id, request.get_json(silent=True) or {})
    return jsonify({'success': True, 'plan': plan.to_dict()})


@admin_bp.route('/plans/<plan_id>', methods=['DELETE'])
@require_admin
def delete_plan(plan_id):
    plan_service.delete_plan(plan_id)
    return jsonify({'success': True})


@admin_bp.route('/payments', methods=['GET'])
@require_admin
def list_payments():
    payments = payment_service.get_payments(request.args.get('status'))
    return jsonify({'success': True, 'payments': [p.to_dict() for p in payments]})


@admin_bp.route('/payments/<payment_id>/approve', methods=['POST'])
@require_admin
def approve_payment(payment_id):
    payment = payment_service.approve_payment(payment_id)
    return jsonify({'success': True, 'payment': payment.to_dict()})


@admin_bp.route('/payments/<payment_id>/reject', methods=['POST'])
@require_admin
def reject_payment(payment_id):
    payment = payment_service.reject_payment(payment_id)
    return jsonify({'success': True, 'payment': payment.to_dict()})
