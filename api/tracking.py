# api/tracking.py
"""
Delivery tracking API
"""

from flask import Blueprint, jsonify

from middleware.security import require_auth, current_user
from services import analytics as analytics_service

tracking_bp = Blueprint('tracking', __name__)


@tracking_bp.route('/summary', methods=['GET'])
@require_auth
def summary():
    return jsonify({'success': True, 'summary': analytics_service.get_tracking_summary(current_user().id)})
