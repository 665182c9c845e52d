# api/leads.py
"""
Lead manager API
"""

from flask import Blueprint, request, jsonify
import logging

from middleware.security import require_auth, current_user
from services import leads as lead_service
from services import mailer

leads_bp = Blueprint('leads', __name__)
logger = logging.getLogger(__name__)


@leads_bp.route('', methods=['GET'])
@require_auth
def list_leads():
    """All leads, or the kanban board with ?view=board"""
    user_id = current_user().id
    if request.args.get('view') == 'board':
        board = lead_service.get_leads_by_status(user_id)
        return jsonify({
            'success': True,
            'board': {status: [lead.to_dict() for lead in leads] for status, leads in board.items()}
        })
    return jsonify({'success': True, 'leads': [lead.to_dict() for lead in lead_service.get_leads(user_id)]})


@leads_bp.route('', methods=['POST'])
@require_auth
def create_lead():
    lead = lead_service.add_lead(current_user().id, request.get_json(silent=True) or {})
    return jsonify({'success': True, 'lead': lead.to_dict()}), 201


@leads_bp.route('/<lead_id>', methods=['PUT', 'PATCH'])
@require_auth
def update_lead(lead_id):
    lead = lead_service.update_lead(current_user().id, lead_id, request.get_json(silent=True) or {})
    return jsonify({'success': True, 'lead': lead.to_dict()})


@leads_bp.route('/<lead_id>', methods=['DELETE'])
@require_auth
def delete_lead(lead_id):
    lead_service.delete_lead(current_user().id, lead_id)
    return jsonify({'success': True})


@leads_bp.route('/<lead_id>/send-email', methods=['POST'])
@require_auth
def email_lead(lead_id):
    data = request.get_json(silent=True) or {}
    result = mailer.send_lead_email(
        current_user().id,
        lead_id,
        data.get('smtp_account_id'),
        data.get('subject'),
        data.get('message'),
    )
    return jsonify(result.to_dict()), 200 if result.success else 400
