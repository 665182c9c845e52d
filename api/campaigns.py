# api/campaigns.py
"""
Campaign API: CRUD, lifecycle controls, failures and metrics
"""

from flask import Blueprint, request, jsonify
import logging

from middleware.security import require_auth, current_user
from services import analytics as analytics_service
from services import campaigns as campaign_service
from services import mailer

campaigns_bp = Blueprint('campaigns', __name__)
logger = logging.getLogger(__name__)


def _payload():
    return request.get_json(silent=True) or {}


@campaigns_bp.route('', methods=['GET'])
@require_auth
def list_campaigns():
    campaigns = campaign_service.get_campaigns(current_user().id)
    return jsonify({'success': True, 'campaigns': [c.to_dict() for c in campaigns]})


@campaigns_bp.route('', methods=['POST'])
@require_auth
def create_campaign():
    campaign = campaign_service.add_campaign(current_user().id, _payload())
    return jsonify({'success': True, 'campaign': campaign.to_dict()}), 201


@campaigns_bp.route('/<campaign_id>', methods=['GET'])
@require_auth
def get_campaign(campaign_id):
    campaign = campaign_service.get_campaign(current_user().id, campaign_id)
    return jsonify({'success': True, 'campaign': campaign.to_dict()})


@campaigns_bp.route('/<campaign_id>', methods=['PUT', 'PATCH'])
@require_auth
def update_campaign(campaign_id):
    campaign = campaign_service.update_campaign(current_user().id, campaign_id, _payload())
    return jsonify({'success': True, 'campaign': campaign.to_dict()})


@campaigns_bp.route('/<campaign_id>', methods=['DELETE'])
@require_auth
def delete_campaign(campaign_id):
    campaign_service.delete_campaign(current_user().id, campaign_id)
    return jsonify({'success': True})


_LIFECYCLE = {
    'start': campaign_service.start_campaign,
    'pause': campaign_service.pause_campaign,
    'resume': campaign_service.resume_campaign,
    'stop': campaign_service.stop_campaign,
}


@campaigns_bp.route('/<campaign_id>/<action>', methods=['POST'])
@require_auth
def control_campaign(campaign_id, action):
    """Start, pause, resume or stop a campaign"""
    handler = _LIFECYCLE.get(action)
    if handler is None:
        return jsonify({'success': False, 'error': f"Unknown campaign action '{action}'."}), 404
    campaign = handler(current_user().id, campaign_id)
    return jsonify({'success': True, 'campaign': campaign.to_dict()})


@campaigns_bp.route('/<campaign_id>/failures', methods=['GET'])
@require_auth
def campaign_failures(campaign_id):
    failures = campaign_service.get_campaign_failures(current_user().id, campaign_id)
    return jsonify({'success': True, 'failures': [f.to_dict() for f in failures]})


@campaigns_bp.route('/<campaign_id>/metrics', methods=['GET'])
@require_auth
def campaign_metrics(campaign_id):
    force_refresh = request.args.get('refresh', 'false').lower() == 'true'
    metrics = analytics_service.get_campaign_metrics(current_user().id, campaign_id, force_refresh)
    return jsonify({'success': True, 'metrics': metrics})


@campaigns_bp.route('/send-email', methods=['POST'])
@require_auth
def send_email():
    """Send one campaign email right away (used for previews)"""
    data = _payload()
    result = mailer.send_campaign_email(
        data.get('to'),
        data.get('subject'),
        data.get('html'),
        current_user().id,
        data.get('smtp_account_id'),
    )
    return jsonify(result.to_dict()), 200 if result.success else 400
