# api/recipients.py
"""
Recipient list API

Lists can be created from a JSON array of addresses, from pasted text
(addresses separated by spaces, commas, semicolons or newlines) or from a
CSV upload whose first column holds the addresses.
"""

from flask import Blueprint, request, jsonify
import logging
from typing import List

from middleware.security import require_auth, current_user
from services import recipients as recipient_service
from services.errors import ValidationError

recipients_bp = Blueprint('recipients', __name__)
logger = logging.getLogger(__name__)


def _submitted_emails(data) -> List[str]:
    """Addresses from a CSV upload, pasted text or a JSON list, in that order of preference"""
    upload = request.files.get('file')
    if upload is not None and upload.filename:
        if not upload.filename.lower().endswith('.csv'):
            raise ValidationError("Please upload a .csv file.")
        emails = recipient_service.parse_csv_emails(upload.stream)
        if not emails:
            raise ValidationError("No valid emails found in the CSV file.")
        return emails

    if data.get('text'):
        if not isinstance(data['text'], str):
            raise ValidationError("Pasted emails must be text.")
        emails =recipient_service.parse_email_text(data['text'])
        if not emails:
            raise ValidationError("Please paste at least one valid email.")
        return emails

    emails = data.get('emails') or []
    if not isinstance(emails, list):
        raise ValidationError("Emails must be a list of addresses.")
    return emails


def _form_or_json():
    if request.files or request.form:
        return request.form.to_dict()
    return request.get_json(silent=True) or {}


@recipients_bp.route('', methods=['GET'])
@require_auth
def list_recipient_lists():
    lists = recipient_service.get_recipient_lists(current_user().id)
    return jsonify({'success': True, 'lists': [rl.to_dict() for rl in lists]})


@recipients_bp.route('', methods=['POST'])
@require_auth
def create_recipient_list():
    data = _form_or_json()
    recipient_list = recipient_service.add_recipient_list(
        current_user().id,
        data.get('name'),
        data.get('description') or '',
        _submitted_emails(data),
    )
    return jsonify({'success': True, 'list': recipient_list.to_dict()}), 201


@recipients_bp.route('/<list_id>', methods=['GET'])
@require_auth
def get_recipient_list(list_id):
    recipient_list = recipient_service.get_recipient_list(current_user().id, list_id)
    return jsonify({'success': True, 'list': recipient_list.to_dict()})


@recipients_bp.route('/<list_id>', methods=['PUT', 'PATCH'])
@require_auth
def update_recipient_list(list_id):
    data = request.get_json(silent=True) or {}
    recipient_list = recipient_service.update_recipient_list(
        current_user().id, list_id, data.get('name'), data.get('description')
    )
    return jsonify({'success': True, 'list': recipient_list.to_dict()})


@recipients_bp.route('/<list_id>', methods=['DELETE'])
@require_auth
def delete_recipient_list(list_id):
    recipient_service.delete_recipient_list(current_user().id, list_id)
    return jsonify({'success': True})


@recipients_bp.route('/<list_id>/recipients', methods=['GET'])
@require_auth
def list_recipients(list_id):
    recipients = recipient_service.get_recipients(current_user().id, list_id)
    return jsonify({'success': True, 'recipients': [r.to_dict() for r in recipients]})


@recipients_bp.route('/<list_id>/recipients', methods=['POST'])
@require_auth
def add_recipients(list_id):
    recipient_list = recipient_service.add_recipients_to_list(
        current_user().id, list_id, _submitted_emails(_form_or_json())
    )
    return jsonify({'success': True, 'list': recipient_list.to_dict()}), 201


@recipients_bp.route('/<list_id>/recipients/<recipient_id>', methods=['DELETE'])
@require_auth
def delete_recipient(list_id, recipient_id):
    recipient_list = recipient_service.delete_recipient(current_user().id, list_id, recipient_id)
    return jsonify({'success': True, 'list': recipient_list.to_dict()})
