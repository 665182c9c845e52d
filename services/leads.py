# services/leads.py
"""
Lead pipeline (kanban board of contacts)
"""

import logging
from typing import Dict, List

from core.database_models import db, Lead
from services.errors import ValidationError, NotFoundError
from services.recipients import is_valid_email

logger = logging.getLogger(__name__)

LEAD_STATUSES = ('New', 'Active', 'Deal', 'Done')


def _clean(data: Dict, partial: bool = False) -> Dict:
    cleaned = {}
    if not partial or 'name' in data:
        name = (data.get('name') or '').strip()
        if len(name) < 2:
            raise ValidationError("Name must be at least 2 characters.")
        cleaned['name'] = name
    if not partial or 'email' in data:
        email = (data.get('email') or '').strip()
        if not is_valid_email(email):
            raise ValidationError("Please enter a valid email address.")
        cleaned['email'] = email
    if not partial or 'status' in data:
        status = data.get('status') or 'New'
        if status not in LEAD_STATUSES:
            raise ValidationError(f"Status must be one of {', '.join(LEAD_STATUSES)}.")
        cleaned['status'] = status
    for field in ('phone', 'note'):
        if field in data:
            cleaned[field] = (data.get(field) or '').strip() or None
    return cleaned


def add_lead(user_id: str, data: Dict) -> Lead:
    lead = Lead(user_id=user_id, **_clean(data))
    db.session.add(lead)
    db.session.commit()
    logger.info(f"Lead {lead.id} added for {user_id}")
    return lead


def get_leads(user_id: str) -> List[Lead]:
    return Lead.query.filter_by(user_id=user_id).order_by(Lead.created_at.desc()).all()


def get_leads_by_status(user_id: str) -> Dict[str, List[Lead]]:
    """Leads grouped for the board; every status has a column, empty or not"""
    board = {status: [] for status in LEAD_STATUSES}
    for lead in get_leads(user_id):
        board.setdefault(lead.status, []).append(lead)
    return board


def get_lead(user_id: str, lead_id: str) -> Lead:
    lead = Lead.query.filter_by(id=lead_id, user_id=user_id).first() if lead_id else None
    if not lead:
        raise NotFoundError("Lead not found.")
    return lead


def update_lead(user_id: str, lead_id: str, data: Dict) -> Lead:
    lead = get_lead(user_id, lead_id)
    for field, value in _clean(data, partial=True).items():
        setattr(lead, field, value)
    db.session.commit()
    return lead


def delete_lead(user_id: str, lead_id: str):
    lead = get_lead(user_id, lead_id)
    db.session.delete(lead)
    db.session.commit()
    logger.info(f"Lead {lead_id} deleted")
