# services/campaigns.py
"""
Campaign records and their lifecycle

Draft/Scheduled -> Running <-> Paused -> Completed, with Failed when the
dispatcher hits an unexpected error. Only one campaign per user runs at a
time. Delivery itself happens in services/dispatcher.py.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from core.database_models import (
    db, Campaign, CampaignFailure, CampaignStatus, SmtpAccount, RecipientList, new_id, utcnow
)
from core.events import emit_update, campaign_room, user_room
from core.template_engine import get_template_engine
from services import users as user_service
from services.errors import ValidationError, NotFoundError, ConflictError, PermissionDenied

logger = logging.getLogger(__name__)

STARTABLE = (CampaignStatus.DRAFT, CampaignStatus.PAUSED, CampaignStatus.SCHEDULED, CampaignStatus.FAILED)
STOPPABLE = (CampaignStatus.RUNNING, CampaignStatus.PAUSED, CampaignStatus.SCHEDULED)

EDITABLE_FIELDS = (
    'campaign_name', 'email_subject', 'email_body', 'email_variants', 'smtp_account_id',
    'recipient_list_id', 'schedule_send', 'scheduled_at', 'delay', 'speed_limit',
)


def enqueue_campaign_step(campaign_id: str, token: str, attempt: int = 1, countdown: float = 0):
    """Queue the next dispatcher step on the Celery worker"""
    from tasks.email_sender import run_campaign_step
    run_campaign_step.apply_async(args=[campaign_id, attempt, token], countdown=max(0, countdown))


def _parse_scheduled_at(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            raise ValidationError("Scheduled time is not a valid date.")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _non_negative_int(data: Dict, field: str, label: str) -> int:
    value = data.get(field)
    if value in (None, ''):
        return 0
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be a whole number.")
    if number != float(value) or number < 0:
        raise ValidationError(f"{label} must be a whole number of 0 or more.")
    return number


def _check_template(content: str, label: str):
    errors = get_template_engine().validate_template(content)
    if errors:
        raise ValidationError(f"{label} has a template error on line {errors[0]['line']}: {errors[0]['message']}")


def _clean_variants(variants) -> List[Dict[str, str]]:
    if not variants:
        return []
    if not isinstance(variants, list):
        raise ValidationError("Email variants must be a list.")
    cleaned = []
    for index, variant in enumerate(variants, start=1):
        if not isinstance(variant, dict):
            raise ValidationError(f"Variant {index} must have a subject and a body.")
        subject = (variant.get('subject') or '').strip()
        body = (variant.get('body') or '').strip()
        if len(subject) < 5:
            raise ValidationError(f"Variant {index} subject must be at least 5 characters.")
        if len(body) < 20:
            raise ValidationError(f"Variant {index} body must be at least 20 characters.")
        _check_template(subject, f"Variant {index} subject")
        _check_template(body, f"Variant {index} body")
        cleaned.append({'subject': subject, 'body': body})
    return cleaned


def validate_campaign(user_id: str, data: Dict) -> Dict:
    """
    Check a campaign form and return the cleaned values

    Raises:
        ValidationError: on the first invalid field
    """
    name = (data.get('campaign_name') or '').strip()
    if len(name) < 3:
        raise ValidationError("Campaign name must be at least 3 characters.")
    subject = (data.get('email_subject') or '').strip()
    if len(subject) < 5:
        raise ValidationError("Subject must be at least 5 characters.")
    body = (data.get('email_body') or '').strip()
    if len(body) < 20:
        raise ValidationError("Email body must be at least 20 characters.")
    _check_template(subject, "Subject")
    _check_template(body, "Email body")

    smtp_account_id = data.get('smtp_account_id')
    if not smtp_account_id or not SmtpAccount.query.filter_by(id=smtp_account_id, user_id=user_id).first():
        raise ValidationError("Please select one of your SMTP accounts.")
    recipient_list_id = data.get('recipient_list_id')
    if not recipient_list_id or not RecipientList.query.filter_by(id=recipient_list_id, user_id=user_id).first():
        raise ValidationError("Please select one of your recipient lists.")

    schedule_send = bool(data.get('schedule_send'))
    scheduled_at = _parse_scheduled_at(data.get('scheduled_at')) if schedule_send else None
    if schedule_send and not scheduled_at:
        raise ValidationError("A scheduled time is required when scheduling a campaign.")

    return {
        'campaign_name': name,
        'email_subject': subject,
        'email_body': body,
        'email_variants': _clean_variants(data.get('email_variants')),
        'smtp_account_id': smtp_account_id,
        'recipient_list_id': recipient_list_id,
        'schedule_send': schedule_send,
        'scheduled_at': scheduled_at,
        'delay': _non_negative_int(data, 'delay', 'Delay'),
        'speed_limit': _non_negative_int(data, 'speed_limit', 'Speed limit'),
    }


def _initial_status(fields: Dict) -> str:
    if fields['schedule_send'] and fields['scheduled_at']:
        return CampaignStatus.SCHEDULED
    return CampaignStatus.DRAFT


def _broadcast(campaign: Campaign, event: str = 'campaign_status'):
    data = {
        'campaign_id': campaign.id,
        'status': campaign.status,
        'sent_count': campaign.sent_count or 0,
        'failed_count': campaign.failed_count or 0,
        'last_error': campaign.last_error,
    }
    emit_update(campaign_room(campaign.id), event, data)
    emit_update(user_room(campaign.user_id), event, data)


def add_campaign(user_id: str, data: Dict) -> Campaign:
    fields = validate_campaign(user_id, data)
    campaign = Campaign(user_id=user_id, status=_initial_status(fields), sent_count=0, failed_count=0, **fields)
    db.session.add(campaign)
    db.session.commit()
    logger.info(f"Campaign {campaign.id} created by {user_id} with status {campaign.status}")
    return campaign


def get_campaigns(user_id: str) -> List[Campaign]:
    return Campaign.query.filter_by(user_id=user_id).order_by(Campaign.created_at.desc()).all()


def get_campaign(user_id: str, campaign_id: str) -> Campaign:
    campaign = Campaign.query.filter_by(id=campaign_id, user_id=user_id).first() if campaign_id else None
    if not campaign:
        raise NotFoundError("Campaign not found.")
    return campaign


def update_campaign(user_id: str, campaign_id: str, data: Dict) -> Campaign:
    campaign = get_campaign(user_id, campaign_id)
    if campaign.status == CampaignStatus.RUNNING:
        raise ConflictError("Pause the campaign before editing it.")

    current = {field: getattr(campaign, field) for field in EDITABLE_FIELDS}
    current.update({k: v for k, v in data.items() if k in EDITABLE_FIELDS})
    if current['recipient_list_id'] != campaign.recipient_list_id and campaign.processed_count:
        # Delivery position is an index into the list
        raise ConflictError("The recipient list cannot be changed after sending has started.")
    fields = validate_campaign(user_id, current)
    for field, value in fields.items():
        setattr(campaign, field, value)
    if campaign.status in (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED):
        campaign.status = _initial_status(fields)
    db.session.commit()
    logger.info(f"Campaign {campaign_id} updated")
    return campaign


def delete_campaign(user_id: str, campaign_id: str):
    campaign = get_campaign(user_id, campaign_id)
    if campaign.status == CampaignStatus.RUNNING:
        raise ConflictError("A running campaign cannot be deleted. Stop it first.")
    db.session.delete(campaign)
    db.session.commit()
    logger.info(f"Campaign {campaign_id} deleted")


def _ensure_can_run(campaign: Campaign):
    user = user_service.require_user(campaign.user_id)
    if not user_service.can_send(user):
        raise PermissionDenied("Your subscription does not allow sending. Please renew your plan.")
    running = Campaign.query.filter(
        Campaign.user_id == campaign.user_id,
        Campaign.status == CampaignStatus.RUNNING,
        Campaign.id != campaign.id,
    ).first()
    if running:
        raise ConflictError(f'Campaign "{running.campaign_name}" is already running. '
                            'Pause or stop it before starting another.')


def _launch(campaign: Campaign) -> Campaign:
    campaign.status = CampaignStatus.RUNNING
    campaign.started_at = campaign.started_at or utcnow()
    campaign.completed_at = None
    campaign.last_error = None
    campaign.dispatch_token = new_id()
    db.session.commit()

    _broadcast(campaign)
    enqueue_campaign_step(campaign.id, campaign.dispatch_token)
    return campaign


def start_campaign(user_id: str, campaign_id: str) -> Campaign:
    """
    Begin (or restart) delivery of a campaign

    Restarting a Failed or Paused campaign continues after the recipients
    already processed.
    """
    campaign = get_campaign(user_id, campaign_id)
    if campaign.status not in STARTABLE:
        raise ConflictError(f"A {campaign.status.lower()} campaign cannot be started.")
    _ensure_can_run(campaign)
    logger.info(f"Starting campaign {campaign_id} from status {campaign.status}")
    return _launch(campaign)


def pause_campaign(user_id: str, campaign_id: str) -> Campaign:
    campaign = get_campaign(user_id, campaign_id)
    if campaign.status != CampaignStatus.RUNNING:
        raise ConflictError("Only a running campaign can be paused.")
    campaign.status = CampaignStatus.PAUSED
    campaign.dispatch_token = None
    db.session.commit()
    _broadcast(campaign)
    logger.info(f"Campaign {campaign_id} paused at {campaign.processed_count} recipients")
    return campaign


def resume_campaign(user_id: str, campaign_id: str) -> Campaign:
    campaign = get_campaign(user_id, campaign_id)
    if campaign.status != CampaignStatus.PAUSED:
        raise ConflictError("Only a paused campaign can be resumed.")
    _ensure_can_run(campaign)
    logger.info(f"Resuming campaign {campaign_id}")
    return _launch(campaign)


def stop_campaign(user_id: str, campaign_id: str) -> Campaign:
    campaign = get_campaign(user_id, campaign_id)
    if campaign.status not in STOPPABLE:
        raise ConflictError(f"A {campaign.status.lower()} campaign cannot be stopped.")
    campaign.status = CampaignStatus.COMPLETED
    campaign.completed_at = utcnow()
    campaign.dispatch_token = None
    db.session.commit()
    _broadcast(campaign)
    logger.info(f"Campaign {campaign_id} stopped")
    return campaign


def log_campaign_failure(campaign: Campaign, recipient_email: str, error: str,
                         smtp_code: Optional[str] = None, attempts: int = 1,
                         bounce_category: Optional[str] = None) -> CampaignFailure:
    """Record a recipient that could not be delivered and count it against the campaign"""
    failure = CampaignFailure(
        campaign_id=campaign.id,
        recipient_email=recipient_email,
        error=error,
        smtp_code=smtp_code,
        bounce_category=bounce_category,
        attempts=attempts,
    )
    campaign.failed_count = (campaign.failed_count or 0) + 1
    db.session.add(failure)
    db.session.commit()
    logger.warning(f"Campaign {campaign.id}: delivery to {recipient_email} failed after "
                   f"{attempts} attempt(s): {error}")
    return failure


def get_campaign_failures(user_id: str, campaign_id: str) -> List[CampaignFailure]:
    get_campaign(user_id, campaign_id)
    return CampaignFailure.query.filter_by(campaign_id=campaign_id) \
        .order_by(CampaignFailure.failed_at.desc()).all()


def due_scheduled_campaigns(now: datetime = None) -> List[Campaign]:
    now = now or utcnow()
    return Campaign.query.filter(
        Campaign.status == CampaignStatus.SCHEDULED,
        Campaign.scheduled_at.isnot(None),
        Campaign.scheduled_at <= now,
    ).order_by(Campaign.scheduled_at.asc()).all()


def launch_scheduled_campaign(campaign: Campaign) -> bool:
    """
    Promote a due Scheduled campaign to Running

    Returns:
        False when the campaign cannot run yet (another campaign is running or
        the subscription does not allow sending); it stays Scheduled and the
        reason is kept in last_error.
    """
    try:
        _ensure_can_run(campaign)
    except (ConflictError, PermissionDenied) as e:
        if campaign.last_error != e.message:
            campaign.last_error = e.message
            db.session.commit()
        logger.info(f"Scheduled campaign {campaign.id} deferred: {e.message}")
        return False
    _launch(campaign)
    logger.info(f"Scheduled campaign {campaign.id} launched")
    return True
