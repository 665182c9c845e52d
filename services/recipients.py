# services/recipients.py
"""
Recipient lists and their addresses

Addresses keep their insertion order through Recipient.position; the campaign
dispatcher walks a list in that order.
"""

import csv
import io
import logging
import re
from typing import Iterable, List, Optional

from email_validator import validate_email, EmailNotValidError
from sqlalchemy import func

from core.database_models import db, Campaign, CampaignStatus, RecipientList, Recipient
from services.errors import ValidationError, NotFoundError, ConflictError

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r'[ ,;\n]+')

NO_VALID_EMAILS_MESSAGE = "No valid emails found."


def is_valid_email(address: str) -> bool:
    try:
        validate_email(address, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def parse_email_text(text: str) -> List[str]:
    """Split pasted text on spaces, commas, semicolons and newlines; keep valid addresses"""
    candidates = (part.strip() for part in _SEPARATORS.split(text or ''))
    return [address for address in candidates if address and is_valid_email(address)]


def parse_csv_emails(stream) -> List[str]:
    """
    Read addresses from the first column of a CSV upload

    Args:
        stream: Text or binary file object
    """
    content = stream.read()
    if isinstance(content, bytes):
        content = content.decode('utf-8-sig', errors='replace')

    emails = []
    for row in csv.reader(io.StringIO(content)):
        if not row:
            continue
        address = row[0].strip()
        if address and is_valid_email(address):
            emails.append(address)
    return emails


def _clean_emails(emails: Optional[Iterable[str]]) -> List[str]:
    """
    Keep the valid addresses of a submitted list

    Blank entries are skipped. Raises ValidationError when entries were
    submitted but none of them is a valid address.
    """
    submitted = [e.strip() if isinstance(e, str) else e for e in (emails or [])]
    submitted = [e for e in submitted if e not in (None, '')]
    valid = [e for e in submitted if isinstance(e, str) and is_valid_email(e)]
    if submitted and not valid:
        raise ValidationError(NO_VALID_EMAILS_MESSAGE)
    if len(valid) < len(submitted):
        logger.info(f"Skipped {len(submitted) - len(valid)} invalid addresses")
    return valid


def _validate_name(name: str) -> str:
    name = (name or '').strip()
    if not name:
        raise ValidationError("List name is required.")
    return name


def _append(recipient_list: RecipientList, emails: List[str]) -> int:
    start = db.session.query(func.coalesce(func.max(Recipient.position), -1)) \
        .filter(Recipient.list_id == recipient_list.id).scalar() if recipient_list.id else -1
    for offset, email in enumerate(emails, start=1):
        db.session.add(Recipient(list_id=recipient_list.id, email=email, position=start + offset))
    return len(emails)


def add_recipient_list(user_id: str, name: str, description: str = '',
                       emails: Optional[Iterable[str]] = None) -> RecipientList:
    """
    Create a list together with its recipients in one transaction

    Blank and invalid entries are skipped; count equals the number of stored
    recipients.
    """
    name = _validate_name(name)
    cleaned = _clean_emails(emails)
    recipient_list = RecipientList(
        user_id=user_id,
        name=name,
        description=(description or '').strip(),
        count=0,
    )
    db.session.add(recipient_list)
    db.session.flush()

    recipient_list.count = _append(recipient_list, cleaned)
    db.session.commit()

    logger.info(f"Recipient list {recipient_list.id} created with {recipient_list.count} recipients")
    return recipient_list


def get_recipient_lists(user_id: str) -> List[RecipientList]:
    return RecipientList.query.filter_by(user_id=user_id) \
        .order_by(RecipientList.created_at.desc()).all()


def get_recipient_list(user_id: str, list_id: str) -> RecipientList:
    recipient_list = RecipientList.query.filter_by(id=list_id, user_id=user_id).first() if list_id else None
    if not recipient_list:
        raise NotFoundError("Recipient list not found.")
    return recipient_list


def update_recipient_list(user_id: str, list_id: str, name: str, description: str = None) -> RecipientList:
    recipient_list = get_recipient_list(user_id, list_id)
    recipient_list.name = _validate_name(name)
    if description is not None:
        recipient_list.description = description.strip()
    db.session.commit()
    return recipient_list


def delete_recipient_list(user_id: str, list_id: str):
    recipient_list = get_recipient_list(user_id, list_id)
    _ensure_not_in_delivery(recipient_list)
    db.session.delete(recipient_list)
    db.session.commit()
    logger.info(f"Recipient list {list_id} deleted")


def get_recipients(user_id: str, list_id: str) -> List[Recipient]:
    get_recipient_list(user_id, list_id)
    return Recipient.query.filter_by(list_id=list_id).order_by(Recipient.position.asc()).all()


def get_recipients_for_list(user_id: str, list_id: str) -> List[str]:
    """Addresses of a list in insertion order, empty when the list is missing"""
    if not user_id or not list_id:
        return []
    rows = db.session.query(Recipient.email) \
        .join(RecipientList, Recipient.list_id == RecipientList.id) \
        .filter(RecipientList.id == list_id, RecipientList.user_id == user_id) \
        .order_by(Recipient.position.asc()).all()
    return [row.email for row in rows]


def _ensure_not_in_delivery(recipient_list: RecipientList):
    """
    Refuse removals while a campaign is part way through the list

    Delivery resumes at position sent_count + failed_count, so removing an
    earlier address would skip a later one.
    """
    active = Campaign.query.filter(
        Campaign.recipient_list_id == recipient_list.id,
        Campaign.status.in_((CampaignStatus.RUNNING, CampaignStatus.PAUSED)),
    ).first()
    if active:
        raise ConflictError(f'This list is used by campaign "{active.campaign_name}", which is '
                            f'{active.status.lower()}. Stop it before removing recipients.')


def _sync_count(recipient_list: RecipientList):
    recipient_list.count = Recipient.query.filter_by(list_id=recipient_list.id).count()


def add_recipients_to_list(user_id: str, list_id: str, emails: Iterable[str]) -> RecipientList:
    recipient_list = get_recipient_list(user_id, list_id)
    cleaned = _clean_emails(emails)
    if not cleaned:
        raise ValidationError(NO_VALID_EMAILS_MESSAGE)
    added = _append(recipient_list, cleaned)
    db.session.flush()
    _sync_count(recipient_list)
    db.session.commit()
    logger.info(f"Added {added} recipients to list {list_id}")
    return recipient_list


def delete_recipient(user_id: str, list_id: str, recipient_id: str) -> RecipientList:
    recipient_list = get_recipient_list(user_id, list_id)
    _ensure_not_in_delivery(recipient_list)
    recipient = Recipient.query.filter_by(id=recipient_id, list_id=list_id).first()
    if not recipient:
        raise NotFoundError("Recipient not found.")
    db.session.delete(recipient)
    db.session.flush()
    _sync_count(recipient_list)
    db.session.commit()
    return recipient_list
