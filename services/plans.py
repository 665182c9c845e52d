# services/plans.py
"""
Subscription plans managed by admins
"""

import logging
from typing import Dict, List

from core.database_models import db, Plan
from services.errors import ValidationError, NotFoundError

logger = logging.getLogger(__name__)


def _as_number(data: Dict, field: str, cast, minimum):
    try:
        value = cast(data.get(field))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number.")
    if value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}.")
    return value


def validate_plan(data: Dict) -> Dict:
    """Check a plan form and return the cleaned values"""
    name = (data.get('name') or '').strip()
    if len(name) < 3:
        raise ValidationError("Plan name must be at least 3 characters.")
    return {
        'name': name,
        'duration_days': _as_number(data, 'duration_days', int, 1),
        'smtp_account_limit': _as_number(data, 'smtp_account_limit', int, 1),
        'price': _as_number(data, 'price', float, 0),
    }


def add_plan(data: Dict) -> Plan:
    plan = Plan(**validate_plan(data))
    db.session.add(plan)
    db.session.commit()
    logger.info(f"Created plan {plan.id} ({plan.name})")
    return plan


def get_plan(plan_id: str) -> Plan:
    plan = db.session.get(Plan, plan_id) if plan_id else None
    if not plan:
        raise NotFoundError("Plan not found.")
    return plan


def update_plan(plan_id: str, data: Dict) -> Plan:
    plan = get_plan(plan_id)
    merged = {**plan.to_dict(), **data}
    for field, value in validate_plan(merged).items():
        setattr(plan, field, value)
    db.session.commit()
    logger.info(f"Updated plan {plan_id}")
    return plan


def delete_plan(plan_id: str):
    plan = get_plan(plan_id)
    db.session.delete(plan)
    db.session.commit()
    logger.info(f"Deleted plan {plan_id}")


def get_plans() -> List[Plan]:
    return Plan.query.order_by(Plan.price.asc(), Plan.name.asc()).all()
