# services/payments.py
"""
Manual payment submissions and their admin review

Approving a payment activates the subscription it paid for; the payment and
the subscription are written in the same transaction.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from core.database_models import db, Payment, User, Plan, utcnow
from core.security_manager import get_security_manager
from services.errors import ValidationError, NotFoundError, ConflictError

logger = logging.getLogger(__name__)

PAYMENT_STATUSES = ('pending', 'approved', 'rejected')


def submit_payment(user_id: str, plan_id: str, transaction_id: str) -> Payment:
    """
    Record a payment claim for review

    Args:
        user_id: Paying user
        plan_id: Plan being purchased
        transaction_id: Reference from the payment provider, at least 5 characters
    """
    transaction_id = (transaction_id or '').strip()
    if len(transaction_id) < 5:
        raise ValidationError("Transaction ID must be at least 5 characters.")

    user = db.session.get(User, user_id) if user_id else None
    if not user:
        raise NotFoundError("User not found.")
    plan = db.session.get(Plan, plan_id) if plan_id else None
    if not plan:
        raise NotFoundError("Plan not found.")

    payment = Payment(
        user_id=user.id,
        user_email=user.email,
        plan_id=plan.id,
        plan_name=plan.name,
        price=plan.price,
        transaction_id=transaction_id,
        status='pending',
    )
    db.session.add(payment)
    if user.subscription_status:
        user.subscription_status = 'pending'
    db.session.commit()

    logger.info(f"Payment {payment.id} submitted by {user.id} for plan {plan.name}")
    return payment


def get_payments(status: Optional[str] = None) -> List[Payment]:
    query = Payment.query
    if status:
        if status not in PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status: {status}")
        query = query.filter_by(status=status)
    return query.order_by(Payment.submitted_at.desc()).all()


def get_user_payments(user_id: str) -> List[Payment]:
    return Payment.query.filter_by(user_id=user_id).order_by(Payment.submitted_at.desc()).all()


def _pending_payment(payment_id: str) -> Payment:
    payment = db.session.get(Payment, payment_id) if payment_id else None
    if not payment:
        raise NotFoundError("Payment not found.")
    if payment.status != 'pending':
        raise ConflictError(f"Payment has already been {payment.status}.")
    return payment


def approve_payment(payment_id: str) -> Payment:
    """
    Approve a pending payment and activate the user's subscription

    The subscription runs from now for the plan's duration.
    """
    payment = _pending_payment(payment_id)
    plan = db.session.get(Plan, payment.plan_id)
    if not plan:
        raise NotFoundError("Plan for this payment no longer exists.")
    user = db.session.get(User, payment.user_id)
    if not user:
        raise NotFoundError("User not found.")

    now = utcnow()
    try:
        payment.status = 'approved'
        payment.reviewed_at = now
        user.subscription_plan_id = plan.id
        user.subscription_plan_name = plan.name
        user.subscription_status = 'active'
        user.subscription_start = now
        user.subscription_end = now + timedelta(days=plan.duration_days)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error(f"Failed to approve payment {payment_id}", exc_info=True)
        raise

    get_security_manager().log_security_event('payment_approved', {
        'payment_id': payment.id, 'target_user_id': user.id, 'plan_id': plan.id
    })
    logger.info(f"Payment {payment_id} approved, user {user.id} active until {user.subscription_end.isoformat()}")
    return payment


def reject_payment(payment_id: str) -> Payment:
    payment = _pending_payment(payment_id)
    payment.status = 'rejected'
    payment.reviewed_at = utcnow()

    user = db.session.get(User, payment.user_id)
    if user and user.subscription_status == 'pending':
        user.subscription_status = 'rejected'
    db.session.commit()

    get_security_manager().log_security_event('payment_rejected', {
        'payment_id': payment.id, 'target_user_id': payment.user_id
    })
    logger.info(f"Payment {payment_id} rejected")
    return payment
