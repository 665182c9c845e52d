# services/analytics.py
"""
Delivery analytics for the tracking page and the admin dashboard
Aggregates campaign counters with pandas; per-campaign metrics are cached
in Redis for a short TTL.
"""

import logging
import json
from typing import Any, Dict, Optional

import pandas as pd
import redis
from flask import current_app

from core.database_models import db, Campaign, CampaignFailure, User, Payment, utcnow
from services import campaigns as campaign_service
from services import recipients as recipient_service

logger = logging.getLogger(__name__)

CHART_CAMPAIGNS = 7
ACTIVITY_CAMPAIGNS = 4
CHART_NAME_LENGTH = 15


def _rate(part: float, total: float) -> Optional[float]:
    if not total:
        return None
    return round(part / total * 100, 1)


def _short_name(name: str) -> str:
    if len(name) > CHART_NAME_LENGTH:
        return f"{name[:CHART_NAME_LENGTH]}..."
    return name


def _campaigns_frame(user_id: str) -> pd.DataFrame:
    rows = db.session.query(
        Campaign.id, Campaign.campaign_name, Campaign.status,
        Campaign.sent_count, Campaign.failed_count, Campaign.created_at,
    ).filter(Campaign.user_id == user_id).all()

    df = pd.DataFrame([tuple(r) for r in rows], columns=['id', 'campaign_name', 'status', 'sent', 'failed', 'created_at'])
    if df.empty:
        return df
    df[['sent', 'failed']] = df[['sent', 'failed']].fillna(0).astype(int)
    return df.sort_values('created_at', ascending=False, kind='stable').reset_index(drop=True)


def get_tracking_summary(user_id: str) -> Dict[str, Any]:
    """
    KPIs, chart data and recent activity for a user's campaigns

    Rates are percentages with one decimal, None when nothing was delivered yet.
    Chart data covers the 7 most recent campaigns, oldest first.
    """
    df = _campaigns_frame(user_id)
    if df.empty:
        return {
            'total_sent': 0,
            'total_failed': 0,
            'delivery_rate': None,
            'failure_rate': None,
            'chart_data': [],
            'recent_activity': [],
        }

    total_sent = int(df['sent'].sum())
    total_failed = int(df['failed'].sum())
    total = total_sent + total_failed

    recent = df.head(CHART_CAMPAIGNS).iloc[::-1]
    chart_data = [
        {'name': _short_name(row.campaign_name), 'sent': int(row.sent), 'failed': int(row.failed)}
        for row in recent.itertuples(index=False)
    ]
    recent_activity = [
        {'campaign': row.campaign_name, 'status': row.status, 'sent': int(row.sent), 'failed': int(row.failed)}
        for row in df.head(ACTIVITY_CAMPAIGNS).itertuples(index=False)
    ]

    return {
        'total_sent': total_sent,
        'total_failed': total_failed,
        'delivery_rate': _rate(total_sent, total),
        'failure_rate': _rate(total_failed, total),
        'chart_data': chart_data,
        'recent_activity': recent_activity,
    }


def _cache():
    return current_app.extensions.get('redis')


def get_campaign_metrics(user_id: str, campaign_id: str, force_refresh: bool = False) -> Dict[str, Any]:
    """
    Progress and failure breakdown of one campaign

    Args:
        user_id: Owner, checked before anything is read
        campaign_id: Campaign identifier
        force_refresh: Skip the cache
    """
    campaign = campaign_service.get_campaign(user_id, campaign_id)
    cache_key = f"analytics:campaign:{campaign_id}"
    cache = _cache()

    if cache is not None and not force_refresh:
        try:
            cached = cache.get(cache_key)
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.warning(f"Analytics cache read failed: {str(e)}")

    failures = pd.DataFrame(
        [tuple(r) for r in db.session.query(CampaignFailure.bounce_category, CampaignFailure.smtp_code)
         .filter(CampaignFailure.campaign_id == campaign_id)],
        columns=['bounce_category', 'smtp_code'],
    )
    if failures.empty:
        by_category, by_code = {}, {}
    else:
        by_category = failures['bounce_category'].fillna('unknown').value_counts().to_dict()
        by_code = failures['smtp_code'].dropna().value_counts().to_dict()

    total = len(recipient_service.get_recipients_for_list(campaign.user_id, campaign.recipient_list_id))
    processed = campaign.processed_count
    sent = campaign.sent_count or 0
    metrics = {
        'campaign_id': campaign.id,
        'status': campaign.status,
        'total_recipients': total,
        'sent_count': sent,
        'failed_count': campaign.failed_count or 0,
        'remaining': max(total - processed, 0),
        'progress_percent': round(processed / total * 100, 1) if total else 0.0,
        'delivery_rate': _rate(sent, processed),
        'failures_by_category': {str(k): int(v) for k, v in by_category.items()},
        'failures_by_smtp_code': {str(k): int(v) for k, v in by_code.items()},
        'started_at': campaign.started_at.isoformat() if campaign.started_at else None,
        'completed_at': campaign.completed_at.isoformat() if campaign.completed_at else None,
        'generated_at': utcnow().isoformat(),
    }

    if cache is not None:
        try:
            cache.setex(cache_key, current_app.config.get('ANALYTICS_CACHE_TTL', 60), json.dumps(metrics))
        except redis.RedisError as e:
            logger.warning(f"Failed to cache analytics: {str(e)}")

    return metrics


def get_admin_dashboard() -> Dict[str, Any]:
    """User and payment totals for the admin dashboard"""
    users = pd.DataFrame([tuple(r) for r in db.session.query(User.subscription_status)], columns=['status'])
    payments = pd.DataFrame([tuple(r) for r in db.session.query(Payment.status, Payment.price)],
                            columns=['status', 'price'])

    approved = payments[payments['status'] == 'approved'] if not payments.empty else payments
    return {
        'total_users': int(len(users)),
        'active_users': int(users['status'].isin(['active', 'trial']).sum()) if not users.empty else 0,
        'pending_payments': int((payments['status'] == 'pending').sum()) if not payments.empty else 0,
        'approved_payments': int(len(approved)),
        'revenue': round(float(approved['price'].sum()), 2) if not approved.empty else 0.0,
    }
