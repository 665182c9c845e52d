# test_tasks.py
"""Tests for the Celery task wiring"""

from datetime import timedelta

from conftest import campaign_data
from core.database_models import CampaignStatus, utcnow
from services import campaigns as campaign_service
from services import users as user_service
from services.campaigns import enqueue_campaign_step
from tasks.email_sender import (
    celery_app, dispatch_scheduled_campaigns, expire_subscriptions_task, run_campaign_step,
)


def test_flask_app_configures_celery(app):
    assert app.extensions['celery'] is celery_app
    assert celery_app.conf.task_always_eager
    assert 'dispatch-scheduled-campaigns' in celery_app.conf.beat_schedule
    assert celery_app.conf.task_routes['tasks.email_sender.run_campaign_step'] == {'queue': 'email_sending'}


def test_step_task_sends_and_queues_the_next_step(user, campaign, smtp_server, enqueued):
    campaign_service.start_campaign(user.id, campaign.id)
    token = campaign.dispatch_token
    enqueued.clear()

    result = run_campaign_step(campaign.id, 1, token)

    assert result['reschedule']
    assert result['reason'] == 'sent'
    assert smtp_server.recipients == ['first@example.com']
    assert enqueued == [(campaign.id, token, 1, 0.0)]


def test_step_task_stops_a_finished_chain(user, campaign, smtp_server, enqueued):
    campaign_service.start_campaign(user.id, campaign.id)
    campaign_service.stop_campaign(user.id, campaign.id)
    enqueued.clear()

    result = run_campaign_step(campaign.id, 1, None)

    assert not result['reschedule']
    assert enqueued == []


def test_enqueue_runs_the_task_eagerly(user, campaign, smtp_server, enqueued):
    campaign_service.start_campaign(user.id, campaign.id)
    enqueued.clear()

    enqueue_campaign_step(campaign.id, campaign.dispatch_token)

    assert smtp_server.recipients == ['first@example.com']
    assert len(enqueued) == 1


def test_scheduler_task_launches_due_campaigns(user, smtp_account, recipient_list, enqueued):
    campaign = campaign_service.add_campaign(user.id, campaign_data(
        smtp_account, recipient_list, schedule_send=True,
        scheduled_at=(utcnow() - timedelta(minutes=5)).isoformat(),
    ))

    assert dispatch_scheduled_campaigns() == {'launched': 1, 'deferred': 0}
    assert campaign.status == CampaignStatus.RUNNING
    assert len(enqueued) == 1


def test_scheduler_task_defers_when_subscription_lapsed(user, smtp_account, recipient_list, enqueued):
    campaign = campaign_service.add_campaign(user.id, campaign_data(
        smtp_account, recipient_list, schedule_send=True,
        scheduled_at=(utcnow() - timedelta(minutes=5)).isoformat(),
    ))
    user_service.update_user_subscription(user.id, {'status': 'expired'})

    assert dispatch_scheduled_campaigns() == {'launched': 0, 'deferred': 1}
    assert campaign.status == CampaignStatus.SCHEDULED
    assert enqueued == []


def test_expiry_task(user):
    user_service.update_user_subscription(user.id, {'end_date': utcnow() - timedelta(hours=1)})

    assert expire_subscriptions_task() == {'expired': 1}
    assert user.subscription_status == 'expired'
