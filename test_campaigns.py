# test_campaigns.py
"""Tests for campaign validation and lifecycle transitions"""

from datetime import timedelta

import pytest

from conftest import campaign_data
from core.database_models import CampaignStatus, db, utcnow
from services import campaigns as campaign_service
from services import recipients as recipient_service
from services import users as user_service
from services.errors import ConflictError, NotFoundError, PermissionDenied, ValidationError


def test_new_campaign_is_a_draft(campaign):
    assert campaign.status == CampaignStatus.DRAFT
    assert campaign.sent_count == 0
    assert campaign.failed_count == 0
    assert campaign.dispatch_token is None


def test_campaign_with_schedule_is_scheduled(user, smtp_account, recipient_list):
    campaign = campaign_service.add_campaign(user.id, campaign_data(
        smtp_account, recipient_list, schedule_send=True, scheduled_at='2030-05-01T09:00:00+02:00',
    ))

    assert campaign.status == CampaignStatus.SCHEDULED
    assert campaign.scheduled_at.hour == 7
    assert campaign.scheduled_at.tzinfo is None


@pytest.mark.parametrize('overrides', [
    {'campaign_name': 'ab'},
    {'email_subject': 'Hey'},
    {'email_body': '<p>Too short</p>'},
    {'email_body': '<p>{% if email %}never closed, never closed</p>'},
    {'delay': -1},
    {'delay': 1.5},
    {'speed_limit': 'fast'},
    {'schedule_send': True, 'scheduled_at': None},
    {'scheduled_at': 'tomorrow', 'schedule_send': True},
    {'email_variants': [{'subject': 'Variant', 'body': 'short'}]},
])
def test_invalid_campaigns_are_rejected(user, smtp_account, recipient_list, overrides):
    with pytest.raises(ValidationError):
        campaign_service.add_campaign(user.id, campaign_data(smtp_account, recipient_list, **overrides))


def test_campaign_must_use_own_resources(other_user, smtp_account, recipient_list):
    with pytest.raises(ValidationError):
        campaign_service.add_campaign(other_user.id, campaign_data(smtp_account, recipient_list))


def test_campaigns_are_private_to_their_owner(other_user, campaign):
    with pytest.raises(NotFoundError):
        campaign_service.get_campaign(other_user.id, campaign.id)
    with pytest.raises(NotFoundError):
        campaign_service.start_campaign(other_user.id, campaign.id)


def test_start_runs_the_campaign_and_queues_a_step(user, campaign, enqueued, emitted):
    campaign_service.start_campaign(user.id, campaign.id)

    assert campaign.status == CampaignStatus.RUNNING
    assert campaign.started_at is not None
    assert campaign.dispatch_token
    assert enqueued == [(campaign.id, campaign.dispatch_token, 1, 0)]
    assert (f'campaign_{campaign.id}', 'campaign_status') in [(room, event) for room, event, _ in emitted]


def test_pause_resume_and_stop(user, campaign, enqueued):
    campaign_service.start_campaign(user.id, campaign.id)
    first_token = campaign.dispatch_token

    campaign_service.pause_campaign(user.id, campaign.id)
    assert campaign.status == CampaignStatus.PAUSED
    assert campaign.dispatch_token is None

    campaign_service.resume_campaign(user.id, campaign.id)
    assert campaign.status == CampaignStatus.RUNNING
    assert campaign.dispatch_token not in (None, first_token)
    assert len(enqueued) == 2

    campaign_service.stop_campaign(user.id, campaign.id)
    assert campaign.status == CampaignStatus.COMPLETED
    assert campaign.completed_at is not None
    assert campaign.dispatch_token is None


def test_invalid_transitions_conflict(user, campaign):
    with pytest.raises(ConflictError):
        campaign_service.pause_campaign(user.id, campaign.id)
    with pytest.raises(ConflictError):
        campaign_service.resume_campaign(user.id, campaign.id)
    with pytest.raises(ConflictError):
        campaign_service.stop_campaign(user.id, campaign.id)

    campaign_service.start_campaign(user.id, campaign.id)
    with pytest.raises(ConflictError):
        campaign_service.start_campaign(user.id, campaign.id)

    campaign_service.stop_campaign(user.id, campaign.id)
    with pytest.raises(ConflictError):
        campaign_service.start_campaign(user.id, campaign.id)


def test_only_one_campaign_runs_per_user(user, smtp_account, recipient_list, campaign):
    second = campaign_service.add_campaign(user.id, campaign_data(smtp_account, recipient_list,
                                                                  campaign_name='Second wave'))
    campaign_service.start_campaign(user.id, campaign.id)

    with pytest.raises(ConflictError) as exc_info:
        campaign_service.start_campaign(user.id, second.id)

    assert 'Spring launch' in exc_info.value.message


def test_expired_subscription_cannot_start(user, campaign, enqueued):
    user_service.update_user_subscription(user.id, {'end_date': utcnow() - timedelta(seconds=1)})

    with pytest.raises(PermissionDenied):
        campaign_service.start_campaign(user.id, campaign.id)

    assert campaign.status == CampaignStatus.DRAFT
    assert enqueued == []


def test_running_campaign_cannot_be_edited_or_deleted(user, campaign):
    campaign_service.start_campaign(user.id, campaign.id)

    with pytest.raises(ConflictError):
        campaign_service.update_campaign(user.id, campaign.id, {'campaign_name': 'Renamed'})
    with pytest.raises(ConflictError):
        campaign_service.delete_campaign(user.id, campaign.id)


def test_update_merges_fields_and_reschedules(user, campaign):
    campaign_service.update_campaign(user.id, campaign.id, {
        'campaign_name': 'Renamed launch',
        'schedule_send': True,
        'scheduled_at': '2030-01-01T00:00:00',
    })

    assert campaign.campaign_name == 'Renamed launch'
    assert campaign.email_subject == 'Hello {{ email }}'
    assert campaign.status == CampaignStatus.SCHEDULED


def test_delete_campaign(user, campaign):
    campaign_service.delete_campaign(user.id, campaign.id)

    assert campaign_service.get_campaigns(user.id) == []


def test_failures_are_logged_and_counted(user, campaign):
    campaign_service.log_campaign_failure(campaign, 'bad@example.com', 'User unknown', '550',
                                          bounce_category='invalid_recipient')

    failures = campaign_service.get_campaign_failures(user.id, campaign.id)

    assert campaign.failed_count == 1
    assert failures[0].recipient_email == 'bad@example.com'
    assert failures[0].to_dict()['smtp_code'] == '550'


def test_due_scheduled_campaign_is_launched(user, smtp_account, recipient_list, enqueued):
    campaign = campaign_service.add_campaign(user.id, campaign_data(
        smtp_account, recipient_list, schedule_send=True,
        scheduled_at=(utcnow() - timedelta(minutes=1)).isoformat(),
    ))

    due = campaign_service.due_scheduled_campaigns()

    assert due == [campaign]
    assert campaign_service.launch_scheduled_campaign(campaign)
    assert campaign.status == CampaignStatus.RUNNING
    assert len(enqueued) == 1


def test_future_schedule_is_not_due(user, smtp_account, recipient_list):
    campaign_service.add_campaign(user.id, campaign_data(
        smtp_account, recipient_list, schedule_send=True,
        scheduled_at=(utcnow() + timedelta(hours=1)).isoformat(),
    ))

    assert campaign_service.due_scheduled_campaigns() == []


def test_scheduled_campaign_waits_for_running_one(user, smtp_account, recipient_list, campaign, enqueued):
    campaign_service.start_campaign(user.id, campaign.id)
    scheduled = campaign_service.add_campaign(user.id, campaign_data(
        smtp_account, recipient_list, campaign_name='Later wave', schedule_send=True,
        scheduled_at=(utcnow() - timedelta(minutes=1)).isoformat(),
    ))

    assert not campaign_service.launch_scheduled_campaign(scheduled)
    assert scheduled.status == CampaignStatus.SCHEDULED
    assert 'already running' in scheduled.last_error
    assert len(enqueued) == 1


def test_list_cannot_be_swapped_once_sending_started(user, campaign):
    other_list = recipient_service.add_recipient_list(user.id, 'Other', emails=['zed@example.com'])
    campaign_service.start_campaign(user.id, campaign.id)
    campaign_service.pause_campaign(user.id, campaign.id)
    campaign.sent_count = 1
    db.session.commit()

    with pytest.raises(ConflictError):
        campaign_service.update_campaign(user.id, campaign.id, {'recipient_list_id': other_list.id})

    campaign_service.update_campaign(user.id, campaign.id, {'campaign_name': 'Renamed launch'})
    assert campaign.campaign_name == 'Renamed launch'


def test_list_can_be_swapped_before_anything_was_sent(user, campaign):
    other_list = recipient_service.add_recipient_list(user.id, 'Other', emails=['zed@example.com'])
    campaign_service.start_campaign(user.id, campaign.id)
    campaign_service.pause_campaign(user.id, campaign.id)

    campaign_service.update_campaign(user.id, campaign.id, {'recipient_list_id': other_list.id})

    assert campaign.recipient_list_id == other_list.id


def test_recipients_of_a_campaign_in_progress_cannot_be_removed(user, campaign, recipient_list):
    campaign_service.start_campaign(user.id, campaign.id)
    campaign_service.pause_campaign(user.id, campaign.id)
    first = recipient_service.get_recipients(user.id, recipient_list.id)[0]

    with pytest.raises(ConflictError):
        recipient_service.delete_recipient(user.id, recipient_list.id, first.id)
    with pytest.raises(ConflictError):
        recipient_service.delete_recipient_list(user.id, recipient_list.id)

    recipient_service.add_recipients_to_list(user.id, recipient_list.id, ['fourth@example.com'])
    assert recipient_list.count == 4

    campaign_service.stop_campaign(user.id, campaign.id)
    recipient_service.delete_recipient(user.id, recipient_list.id, first.id)
    assert recipient_list.count == 3
