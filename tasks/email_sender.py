# tasks/email_sender.py
"""
Celery tasks for campaign delivery
Implements the background side of MailCannon:
- One task per recipient, re-queued with a countdown for pacing and retries
- Periodic promotion of due Scheduled campaigns
- Periodic expiry of lapsed subscriptions
"""

from typing import Any, Dict, Optional

from celery import Celery, Task
from celery.signals import task_prerun, task_postrun, task_failure, worker_process_init
from celery.utils.log import get_task_logger
from flask import Flask, has_app_context

from core.events import set_emitter
from services import campaigns as campaign_service
from services import users as user_service

logger = get_task_logger(__name__)

_flask_app: Optional[Flask] = None


class AppContextTask(Task):
    """Runs the task body inside the bound Flask application's context"""

    abstract = True

    def __call__(self, *args, **kwargs):
        if has_app_context() or _flask_app is None:
            return super().__call__(*args, **kwargs)
        with _flask_app.app_context():
            return super().__call__(*args, **kwargs)


celery_app = Celery('mailcannon')
celery_app.conf.update({
    # Serialization
    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],

    # Timezone
    'timezone': 'UTC',
    'enable_utc': True,

    # Task Execution
    'task_acks_late': True,
    'task_reject_on_worker_lost': True,
    'worker_prefetch_multiplier': 1,  # steps carry long countdowns

    # Results are not read back
    'task_ignore_result': True,
    'result_expires': 3600,

    # Routing
    'task_routes': {
        'tasks.email_sender.run_campaign_step': {'queue': 'email_sending'},
        'tasks.email_sender.dispatch_scheduled_campaigns': {'queue': 'campaign_management'},
        'tasks.email_sender.expire_subscriptions_task': {'queue': 'campaign_management'},
    },

    # Monitoring
    'worker_send_task_events': True,
    'task_send_sent_event': True,
    'worker_hijack_root_logger': False,
    'worker_log_color': False,
})


def bind_flask_app(app: Flask) -> Celery:
    """
    Point the Celery app at the Flask app's broker and schedule

    Args:
        app: Configured Flask application

    Returns:
        The module Celery instance
    """
    global _flask_app
    _flask_app = app

    interval = float(app.config.get('SCHEDULER_INTERVAL_SECONDS', 60))
    always_eager = app.config.get('CELERY_TASK_ALWAYS_EAGER', False)
    celery_app.conf.update({
        'broker_url': app.config['CELERY_BROKER_URL'],
        'result_backend': app.config['CELERY_RESULT_BACKEND'],
        'task_always_eager': always_eager,
        'task_eager_propagates': always_eager,
        'beat_schedule': {
            'dispatch-scheduled-campaigns': {
                'task': 'tasks.email_sender.dispatch_scheduled_campaigns',
                'schedule': interval,
            },
            'expire-subscriptions': {
                'task': 'tasks.email_sender.expire_subscriptions_task',
                'schedule': 3600.0,
            },
        },
    })
    app.extensions['celery'] = celery_app
    return celery_app


@celery_app.task(bind=True, base=AppContextTask)
def run_campaign_step(self, campaign_id: str, attempt: int = 1, token: Optional[str] = None) -> Dict[str, Any]:
    """
    Deliver to the next recipient of a campaign and queue the following step

    Args:
        campaign_id: Campaign identifier
        attempt: Delivery attempt for the current recipient
        token: Dispatch chain id of the run that queued this step

    Returns:
        Outcome of the step
    """
    from services.dispatcher import CampaignDispatcher

    outcome = CampaignDispatcher().run_step(campaign_id, attempt=attempt, token=token)
    if outcome.reschedule:
        logger.debug(f"Campaign {campaign_id}: next step in {outcome.countdown:.1f}s ({outcome.reason})")
        campaign_service.enqueue_campaign_step(campaign_id, token, outcome.attempt, outcome.countdown)
    else:
        logger.info(f"Campaign {campaign_id} dispatch stopped: {outcome.reason}")

    return {
        'campaign_id': campaign_id,
        'reschedule': outcome.reschedule,
        'countdown': outcome.countdown,
        'reason': outcome.reason,
    }


@celery_app.task(base=AppContextTask)
def dispatch_scheduled_campaigns() -> Dict[str, int]:
    """Launch every Scheduled campaign whose time has come"""
    launched = deferred = 0
    for campaign in campaign_service.due_scheduled_campaigns():
        if campaign_service.launch_scheduled_campaign(campaign):
            launched += 1
        else:
            deferred += 1

    if launched or deferred:
        logger.info(f"Scheduled campaigns: {launched} launched, {deferred} deferred")
    return {'launched': launched, 'deferred': deferred}


@celery_app.task(base=AppContextTask)
def expire_subscriptions_task() -> Dict[str, int]:
    """Mark trials and paid plans past their end date as expired"""
    expired = user_service.expire_subscriptions()
    if expired:
        logger.info(f"Expired {expired} subscription(s)")
    return {'expired': expired}


@worker_process_init.connect
def worker_process_init_handler(**kwargs):
    """Workers reach browser clients through the Socket.IO message queue"""
    if _flask_app is None:
        return
    message_queue = _flask_app.config.get('SOCKETIO_MESSAGE_QUEUE')
    if not message_queue:
        logger.warning("SOCKETIO_MESSAGE_QUEUE not set; realtime updates disabled in worker")
        return

    from flask_socketio import SocketIO
    set_emitter(SocketIO(message_queue=message_queue).emit)


# Celery signal handlers for monitoring
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **extras):
    logger.debug(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None,
                         retval=None, state=None, **extras):
    logger.debug(f"Task {task.name} [{task_id}] completed with state: {state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, einfo=None, **extras):
    """Failures escaping a task are bugs; the dispatcher handles delivery errors itself"""
    logger.error(f"Task {sender.name} [{task_id}] failed: {exception}")
