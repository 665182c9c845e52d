# services/dispatcher.py
"""
Campaign delivery, one recipient per step

Each step sends to the recipient at the campaign's cursor
(sent_count + failed_count), persists the result and tells the caller when
to run the next step. Progress lives in the database, so a worker restart
resumes where the last step stopped.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app

from core.database_models import db, Campaign, CampaignStatus, utcnow
from core.events import emit_update, campaign_room, user_room
from core.rate_limiter import HourlyRateLimiter, send_interval
from core.smtp_client import (
    MessageBuildError, SmtpClient, SmtpSendError, build_message, friendly_error, get_smtp_client,
)
from core.smtp_rfc_handler import SMTPResponseAnalyzer
from core.template_engine import CampaignTemplateEngine, TemplateRenderError, get_template_engine
from core.security_manager import DecryptionError
from services import campaigns as campaign_service
from services import recipients as recipient_service
from services import smtp_accounts as smtp_service
from services import users as user_service
from services.errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """What the task runner should do after a step"""
    reschedule: bool
    countdown: float = 0.0
    attempt: int = 1
    reason: str = ''

    @classmethod
    def stop(cls, reason: str) -> 'StepOutcome':
        return cls(False, reason=reason)

    @classmethod
    def next_in(cls, countdown: float, attempt: int = 1, reason: str = '') -> 'StepOutcome':
        return cls(True, max(0.0, float(countdown)), attempt, reason)


class CampaignDispatcher:
    """
    Sends campaigns through their SMTP accounts at the configured pace

    Args:
        sender: SmtpClient used for delivery
        limiter: HourlyRateLimiter enforcing speed_limit
        template_engine: Renders the chosen variant per recipient
        rng: Random source for variant choice and pacing jitter
    """

    def __init__(self, sender: SmtpClient = None, limiter: HourlyRateLimiter = None,
                 template_engine: CampaignTemplateEngine = None, rng: random.Random = None):
        config = current_app.config
        self.sender = sender or get_smtp_client()
        self.limiter = limiter or HourlyRateLimiter(current_app.extensions['redis'])
        self.template_engine = template_engine or get_template_engine()
        self.rng = rng or random.Random()
        self.analyzer = SMTPResponseAnalyzer()

        self.max_attempts = config.get('DISPATCH_MAX_ATTEMPTS', 3)
        self.retry_base = config.get('DISPATCH_RETRY_BASE_SECONDS', 60)
        self.retry_max = config.get('DISPATCH_RETRY_MAX_SECONDS', 900)
        self.jitter = config.get('DISPATCH_JITTER', 0.25)

    def _progress(self, campaign: Campaign, total: int, event: str = 'campaign_progress', **extra):
        data = {
            'campaign_id': campaign.id,
            'status': campaign.status,
            'sent_count': campaign.sent_count or 0,
            'failed_count': campaign.failed_count or 0,
            'total': total,
            **extra,
        }
        emit_update(campaign_room(campaign.id), event, data)
        emit_update(user_room(campaign.user_id), event, data)

    def _finish(self, campaign: Campaign, status: str, total: int, error: Optional[str] = None) -> StepOutcome:
        campaign.status = status
        campaign.dispatch_token = None
        if error is not None:
            campaign.last_error = error
        if status in (CampaignStatus.COMPLETED, CampaignStatus.FAILED):
            campaign.completed_at = utcnow()
        db.session.commit()
        self._progress(campaign, total, 'campaign_status')
        logger.info(f"Campaign {campaign.id} {status.lower()}: {campaign.sent_count} sent, "
                    f"{campaign.failed_count} failed" + (f" ({error})" if error else ""))
        return StepOutcome.stop(status.lower())

    def _choose_variant(self, campaign: Campaign):
        variants = [v for v in (campaign.email_variants or []) if v.get('subject') and v.get('body')]
        if variants:
            variant = self.rng.choice(variants)
            return variant['subject'], variant['body']
        return campaign.email_subject, campaign.email_body

    def _interval(self, campaign: Campaign) -> float:
        return send_interval(campaign.speed_limit or 0, campaign.delay or 0, self.rng, self.jitter)

    def run_step(self, campaign_id: str, attempt: int = 1, token: Optional[str] = None,
                 now: datetime = None) -> StepOutcome:
        """
        Deliver to the next recipient of a running campaign

        Args:
            campaign_id: Campaign to advance
            attempt: Delivery attempt for the recipient at the cursor
            token: Dispatch chain id; stale chains stop without sending
            now: Current naive UTC time

        Returns:
            StepOutcome telling the caller whether and when to run again
        """
        campaign = db.session.get(Campaign, campaign_id)
        if campaign is None:
            return StepOutcome.stop('missing')
        if campaign.status != CampaignStatus.RUNNING:
            return StepOutcome.stop('not running')
        if token and campaign.dispatch_token and token != campaign.dispatch_token:
            return StepOutcome.stop('superseded')

        try:
            return self._advance(campaign, attempt, now or utcnow())
        except Exception as e:
            # Anything escaping _advance is a bug or an infrastructure failure
            db.session.rollback()
            logger.error(f"Campaign {campaign_id} failed unexpectedly: {str(e)}", exc_info=True)
            campaign = db.session.get(Campaign, campaign_id)
            if campaign is None:
                return StepOutcome.stop('missing')
            return self._finish(campaign, CampaignStatus.FAILED, 0, f"Unexpected error: {str(e)}")

    def _advance(self, campaign: Campaign, attempt: int, now: datetime) -> StepOutcome:
        recipients = recipient_service.get_recipients_for_list(campaign.user_id, campaign.recipient_list_id)
        total = len(recipients)
        cursor = campaign.processed_count

        if cursor >= total:
            all_failed = (campaign.sent_count or 0) == 0 and (campaign.failed_count or 0) > 0
            status = CampaignStatus.FAILED if all_failed else CampaignStatus.COMPLETED
            error = 'All recipients failed.' if all_failed else None
            return self._finish(campaign, status, total, error)

        user = user_service.get_user_profile(campaign.user_id)
        if user is None or not user_service.can_send(user, now):
            return self._finish(campaign, CampaignStatus.PAUSED, total,
                                'Subscription does not allow sending. Renew your plan and resume the campaign.')

        try:
            creds = smtp_service.get_smtp_credentials(campaign.user_id, campaign.smtp_account_id)
        except NotFoundError:
            return self._finish(campaign, CampaignStatus.FAILED, total, 'SMTP account not found.')
        except DecryptionError:
            return self._finish(campaign, CampaignStatus.FAILED, total,
                                'SMTP account credentials could not be decrypted.')
        if not creds.password:
            return self._finish(campaign, CampaignStatus.FAILED, total,
                                'SMTP account credentials are not complete.')

        reservation = self.limiter.reserve(campaign.smtp_account_id, campaign.speed_limit or 0, now)
        if not reservation.allowed:
            wait = (reservation.retry_at - now).total_seconds() if reservation.retry_at else 60
            logger.info(f"Campaign {campaign.id} waiting {wait:.0f}s for the hourly limit")
            return StepOutcome.next_in(wait, attempt, 'rate limited')

        email = recipients[cursor]
        subject, body = self._choose_variant(campaign)
        try:
            rendered = self.template_engine.render(subject, body, {
                'email': email,
                'campaign_name': campaign.campaign_name,
            })
        except TemplateRenderError as e:
            campaign_service.log_campaign_failure(campaign, email, str(e), None, attempt, 'template_error')
            self._progress(campaign, total)
            return StepOutcome.next_in(0, 1, 'template error')

        try:
            message = build_message(creds.from_address, email, rendered.subject, rendered.html,
                                    text=rendered.text, headers={'X-Campaign-ID': campaign.id})
        except MessageBuildError as e:
            campaign_service.log_campaign_failure(campaign, email, str(e), None, attempt, 'invalid_message')
            self._progress(campaign, total, recipient=email, error=str(e))
            return StepOutcome.next_in(0, 1, 'invalid message')

        try:
            self.sender.send(creds, message)
        except SmtpSendError as e:
            return self._handle_send_error(campaign, email, attempt, e, total, cursor)

        campaign.sent_count = (campaign.sent_count or 0) + 1
        campaign.last_error = None
        db.session.commit()
        self._progress(campaign, total, recipient=email)

        if cursor + 1 >= total:
            return StepOutcome.next_in(0, 1, 'sent')
        return StepOutcome.next_in(self._interval(campaign), 1, 'sent')

    def _handle_send_error(self, campaign: Campaign, email: str, attempt: int, error: SmtpSendError,
                           total: int, cursor: int) -> StepOutcome:
        if error.kind == 'auth':
            # Every remaining recipient would fail the same way
            return self._finish(campaign, CampaignStatus.PAUSED, total, friendly_error(error))

        if error.temporary and attempt < self.max_attempts:
            delay = self.analyzer.get_retry_delay(attempt, self.retry_base, self.retry_max)
            campaign.last_error = error.message
            db.session.commit()
            logger.warning(f"Campaign {campaign.id}: temporary failure for {email} "
                           f"(attempt {attempt}/{self.max_attempts}), retrying in {delay}s: {error.message}")
            return StepOutcome.next_in(delay, attempt + 1, 'retry')

        bounce = self.analyzer.analyze_bounce_reason(error.code, error.message)
        campaign_service.log_campaign_failure(
            campaign, email, friendly_error(error), error.code, attempt, bounce['subcategory']
        )
        self._progress(campaign, total, recipient=email, error=error.message)

        if cursor + 1 >= total:
            return StepOutcome.next_in(0, 1, 'failed')
        return StepOutcome.next_in(self._interval(campaign), 1, 'failed')
