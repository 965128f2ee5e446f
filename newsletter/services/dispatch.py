"""
Scheduled campaign dispatch.

Called periodically by the scheduler: finds due campaigns, sends them (or
starts their A/B test) and moves recurring campaigns to their next run.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import Settings
from ..core.logging_config import get_logger
from ..email_service import EmailSender
from ..models import Campaign, CampaignStatus, Subscriber
from ..schemas import EmailMessage, ScheduleConfig, ScheduledProcessResult
from .ab_testing import ABTestCoordinator
from .delivery import (
    count_recipients,
    get_eligible_subscribers,
    occurrence_for,
    record_delivery,
    render_campaign_email,
)
from .schedule_calculator import ScheduleConfigError, compute_next_run, parse_schedule_config

logger = get_logger(__name__)


class CampaignDispatchService:
    """
    Sends due campaigns.

    Each campaign is processed and committed on its own; an error in one
    campaign never stops the others.
    """

    def __init__(self, db_session: Session, email_sender: EmailSender, settings: Settings):
        self.db = db_session
        self.email_sender = email_sender
        self.settings = settings
        self.ab_coordinator = ABTestCoordinator(db_session, email_sender, settings)

    def get_due_campaigns(self, now: datetime) -> List[Campaign]:
        return self.db.query(Campaign).filter(
            and_(
                Campaign.status == CampaignStatus.SCHEDULED.value,
                Campaign.scheduled_at.isnot(None),
                Campaign.scheduled_at <= now,
            )
        ).order_by(Campaign.scheduled_at.asc()).limit(self.settings.scheduler_batch_limit).all()

    def process_scheduled_campaigns(self, now: Optional[datetime] = None) -> ScheduledProcessResult:
        """
        Process every due campaign.

        Returns:
            Counters of processed, sent and failed campaigns
        """
        now = now or utcnow()
        result = ScheduledProcessResult()

        due_campaigns = self.get_due_campaigns(now)
        if due_campaigns:
            logger.info(f"Processing {len(due_campaigns)} due campaigns")

        for campaign in due_campaigns:
            campaign_id = campaign.id
            result.processed += 1
            try:
                if self._process_campaign(campaign, now):
                    result.sent += 1
                else:
                    result.failed += 1
            except SQLAlchemyError as e:
                # Abort this campaign only; the store may be unusable for it
                self.db.rollback()
                logger.error(f"Database error processing campaign {campaign_id}: {e}")
                result.failed += 1
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to process campaign {campaign_id}: {e}")
                self._mark_failed(campaign_id)
                result.failed += 1

        if result.processed:
            logger.info(
                f"Scheduled run finished: processed={result.processed} sent={result.sent} failed={result.failed}"
            )
        return result

    def _mark_failed(self, campaign_id: str) -> None:
        try:
            self.db.query(Campaign).filter(Campaign.id == campaign_id).update(
                {"status": CampaignStatus.FAILED.value}, synchronize_session=False
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not mark campaign {campaign_id} as failed: {e}")

    def _process_campaign(self, campaign: Campaign, now: datetime) -> bool:
        """Send one due campaign; returns True when it counts as sent"""
        config = None
        if campaign.is_recurring:
            try:
                config = parse_schedule_config(campaign.schedule_config)
                # Surface an unknown schedule_type before anything is sent
                compute_next_run(campaign.scheduled_at, campaign.schedule_type, config, now)
            except ScheduleConfigError as e:
                logger.error(f"Campaign {campaign.id} has an invalid schedule: {e}")
                campaign.status = CampaignStatus.FAILED.value
                self.db.commit()
                return False

        occurrence = occurrence_for(campaign, now)
        subscribers = get_eligible_subscribers(self.db, campaign, occurrence)

        if not subscribers:
            logger.warning(f"Campaign {campaign.id} has no eligible subscribers")
            campaign.status = CampaignStatus.FAILED.value
            self.db.commit()
            return False

        if campaign.ab_test_enabled:
            ab_result = self.ab_coordinator.send_ab_test(campaign, subscribers, now=now)
            logger.info(
                f"Campaign {campaign.id} A/B test sent: A={ab_result.group_a_sent} B={ab_result.group_b_sent}"
            )
            # Recurring A/B campaigns are rescheduled when their rollout completes.
            # Audiences too small for test groups go out entirely in the rollout.
            return ab_result.group_a_sent + ab_result.group_b_sent > 0 or ab_result.remaining > 0

        success = self._send_campaign(campaign, subscribers, occurrence, now)

        if campaign.is_recurring:
            self._reschedule(campaign, config, now, success)
        elif success:
            campaign.status = CampaignStatus.SENT.value
            campaign.sent_at = now
        else:
            campaign.status = CampaignStatus.FAILED.value

        self.db.commit()
        return success

    def _send_campaign(
        self,
        campaign: Campaign,
        subscribers: List[Subscriber],
        occurrence: datetime,
        now: datetime,
    ) -> bool:
        messages = [
            EmailMessage(
                to=subscriber.email,
                subject=campaign.subject,
                html=render_campaign_email(campaign, subscriber, self.settings),
            )
            for subscriber in subscribers
        ]

        send_result = self.email_sender.send_batch_emails(messages)

        # Results come back in message order; keep every row, failures included
        for subscriber, item in zip(subscribers, send_result.results):
            record_delivery(self.db, campaign, subscriber, occurrence, campaign.subject, item, now)
        self.db.flush()
        campaign.recipient_count = count_recipients(self.db, campaign.id, occurrence)
        self.db.commit()

        if send_result.success:
            logger.info(f"Campaign {campaign.id} sent to {send_result.sent} subscribers")
        else:
            logger.error(
                f"Campaign {campaign.id} failed: {send_result.error} "
                f"({send_result.sent}/{len(subscribers)} sent)"
            )
        return send_result.success

    def _reschedule(self, campaign: Campaign, config: ScheduleConfig, now: datetime, success: bool) -> None:
        """Move a recurring campaign to its next run; it stays 'scheduled'"""
        next_run = compute_next_run(campaign.scheduled_at, campaign.schedule_type, config, now)
        if success:
            campaign.last_sent_at = now
        campaign.scheduled_at = next_run
        campaign.status = CampaignStatus.SCHEDULED.value
        logger.info(f"Recurring campaign {campaign.id} next run at {next_run.isoformat()}")
