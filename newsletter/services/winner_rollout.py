"""
Winner phase of A/B campaigns: pick the better variant and send it to the
subscribers held back from the test.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import Settings
from ..core.logging_config import get_logger
from ..email_service import EmailSender
from ..models import AbTestRemaining, Campaign, CampaignStatus, Subscriber, SubscriberStatus
from ..schemas import AbWinnerResult
from .ab_stats import get_ab_stats
from .ab_testing import determine_winner
from .delivery import count_recipients, filter_undelivered, occurrence_for, send_variant
from .schedule_calculator import ScheduleConfigError, compute_next_run, parse_schedule_config

logger = get_logger(__name__)

# Keep IN (...) lists well below the bound-parameter limits of SQLite and PostgreSQL
ID_CHUNK_SIZE = 500


class CampaignNotFoundError(LookupError):
    pass


def find_campaigns_ready_for_rollout(db: Session, now: datetime) -> List[Campaign]:
    """A/B campaigns whose wait window (ab_wait_hours after the test send) has elapsed"""
    testing = db.query(Campaign).filter(
        and_(
            Campaign.status == CampaignStatus.AB_TESTING.value,
            Campaign.ab_winner.is_(None),
            Campaign.ab_test_sent_at.isnot(None),
        )
    ).order_by(Campaign.ab_test_sent_at.asc()).all()

    return [
        campaign for campaign in testing
        if campaign.ab_test_sent_at + timedelta(hours=campaign.ab_wait_hours or 0) <= now
    ]


class WinnerRolloutService:
    """
    Completes A/B campaigns.

    Safe to call any number of times: a campaign that is no longer
    'ab_testing' or already has a winner is left untouched, and recipients
    with a delivery log for this occurrence are never emailed twice.
    """

    def __init__(self, db_session: Session, email_sender: EmailSender, settings: Settings):
        self.db = db_session
        self.email_sender = email_sender
        self.settings = settings

    def _get_remainder(self, campaign_id: str) -> Optional[AbTestRemaining]:
        return self.db.query(AbTestRemaining).filter(
            AbTestRemaining.campaign_id == campaign_id
        ).first()

    def _get_remaining_subscribers(
        self,
        campaign: Campaign,
        remainder: Optional[AbTestRemaining],
        occurrence: datetime,
    ) -> List[Subscriber]:
        if remainder is None:
            logger.warning(f"No remaining-subscriber snapshot for campaign {campaign.id}")
            return []

        ids = remainder.subscriber_id_list
        found: Dict[str, Subscriber] = {}
        for start in range(0, len(ids), ID_CHUNK_SIZE):
            chunk = ids[start:start + ID_CHUNK_SIZE]
            for subscriber in self.db.query(Subscriber).filter(
                and_(
                    Subscriber.id.in_(chunk),
                    Subscriber.status == SubscriberStatus.ACTIVE.value,
                )
            ).all():
                found[subscriber.id] = subscriber

        if len(found) < len(ids):
            logger.info(
                f"Campaign {campaign.id}: {len(ids) - len(found)} held-back subscribers "
                f"are no longer active and will be skipped"
            )

        # Snapshot order, minus anyone already reached by an earlier attempt
        ordered = [found[sid] for sid in ids if sid in found]
        return filter_undelivered(self.db, campaign, occurrence, ordered)

    def _complete(
        self,
        campaign: Campaign,
        winner: str,
        occurrence: datetime,
        remainder: Optional[AbTestRemaining],
        now: datetime,
    ) -> None:
        if remainder is not None:
            self.db.delete(remainder)

        campaign.ab_winner = winner
        campaign.recipient_count = count_recipients(self.db, campaign.id, occurrence)

        if campaign.is_recurring:
            try:
                config = parse_schedule_config(campaign.schedule_config)
                campaign.scheduled_at = compute_next_run(campaign.scheduled_at, campaign.schedule_type, config, now)
                campaign.status = CampaignStatus.SCHEDULED.value
                campaign.last_sent_at = now
            except ScheduleConfigError as e:
                logger.error(f"Cannot reschedule campaign {campaign.id}: {e}")
                campaign.status = CampaignStatus.FAILED.value
        else:
            campaign.status = CampaignStatus.SENT.value
            campaign.sent_at = now

        self.db.commit()

    def send_ab_test_winner(self, campaign_id: str, now: Optional[datetime] = None) -> AbWinnerResult:
        """
        Determine the winner and send it to the frozen remainder.

        The winner is decided on the first attempt and stored with the
        remainder, so retries keep sending the same variant even though the
        rollout's own delivery logs change the statistics.

        Raises:
            CampaignNotFoundError: no campaign with this id
        """
        now = now or utcnow()
        campaign = self.db.query(Campaign).filter(Campaign.id == campaign_id).first()
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")

        if campaign.status != CampaignStatus.AB_TESTING.value or campaign.ab_winner:
            logger.info(f"Campaign {campaign_id} already completed its A/B test (status {campaign.status})")
            return AbWinnerResult(
                campaign_id=campaign_id,
                winner=campaign.ab_winner,
                completed=True,
                already_completed=True,
            )

        occurrence = occurrence_for(campaign, now)
        remainder = self._get_remainder(campaign_id)

        winner = remainder.winner if remainder is not None else None
        if not winner:
            stats = get_ab_stats(self.db, campaign_id, occurrence)
            winner = determine_winner(stats.variant_a, stats.variant_b)
            logger.info(
                f"Campaign {campaign_id} winner {winner} "
                f"(score A={stats.variant_a.score:.4f}, B={stats.variant_b.score:.4f})"
            )

        attempts = 1
        if remainder is not None:
            remainder.winner = winner
            remainder.attempts = (remainder.attempts or 0) + 1
            attempts = remainder.attempts
            self.db.commit()

        recipients = self._get_remaining_subscribers(campaign, remainder, occurrence)
        sent, failed = send_variant(
            self.db, self.email_sender, self.settings, campaign,
            recipients, winner, occurrence, now,
        )

        if failed and attempts < self.settings.ab_rollout_max_attempts:
            logger.warning(
                f"Rollout of campaign {campaign_id} attempt {attempts}: {failed} of {len(recipients)} "
                f"sends failed; leaving campaign in ab_testing for a retry"
            )
            return AbWinnerResult(
                campaign_id=campaign_id,
                winner=winner,
                remaining_sent=sent,
                failed=failed,
                completed=False,
            )

        if failed:
            logger.error(
                f"Rollout of campaign {campaign_id} gave up on {failed} recipients after {attempts} attempts"
            )

        self._complete(campaign, winner, occurrence, remainder, now)
        logger.info(f"Campaign {campaign_id} rolled out variant {winner} to {sent} remaining subscribers")

        return AbWinnerResult(
            campaign_id=campaign_id,
            winner=winner,
            remaining_sent=sent,
            failed=failed,
            completed=True,
        )

    def run_due_rollouts(self, now: Optional[datetime] = None) -> List[AbWinnerResult]:
        """Roll out every campaign whose wait window has elapsed, one at a time"""
        now = now or utcnow()
        results = []

        for campaign in find_campaigns_ready_for_rollout(self.db, now):
            campaign_id = campaign.id
            try:
                results.append(self.send_ab_test_winner(campaign_id, now=now))
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Database error rolling out campaign {campaign_id}: {e}")
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to roll out campaign {campaign_id}: {e}")

        return results
