"""
A/B test helpers and the test-phase send.

- Test ratio calculation based on subscriber count
- Score calculation for winner determination
- Deterministic subscriber splitting for test groups
- Sending both variants and freezing the untested remainder
"""
import math
from datetime import datetime
from typing import Any, List, NamedTuple, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import Settings
from ..core.logging_config import get_logger
from ..email_service import EmailSender
from ..models import AbTestRemaining, AbVariant, Campaign, CampaignStatus, Subscriber
from ..schemas import AbTestResult
from .delivery import occurrence_for, send_variant

logger = get_logger(__name__)

OPEN_RATE_WEIGHT = 0.7
CLICK_RATE_WEIGHT = 0.3


class SubscriberSplit(NamedTuple):
    group_a: List[Any]
    group_b: List[Any]
    remaining: List[Any]


def get_test_ratio(subscriber_count: int) -> float:
    """
    Share of the audience that receives the test:
    < 100: 50%, 100-500: 20%, > 500: 10%
    """
    if subscriber_count < 100:
        return 0.5
    if subscriber_count <= 500:
        return 0.2
    return 0.1


def split_subscribers(subscribers: Sequence[Any], test_ratio: float) -> SubscriberSplit:
    """
    Split subscribers into A, B and remaining groups, keeping input order.

    Both test groups hold floor(N * ratio / 2) subscribers; A takes the first
    slice, B the next one and everything else is remaining.
    """
    items = list(subscribers)
    group_size = math.floor(len(items) * test_ratio / 2)
    return SubscriberSplit(
        group_a=items[:group_size],
        group_b=items[group_size:group_size * 2],
        remaining=items[group_size * 2:],
    )


def calculate_ab_score(open_rate: float, click_rate: float) -> float:
    """Weighted score: 70% open rate + 30% click rate"""
    return open_rate * OPEN_RATE_WEIGHT + click_rate * CLICK_RATE_WEIGHT


def _rate(stats: Any, name: str) -> float:
    if isinstance(stats, dict):
        return stats.get(name, 0) or 0
    return getattr(stats, name, 0) or 0


def determine_winner(stats_a: Any, stats_b: Any) -> str:
    """Variant with the higher score; A wins ties"""
    score_a = calculate_ab_score(_rate(stats_a, "open_rate"), _rate(stats_a, "click_rate"))
    score_b = calculate_ab_score(_rate(stats_b, "open_rate"), _rate(stats_b, "click_rate"))
    return AbVariant.A.value if score_a >= score_b else AbVariant.B.value


class ABTestCoordinator:
    """Runs the test phase of an A/B campaign"""

    def __init__(self, db_session: Session, email_sender: EmailSender, settings: Settings):
        self.db = db_session
        self.email_sender = email_sender
        self.settings = settings

    def store_remaining_subscribers(self, campaign_id: str, subscribers: List[Subscriber]) -> AbTestRemaining:
        """Freeze the rollout audience; replaces any earlier snapshot"""
        record = self.db.query(AbTestRemaining).filter(
            AbTestRemaining.campaign_id == campaign_id
        ).first()

        if record is None:
            record = AbTestRemaining(campaign_id=campaign_id)
            self.db.add(record)

        record.subscriber_id_list = [s.id for s in subscribers]
        record.winner = None
        record.attempts = 0
        self.db.commit()
        return record

    def send_ab_test(
        self,
        campaign: Campaign,
        subscribers: List[Subscriber],
        now: Optional[datetime] = None,
    ) -> AbTestResult:
        """
        Send variant A and B to their test groups.

        The remaining subscribers are stored before any email leaves so the
        winner phase, possibly hours later and in another process, sends to
        exactly this audience.
        """
        now = now or utcnow()
        occurrence = occurrence_for(campaign, now)

        ratio = get_test_ratio(len(subscribers))
        groups = split_subscribers(subscribers, ratio)
        logger.info(
            f"A/B test for campaign {campaign.id}: ratio {ratio}, "
            f"A={len(groups.group_a)} B={len(groups.group_b)} remaining={len(groups.remaining)}"
        )

        self.store_remaining_subscribers(campaign.id, groups.remaining)

        group_a_sent, group_a_failed = send_variant(
            self.db, self.email_sender, self.settings, campaign,
            groups.group_a, AbVariant.A.value, occurrence, now,
        )
        group_b_sent, group_b_failed = send_variant(
            self.db, self.email_sender, self.settings, campaign,
            groups.group_b, AbVariant.B.value, occurrence, now,
        )

        if group_a_failed or group_b_failed:
            logger.warning(
                f"A/B test for campaign {campaign.id} had failures: A={group_a_failed} B={group_b_failed}"
            )

        campaign.status = CampaignStatus.AB_TESTING.value
        campaign.ab_test_sent_at = now
        campaign.ab_winner = None
        self.db.commit()

        return AbTestResult(
            group_a_sent=group_a_sent,
            group_b_sent=group_b_sent,
            remaining=len(groups.remaining),
            status=CampaignStatus.AB_TESTING.value,
        )
