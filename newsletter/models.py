"""
Database models for the campaign delivery engine
"""
import json
import uuid
from datetime import datetime
from enum import Enum
from typing import List

from sqlalchemy import (
    Column, String, DateTime, Integer, Text, Boolean, ForeignKey,
    CheckConstraint, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    AB_TESTING = "ab_testing"
    SENT = "sent"
    FAILED = "failed"


class ScheduleType(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SubscriberStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"


class AbVariant(str, Enum):
    A = "A"
    B = "B"


class Campaign(Base):
    """
    A newsletter campaign.

    One-shot campaigns (schedule_type 'none') go scheduled -> sent|failed,
    passing through ab_testing when an A/B test is enabled. Recurring
    campaigns stay 'scheduled' and have scheduled_at moved forward after
    every firing.
    """
    __tablename__ = "campaigns"

    id = Column(String, primary_key=True, default=_new_id)
    subject = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")

    status = Column(String, nullable=False, default=CampaignStatus.DRAFT.value)

    # Scheduling
    scheduled_at = Column(DateTime, nullable=True)
    schedule_type = Column(String, nullable=False, default=ScheduleType.NONE.value)
    schedule_config = Column(Text, nullable=True)  # JSON object: hour, minute, dayOfWeek, dayOfMonth, timezone
    last_sent_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    recipient_count = Column(Integer, nullable=False, default=0)

    # A/B testing
    ab_test_enabled = Column(Boolean, nullable=False, default=False)
    ab_subject_b = Column(String, nullable=True)
    ab_from_name_b = Column(String, nullable=True)
    ab_wait_hours = Column(Integer, nullable=False, default=4)
    ab_test_sent_at = Column(DateTime, nullable=True)
    ab_winner = Column(String(1), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    delivery_logs = relationship("DeliveryLog", back_populates="campaign")

    __table_args__ = (
        Index("idx_campaign_due", "status", "scheduled_at"),
        CheckConstraint(
            "status IN ('draft', 'scheduled', 'ab_testing', 'sent', 'failed')",
            name="ck_campaigns_status",
        ),
    )

    def __init__(self, **kwargs):
        # Accept schedule_config as a dict
        if isinstance(kwargs.get("schedule_config"), dict):
            kwargs["schedule_config"] = json.dumps(kwargs["schedule_config"])
        super().__init__(**kwargs)

    def __repr__(self):
        return f"<Campaign(id='{self.id}', status='{self.status}', schedule_type='{self.schedule_type}')>"

    @property
    def is_recurring(self) -> bool:
        return bool(self.schedule_type) and self.schedule_type != ScheduleType.NONE.value

    @property
    def subject_b(self) -> str:
        """Variant B subject, falling back to the original subject"""
        return self.ab_subject_b or self.subject

    def variant_subject(self, variant: str) -> str:
        return self.subject_b if variant == AbVariant.B.value else self.subject

    def variant_from_name(self, variant: str):
        """Variant B may override the sender name; A always uses the default"""
        if variant == AbVariant.B.value:
            return self.ab_from_name_b or None
        return None


class Subscriber(Base):
    __tablename__ = "subscribers"

    id = Column(String, primary_key=True, default=_new_id)
    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    status = Column(String, nullable=False, default=SubscriberStatus.PENDING.value)
    unsubscribe_token = Column(String, nullable=False, default=lambda: uuid.uuid4().hex)

    subscribed_at = Column(DateTime, nullable=True)
    unsubscribed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Subscriber(id='{self.id}', email='{self.email}', status='{self.status}')>"


class DeliveryLog(Base):
    """
    One send attempt of a campaign occurrence to a subscriber.

    occurrence_at is the campaign's scheduled_at when the email went out; a
    non-failed row for (campaign, subscriber, occurrence) means the subscriber
    must not be emailed again for that firing.
    """
    __tablename__ = "delivery_logs"

    id = Column(String, primary_key=True, default=_new_id)
    campaign_id = Column(String, ForeignKey("campaigns.id"), nullable=False)
    subscriber_id = Column(String, ForeignKey("subscribers.id"), nullable=False)
    email = Column(String, nullable=False)
    email_subject = Column(String, nullable=True)  # Preserved at send time

    status = Column(String, nullable=False, default=DeliveryStatus.SENT.value)
    provider_id = Column(String, nullable=True)  # Message id returned by the email provider
    ab_variant = Column(String(1), nullable=True)
    occurrence_at = Column(DateTime, nullable=False)

    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    campaign = relationship("Campaign", back_populates="delivery_logs")

    __table_args__ = (
        UniqueConstraint(
            "campaign_id", "subscriber_id", "occurrence_at",
            name="uq_delivery_campaign_subscriber_occurrence"
        ),
        Index("idx_delivery_campaign_variant", "campaign_id", "ab_variant"),
        Index("idx_delivery_provider_id", "provider_id"),
    )

    def __repr__(self):
        return f"<DeliveryLog(campaign='{self.campaign_id}', subscriber='{self.subscriber_id}', status='{self.status}')>"


class AbTestRemaining(Base):
    """
    Subscribers held back from an A/B test, frozen at test-send time and
    consumed by the winner rollout.
    """
    __tablename__ = "ab_test_remaining"

    campaign_id = Column(String, ForeignKey("campaigns.id"), primary_key=True)
    subscriber_ids = Column(Text, nullable=False, default="")  # comma separated
    winner = Column(String(1), nullable=True)  # Frozen on the first rollout attempt
    attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<AbTestRemaining(campaign_id='{self.campaign_id}', attempts={self.attempts})>"

    @property
    def subscriber_id_list(self) -> List[str]:
        if not self.subscriber_ids:
            return []
        return [sid for sid in (part.strip() for part in self.subscriber_ids.split(",")) if sid]

    @subscriber_id_list.setter
    def subscriber_id_list(self, value: List[str]):
        self.subscriber_ids = ",".join(value)

