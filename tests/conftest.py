"""
Pytest configuration and fixtures.
Provides an in-memory database, an in-memory email sender and data factories.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from newsletter.core.config import Settings
from newsletter.email_service import EmailSendError, EmailSender
from newsletter.models import Base, Campaign, CampaignStatus, DeliveryLog, Subscriber, SubscriberStatus

# Monday 2026-03-02 09:00 UTC
NOW = datetime(2026, 3, 2, 9, 0)


class FakeEmailSender(EmailSender):
    """Records every email instead of sending it; addresses in fail_for are rejected"""

    def __init__(self, settings, fail_for=None):
        super().__init__(settings)
        self.sent = []
        self.fail_for = set(fail_for or [])

    def send_email(self, to, subject, html, from_name=None):
        if to in self.fail_for:
            raise EmailSendError(f"Provider rejected {to}")
        self.sent.append({"to": to, "subject": subject, "html": html, "from_name": from_name})
        return {"id": f"msg-{len(self.sent)}"}

    def recipients(self):
        return [email["to"] for email in self.sent]


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads (TestClient runs sync routes in a pool)"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Create a new database session for each test"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        email_provider="resend",
        resend_api_key="re_test_key",
        resend_api_url="https://api.resend.test",
        sender_email="news@example.com",
        sender_name="Example News",
        site_url="https://example.com",
        site_name="Example News",
        email_send_timeout_seconds=5,
        scheduler_batch_limit=50,
        ab_rollout_max_attempts=3,
        admin_api_key="test-admin-key",
    )


@pytest.fixture
def email_sender(settings):
    return FakeEmailSender(settings)


@pytest.fixture
def make_subscribers(db):
    """Create subscribers sub-000, sub-001, ... in a stable creation order"""
    created = []

    def _make(count, status=SubscriberStatus.ACTIVE.value, prefix="sub"):
        start = len(created)
        batch = []
        for i in range(start, start + count):
            subscriber = Subscriber(
                id=f"{prefix}-{i:03d}",
                email=f"{prefix}{i}@example.com",
                name=f"Test User {i}",
                status=status,
                unsubscribe_token=f"unsub-{prefix}-{i}",
                created_at=datetime(2026, 1, 1) + timedelta(minutes=i),
            )
            db.add(subscriber)
            batch.append(subscriber)
        created.extend(batch)
        db.commit()
        return batch

    return _make


@pytest.fixture
def make_campaign(db):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "id": f"campaign-{counter['n']}",
            "subject": "Subject A - Original",
            "content": "<p>Hello {{name}}</p>",
            "status": CampaignStatus.SCHEDULED.value,
            "scheduled_at": NOW,
            "schedule_type": "none",
        }
        data.update(overrides)
        campaign = Campaign(**data)
        db.add(campaign)
        db.commit()
        return campaign

    return _make


def logs_for(db, campaign_id, variant=None, status=None):
    query = db.query(DeliveryLog).filter(DeliveryLog.campaign_id == campaign_id)
    if variant is not None:
        query = query.filter(DeliveryLog.ab_variant == variant)
    if status is not None:
        query = query.filter(DeliveryLog.status == status)
    return query.order_by(DeliveryLog.email_subject, DeliveryLog.subscriber_id).all()
