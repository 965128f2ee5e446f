"""
Tests for scheduled campaign dispatch
"""
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from newsletter.models import AbTestRemaining, Campaign, DeliveryLog, SubscriberStatus
from newsletter.services.ab_stats import get_ab_stats, latest_ab_occurrence
from newsletter.services.dispatch import CampaignDispatchService
from newsletter.services.winner_rollout import WinnerRolloutService

from .conftest import NOW, FakeEmailSender, logs_for

DAILY_9AM = {"hour": 9, "minute": 0, "timezone": "UTC"}


def mark_opened(db, campaign_id, variant, occurrence, count):
    """Mark the first `count` logs of one variant and firing as opened"""
    logs = db.query(DeliveryLog).filter(
        DeliveryLog.campaign_id == campaign_id,
        DeliveryLog.ab_variant == variant,
        DeliveryLog.occurrence_at == occurrence,
    ).order_by(DeliveryLog.subscriber_id).all()
    for log in logs[:count]:
        log.opened_at = occurrence + timedelta(hours=1)
        log.status = "opened"
    db.commit()


class RaisingSender(FakeEmailSender):
    """Sender whose every send raises the given exception"""

    def __init__(self, settings, error):
        super().__init__(settings)
        self.error = error

    def send_email(self, to, subject, html, from_name=None):
        raise self.error


class TestOneShotCampaigns:

    def test_due_campaign_is_sent(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(5)
        campaign = make_campaign()

        result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert (result.processed, result.sent, result.failed) == (1, 1, 0)
        assert len(email_sender.sent) == 5
        db.refresh(campaign)
        assert campaign.status == "sent"
        assert campaign.sent_at == NOW
        assert campaign.recipient_count == 5
        assert len(logs_for(db, campaign.id, status="sent")) == 5

    def test_email_is_personalized_with_unsubscribe_link(
        self, db, settings, email_sender, make_subscribers, make_campaign
    ):
        subscriber = make_subscribers(1)[0]
        make_campaign(content="<p>Hi {{name}}</p>")

        CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        html = email_sender.sent[0]["html"]
        assert "Hi Test User 0" in html
        assert f"https://example.com/api/newsletter/unsubscribe/{subscriber.unsubscribe_token}" in html

    def test_future_and_draft_campaigns_are_skipped(
        self, db, settings, email_sender, make_subscribers, make_campaign
    ):
        make_subscribers(3)
        future = make_campaign(scheduled_at=NOW + timedelta(minutes=1))
        draft = make_campaign(status="draft")

        result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert result.processed == 0
        assert email_sender.sent == []
        db.refresh(future)
        db.refresh(draft)
        assert future.status == "scheduled"
        assert draft.status == "draft"

    def test_only_active_subscribers_receive(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(3)
        make_subscribers(2, status=SubscriberStatus.UNSUBSCRIBED.value, prefix="gone")
        make_subscribers(1, status=SubscriberStatus.PENDING.value, prefix="pending")
        make_campaign()

        CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert sorted(email_sender.recipients()) == ["sub0@example.com", "sub1@example.com", "sub2@example.com"]

    def test_no_active_subscribers_fails_campaign(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(2, status=SubscriberStatus.UNSUBSCRIBED.value)
        campaign = make_campaign()

        result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert (result.processed, result.sent, result.failed) == (1, 0, 1)
        db.refresh(campaign)
        assert campaign.status == "failed"

    def test_batch_limit(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(1)
        for _ in range(3):
            make_campaign()
        settings.scheduler_batch_limit = 2

        result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert result.processed == 2


class TestIdempotency:

    def test_already_logged_subscribers_are_skipped(
        self, db, settings, email_sender, make_subscribers, make_campaign
    ):
        subscribers = make_subscribers(5)
        campaign = make_campaign()
        db.add(DeliveryLog(
            campaign_id=campaign.id,
            subscriber_id=subscribers[0].id,
            email=subscribers[0].email,
            status="sent",
            occurrence_at=NOW,
            sent_at=NOW - timedelta(minutes=1),
        ))
        db.commit()

        CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert subscribers[0].email not in email_sender.recipients()
        assert len(email_sender.sent) == 4
        db.refresh(campaign)
        assert campaign.recipient_count == 5
        assert db.query(DeliveryLog).filter(DeliveryLog.campaign_id == campaign.id).count() == 5

    def test_partial_failure_then_retry(self, db, settings, make_subscribers, make_campaign):
        subscribers = make_subscribers(5)
        campaign = make_campaign()
        sender = FakeEmailSender(settings, fail_for={subscribers[2].email})

        result = CampaignDispatchService(db, sender, settings).process_scheduled_campaigns(now=NOW)

        assert result.failed == 1
        db.refresh(campaign)
        assert campaign.status == "failed"
        assert campaign.recipient_count == 4
        failed_logs = logs_for(db, campaign.id, status="failed")
        assert [log.subscriber_id for log in failed_logs] == [subscribers[2].id]

        # Operator fixes the problem and re-queues the campaign
        campaign.status = "scheduled"
        db.commit()
        sender.fail_for = set()
        sender.sent = []

        retry = CampaignDispatchService(db, sender, settings).process_scheduled_campaigns(now=NOW + timedelta(minutes=10))

        assert retry.sent == 1
        assert sender.recipients() == [subscribers[2].email]
        db.refresh(campaign)
        assert campaign.status == "sent"
        assert campaign.recipient_count == 5
        assert logs_for(db, campaign.id, status="failed") == []
        assert db.query(DeliveryLog).filter(DeliveryLog.campaign_id == campaign.id).count() == 5


class TestRecurringCampaigns:

    def test_daily_campaign_is_rescheduled(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(3)
        campaign = make_campaign(schedule_type="daily", schedule_config=DAILY_9AM)

        result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert result.sent == 1
        db.refresh(campaign)
        assert campaign.status == "scheduled"
        assert campaign.scheduled_at == datetime(2026, 3, 3, 9, 0)
        assert campaign.last_sent_at == NOW
        assert campaign.sent_at is None
        assert campaign.recipient_count == 3

    def test_each_occurrence_reaches_every_subscriber(
        self, db, settings, email_sender, make_subscribers, make_campaign
    ):
        make_subscribers(3)
        campaign = make_campaign(schedule_type="daily", schedule_config=DAILY_9AM)
        service = CampaignDispatchService(db, email_sender, settings)

        service.process_scheduled_campaigns(now=NOW)
        not_yet = service.process_scheduled_campaigns(now=NOW + timedelta(hours=12))
        service.process_scheduled_campaigns(now=NOW + timedelta(days=1))

        assert not_yet.processed == 0
        assert len(email_sender.sent) == 6
        occurrences = {log.occurrence_at for log in logs_for(db, campaign.id)}
        assert occurrences == {NOW, NOW + timedelta(days=1)}
        db.refresh(campaign)
        assert campaign.scheduled_at == datetime(2026, 3, 4, 9, 0)

    def test_late_run_skips_to_next_future_slot(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(1)
        campaign = make_campaign(schedule_type="weekly", schedule_config={"hour": 9, "dayOfWeek": 1})

        CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(
            now=NOW + timedelta(days=8)
        )

        db.refresh(campaign)
        assert campaign.scheduled_at == datetime(2026, 3, 16, 9, 0)

    def test_failed_send_still_reschedules(self, db, settings, make_subscribers, make_campaign):
        subscribers = make_subscribers(2)
        campaign = make_campaign(schedule_type="daily", schedule_config=DAILY_9AM)
        sender = FakeEmailSender(settings, fail_for={subscribers[0].email})

        result = CampaignDispatchService(db, sender, settings).process_scheduled_campaigns(now=NOW)

        assert result.failed == 1
        db.refresh(campaign)
        assert campaign.status == "scheduled"
        assert campaign.scheduled_at == datetime(2026, 3, 3, 9, 0)
        assert campaign.last_sent_at is None

    def test_invalid_schedule_fails_only_that_campaign(
        self, db, settings, email_sender, make_subscribers, make_campaign
    ):
        make_subscribers(2)
        broken = make_campaign(schedule_type="daily", schedule_config=json.dumps({"hour": 25}))
        healthy = make_campaign()

        result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert (result.processed, result.sent, result.failed) == (2, 1, 1)
        db.refresh(broken)
        db.refresh(healthy)
        assert broken.status == "failed"
        assert healthy.status == "sent"
        assert logs_for(db, broken.id) == []

    def test_unknown_schedule_type_fails_campaign(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(1)
        campaign = make_campaign(schedule_type="hourly")

        CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        db.refresh(campaign)
        assert campaign.status == "failed"
        assert email_sender.sent == []


class TestAbDispatch:

    def test_ab_campaign_starts_test_phase(self, db, settings, email_sender, make_subscribers, make_campaign):
        subscribers = make_subscribers(10)
        campaign = make_campaign(ab_test_enabled=True, ab_subject_b="Other subject")

        result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert result.sent == 1
        assert len(email_sender.sent) == 4
        db.refresh(campaign)
        assert campaign.status == "ab_testing"
        assert campaign.ab_test_sent_at == NOW
        remainder = db.query(AbTestRemaining).filter(AbTestRemaining.campaign_id == campaign.id).one()
        assert remainder.subscriber_id_list == [s.id for s in subscribers[4:]]

    def test_recurring_ab_campaign_reschedules_after_rollout(
        self, db, settings, email_sender, make_subscribers, make_campaign
    ):
        make_subscribers(10)
        campaign = make_campaign(
            ab_test_enabled=True,
            ab_subject_b="Other subject",
            schedule_type="daily",
            schedule_config=DAILY_9AM,
        )

        CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)
        db.refresh(campaign)
        assert campaign.status == "ab_testing"
        assert campaign.scheduled_at == NOW

        rollout_at = NOW + timedelta(hours=4)
        result = WinnerRolloutService(db, email_sender, settings).send_ab_test_winner(campaign.id, now=rollout_at)

        assert result.remaining_sent == 6
        db.refresh(campaign)
        assert campaign.status == "scheduled"
        assert campaign.scheduled_at == datetime(2026, 3, 3, 9, 0)
        assert campaign.last_sent_at == rollout_at
        assert campaign.recipient_count == 10

    def test_each_firing_picks_its_own_winner(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(10)
        campaign = make_campaign(
            ab_test_enabled=True,
            ab_subject_b="Other subject",
            schedule_type="daily",
            schedule_config=DAILY_9AM,
        )
        dispatcher = CampaignDispatchService(db, email_sender, settings)
        rollout = WinnerRolloutService(db, email_sender, settings)
        day_two = datetime(2026, 3, 3, 9, 0)

        # Day one: A wins and every A email is opened, rollout included
        dispatcher.process_scheduled_campaigns(now=NOW)
        mark_opened(db, campaign.id, "A", NOW, count=2)
        first = rollout.send_ab_test_winner(campaign.id, now=NOW + timedelta(hours=4))
        mark_opened(db, campaign.id, "A", NOW, count=8)

        assert first.winner == "A"
        day_one_stats = get_ab_stats(db, campaign.id, NOW)
        assert (day_one_stats.variant_a.sent, day_one_stats.variant_b.sent) == (8, 2)

        # Day two: only one B test email is opened
        dispatcher.process_scheduled_campaigns(now=day_two)
        db.refresh(campaign)
        assert campaign.status == "ab_testing"
        assert campaign.ab_winner is None
        mark_opened(db, campaign.id, "B", day_two, count=1)

        day_two_stats = get_ab_stats(db, campaign.id, day_two)
        assert (day_two_stats.variant_a.sent, day_two_stats.variant_b.sent) == (2, 2)
        assert day_two_stats.variant_a.open_rate == 0.0
        assert day_two_stats.variant_b.open_rate == pytest.approx(0.5)
        assert latest_ab_occurrence(db, campaign.id) == day_two

        email_sender.sent = []
        second = rollout.send_ab_test_winner(campaign.id, now=day_two + timedelta(hours=4))

        assert second.winner == "B"
        assert second.remaining_sent == 6
        assert {e["subject"] for e in email_sender.sent} == {"Other subject"}
        db.refresh(campaign)
        assert campaign.ab_winner == "B"
        assert campaign.scheduled_at == datetime(2026, 3, 4, 9, 0)

    def test_audience_too_small_for_test_groups(self, db, settings, email_sender, make_subscribers, make_campaign):
        make_subscribers(3)
        campaign = make_campaign(ab_test_enabled=True)

        result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns(now=NOW)

        assert (result.processed, result.sent, result.failed) == (1, 1, 0)
        assert email_sender.sent == []
        db.refresh(campaign)
        assert campaign.status == "ab_testing"

        rollout = WinnerRolloutService(db, email_sender, settings).send_ab_test_winner(
            campaign.id, now=NOW + timedelta(hours=4)
        )
        assert rollout.remaining_sent == 3
        db.refresh(campaign)
        assert campaign.status == "sent"
        assert campaign.recipient_count == 3


class TestErrorIsolation:

    def test_unexpected_error_marks_campaign_failed(self, db, settings, make_subscribers, make_campaign):
        make_subscribers(2)
        campaign = make_campaign()
        sender = RaisingSender(settings, RuntimeError("provider exploded"))

        result = CampaignDispatchService(db, sender, settings).process_scheduled_campaigns(now=NOW)

        assert (result.processed, result.failed) == (1, 1)
        db.refresh(campaign)
        assert campaign.status == "failed"

    def test_database_error_leaves_campaign_scheduled(self, db, settings, make_subscribers, make_campaign):
        make_subscribers(2)
        campaign = make_campaign()
        sender = RaisingSender(settings, OperationalError("INSERT", {}, Exception("database is locked")))

        result = CampaignDispatchService(db, sender, settings).process_scheduled_campaigns(now=NOW)

        assert (result.processed, result.failed) == (1, 1)
        db.refresh(campaign)
        assert campaign.status == "scheduled"
        assert logs_for(db, campaign.id) == []

    def test_error_in_one_campaign_does_not_stop_others(self, db, settings, make_subscribers, make_campaign):
        make_subscribers(1)
        first = make_campaign(scheduled_at=NOW - timedelta(minutes=5), ab_test_enabled=False)
        second = make_campaign()

        class FailOnce(FakeEmailSender):
            calls = 0

            def send_email(self, to, subject, html, from_name=None):
                FailOnce.calls += 1
                if FailOnce.calls == 1:
                    raise RuntimeError("transient")
                return super().send_email(to, subject, html, from_name)

        result = CampaignDispatchService(db, FailOnce(settings), settings).process_scheduled_campaigns(now=NOW)

        assert (result.processed, result.sent, result.failed) == (2, 1, 1)
        db.refresh(first)
        db.refresh(second)
        assert first.status == "failed"
        assert second.status == "sent"


class TestCampaignStatusConstraint:

    def test_unknown_status_is_rejected(self, db):
        db.add(Campaign(id="bad-status", subject="Hi", content="", status="archived"))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_known_statuses_are_accepted(self, db):
        for status in ("draft", "scheduled", "ab_testing", "sent", "failed"):
            db.add(Campaign(id=f"campaign-{status}", subject="Hi", content="", status=status))
        db.commit()
        assert db.query(Campaign).count() == 5
