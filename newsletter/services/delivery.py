"""
Delivery log bookkeeping shared by the dispatcher, the A/B coordinator and the
winner rollout.

A non-failed delivery log for (campaign, subscriber, occurrence) is the only
record that an email went out; every send path checks it before sending and
writes it right after.
"""
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.logging_config import get_logger
from ..email_service import EmailSendError, EmailSender, build_newsletter_email, personalize_content
from ..models import Campaign, DeliveryLog, DeliveryStatus, Subscriber, SubscriberStatus
from ..schemas import SendResult

logger = get_logger(__name__)


def occurrence_for(campaign: Campaign, now: datetime) -> datetime:
    """
    The occurrence a send belongs to: the campaign's current scheduled_at.
    A campaign fired without a schedule is stamped with the fire time.
    """
    if campaign.scheduled_at is None:
        campaign.scheduled_at = now
    return campaign.scheduled_at


def _delivered_ids(campaign_id: str, occurrence: datetime):
    return select(DeliveryLog.subscriber_id).where(
        and_(
            DeliveryLog.campaign_id == campaign_id,
            DeliveryLog.occurrence_at == occurrence,
            DeliveryLog.status != DeliveryStatus.FAILED.value,
        )
    )


def get_eligible_subscribers(db: Session, campaign: Campaign, occurrence: datetime) -> List[Subscriber]:
    """Active subscribers not yet emailed for this campaign occurrence, in stable order"""
    return db.query(Subscriber).filter(
        and_(
            Subscriber.status == SubscriberStatus.ACTIVE.value,
            ~Subscriber.id.in_(_delivered_ids(campaign.id, occurrence)),
        )
    ).order_by(Subscriber.created_at.asc(), Subscriber.id.asc()).all()


def filter_undelivered(
    db: Session,
    campaign: Campaign,
    occurrence: datetime,
    subscribers: List[Subscriber],
) -> List[Subscriber]:
    """Drop subscribers that already have a non-failed log for this occurrence"""
    delivered = set(db.execute(_delivered_ids(campaign.id, occurrence)).scalars().all())
    return [s for s in subscribers if s.id not in delivered]


def count_recipients(db: Session, campaign_id: str, occurrence: datetime) -> int:
    """Distinct subscribers that received this campaign occurrence"""
    return db.query(func.count(func.distinct(DeliveryLog.subscriber_id))).filter(
        and_(
            DeliveryLog.campaign_id == campaign_id,
            DeliveryLog.occurrence_at == occurrence,
            DeliveryLog.status != DeliveryStatus.FAILED.value,
        )
    ).scalar() or 0


def record_delivery(
    db: Session,
    campaign: Campaign,
    subscriber: Subscriber,
    occurrence: datetime,
    subject: str,
    result: SendResult,
    now: datetime,
    variant: Optional[str] = None,
) -> DeliveryLog:
    """
    Write the delivery log of one send attempt.

    A previous failed attempt for the same occurrence is overwritten in place.
    Failed attempts never carry an A/B variant so they stay out of the stats.
    """
    log = db.query(DeliveryLog).filter(
        and_(
            DeliveryLog.campaign_id == campaign.id,
            DeliveryLog.subscriber_id == subscriber.id,
            DeliveryLog.occurrence_at == occurrence,
        )
    ).first()

    if log is None:
        log = DeliveryLog(
            campaign_id=campaign.id,
            subscriber_id=subscriber.id,
            occurrence_at=occurrence,
            created_at=now,
        )
        db.add(log)

    log.email = subscriber.email
    log.email_subject = subject

    if result.success:
        log.status = DeliveryStatus.SENT.value
        log.provider_id = result.id
        log.ab_variant = variant
        log.sent_at = now
        log.error_message = None
    else:
        log.status = DeliveryStatus.FAILED.value
        log.provider_id = None
        log.ab_variant = None
        log.sent_at = None
        log.error_message = result.error

    return log


def render_campaign_email(campaign: Campaign, subscriber: Subscriber, settings: Settings) -> str:
    content = personalize_content(campaign.content or "", {
        "name": subscriber.name or "",
        "email": subscriber.email,
    })
    return build_newsletter_email(
        content,
        unsubscribe_url=f"{settings.site_url}/api/newsletter/unsubscribe/{subscriber.unsubscribe_token}",
        site_url=settings.site_url,
        site_name=settings.site_name,
    )


def send_variant(
    db: Session,
    email_sender: EmailSender,
    settings: Settings,
    campaign: Campaign,
    subscribers: List[Subscriber],
    variant: str,
    occurrence: datetime,
    now: datetime,
) -> Tuple[int, int]:
    """
    Send one A/B variant to subscribers one at a time, committing each
    delivery log as soon as its email is out.

    Returns:
        (sent, failed) counts
    """
    subject = campaign.variant_subject(variant)
    from_name = campaign.variant_from_name(variant)
    sent = failed = 0

    for subscriber in subscribers:
        html = render_campaign_email(campaign, subscriber, settings)
        try:
            response = email_sender.send_email(subscriber.email, subject, html, from_name)
            result = SendResult(to=subscriber.email, success=True, id=response.get("id"))
            sent += 1
        except EmailSendError as e:
            logger.warning(f"Variant {variant} of campaign {campaign.id} failed for {subscriber.email}: {e}")
            result = SendResult(to=subscriber.email, success=False, error=str(e))
            failed += 1

        record_delivery(db, campaign, subscriber, occurrence, subject, result, now, variant=variant)
        db.commit()

    return sent, failed
