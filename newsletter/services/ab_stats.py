"""
Per-variant engagement statistics of an A/B campaign
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from ..models import AbVariant, DeliveryLog, DeliveryStatus
from ..schemas import AbStats, AbVariantStats
from .ab_testing import calculate_ab_score


def _count_where(condition):
    return func.sum(case((condition, 1), else_=0))


def latest_ab_occurrence(db: Session, campaign_id: str) -> Optional[datetime]:
    """Occurrence of the campaign's most recent test phase, if any"""
    return db.query(func.max(DeliveryLog.occurrence_at)).filter(
        DeliveryLog.campaign_id == campaign_id,
        DeliveryLog.ab_variant.isnot(None),
    ).scalar()


def get_ab_stats(db: Session, campaign_id: str, occurrence: Optional[datetime] = None) -> AbStats:
    """
    Group the campaign's variant-tagged delivery logs by variant.

    Recurring campaigns run a new test on every firing, so pass the
    occurrence to score one firing only; without it all firings are summed.

    A click implies an open, so clicked rows count as opened even when the
    open event itself was never recorded.
    """
    clicked = or_(
        DeliveryLog.clicked_at.isnot(None),
        DeliveryLog.status == DeliveryStatus.CLICKED.value,
    )
    opened = or_(
        DeliveryLog.opened_at.isnot(None),
        DeliveryLog.status.in_([DeliveryStatus.OPENED.value, DeliveryStatus.CLICKED.value]),
        clicked,
    )
    delivered = or_(
        DeliveryLog.delivered_at.isnot(None),
        DeliveryLog.status.in_([
            DeliveryStatus.DELIVERED.value, DeliveryStatus.OPENED.value, DeliveryStatus.CLICKED.value
        ]),
        opened,
    )

    query = db.query(
        DeliveryLog.ab_variant,
        func.count(DeliveryLog.id),
        _count_where(delivered),
        _count_where(opened),
        _count_where(clicked),
    ).filter(
        DeliveryLog.campaign_id == campaign_id,
        DeliveryLog.ab_variant.isnot(None),
    )
    if occurrence is not None:
        query = query.filter(DeliveryLog.occurrence_at == occurrence)

    rows = query.group_by(DeliveryLog.ab_variant).all()

    stats = {}
    for variant, sent, delivered_count, opened_count, clicked_count in rows:
        sent = sent or 0
        open_rate = (opened_count or 0) / sent if sent > 0 else 0.0
        click_rate = (clicked_count or 0) / sent if sent > 0 else 0.0
        stats[variant] = AbVariantStats(
            sent=sent,
            delivered=delivered_count or 0,
            opened=opened_count or 0,
            clicked=clicked_count or 0,
            open_rate=open_rate,
            click_rate=click_rate,
            score=calculate_ab_score(open_rate, click_rate),
        )

    return AbStats(
        variant_a=stats.get(AbVariant.A.value, AbVariantStats()),
        variant_b=stats.get(AbVariant.B.value, AbVariantStats()),
    )
