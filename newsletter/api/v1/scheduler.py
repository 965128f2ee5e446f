"""
Trigger endpoints for the delivery engine.

An external scheduler (cron, a workflow runner, ...) calls these on a
cadence; deciding when to call them is the caller's job.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...core.config import Settings
from ...core.logging_config import get_logger
from ...email_service import EmailSender
from ...models import Campaign
from ...schemas import AbStats, AbWinnerResult, ScheduledProcessResult
from ...services.ab_stats import get_ab_stats, latest_ab_occurrence
from ...services.dispatch import CampaignDispatchService
from ...services.winner_rollout import CampaignNotFoundError, WinnerRolloutService
from ..dependencies import get_app_settings, get_db, get_sender, require_admin_key

logger = get_logger(__name__)

router = APIRouter(
    prefix="/scheduler",
    tags=["Scheduler"],
    dependencies=[Depends(require_admin_key)],
)


@router.post("/dispatch", response_model=ScheduledProcessResult, summary="Send due campaigns")
def dispatch_due_campaigns(
    db: Session = Depends(get_db),
    email_sender: EmailSender = Depends(get_sender),
    settings: Settings = Depends(get_app_settings),
):
    """Process every campaign whose scheduled time has passed"""
    service = CampaignDispatchService(db, email_sender, settings)
    return service.process_scheduled_campaigns()


@router.post("/rollouts", response_model=List[AbWinnerResult], summary="Roll out due A/B winners")
def rollout_due_campaigns(
    db: Session = Depends(get_db),
    email_sender: EmailSender = Depends(get_sender),
    settings: Settings = Depends(get_app_settings),
):
    """Send the winning variant of every A/B campaign whose wait window has elapsed"""
    service = WinnerRolloutService(db, email_sender, settings)
    return service.run_due_rollouts()


@router.post("/campaigns/{campaign_id}/ab-winner", response_model=AbWinnerResult)
def send_campaign_winner(
    campaign_id: str,
    db: Session = Depends(get_db),
    email_sender: EmailSender = Depends(get_sender),
    settings: Settings = Depends(get_app_settings),
):
    """Roll out one campaign's winner now, regardless of its wait window"""
    service = WinnerRolloutService(db, email_sender, settings)
    try:
        return service.send_ab_test_winner(campaign_id)
    except CampaignNotFoundError:
        raise HTTPException(status_code=404, detail="Campaign not found")


@router.get("/campaigns/{campaign_id}/ab-stats", response_model=AbStats)
def campaign_ab_stats(campaign_id: str, db: Session = Depends(get_db)):
    """Per-variant statistics of the campaign's latest A/B test phase"""
    if db.query(Campaign.id).filter(Campaign.id == campaign_id).first() is None:
        raise HTTPException(status_code=404, detail="Campaign not found")
    return get_ab_stats(db, campaign_id, latest_ab_occurrence(db, campaign_id))
