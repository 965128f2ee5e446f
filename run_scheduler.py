#!/usr/bin/env python3
"""
Campaign Scheduler Task
Sends due campaigns and rolls out A/B test winners.
Run this script periodically (e.g., every 5 minutes) via cron:

    */5 * * * * python run_scheduler.py dispatch
    */15 * * * * python run_scheduler.py rollout-due
"""

import argparse
import sys
from datetime import datetime

from newsletter.core.config import get_settings
from newsletter.core.logging_config import get_logger
from newsletter.database import SessionLocal, init_db
from newsletter.email_service import get_email_sender
from newsletter.services.dispatch import CampaignDispatchService
from newsletter.services.winner_rollout import WinnerRolloutService

logger = get_logger(__name__)


def run_dispatch(db, email_sender, settings) -> None:
    result = CampaignDispatchService(db, email_sender, settings).process_scheduled_campaigns()

    if result.processed > 0:
        logger.info(f"Processed {result.processed} campaigns ({result.sent} sent, {result.failed} failed)")
    else:
        logger.info("No campaigns due for sending")


def run_rollout(db, email_sender, settings, campaign_id: str) -> None:
    result = WinnerRolloutService(db, email_sender, settings).send_ab_test_winner(campaign_id)
    logger.info(
        f"Campaign {campaign_id}: winner {result.winner}, {result.remaining_sent} sent, "
        f"completed={result.completed}"
    )


def run_rollout_due(db, email_sender, settings) -> None:
    results = WinnerRolloutService(db, email_sender, settings).run_due_rollouts()
    if results:
        logger.info(f"Rolled out {len(results)} A/B campaigns")
    else:
        logger.info("No A/B campaigns ready for rollout")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Newsletter campaign scheduler")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("dispatch", help="Send campaigns whose scheduled time has passed")
    rollout = subparsers.add_parser("rollout", help="Roll out the A/B winner of one campaign")
    rollout.add_argument("campaign_id")
    subparsers.add_parser("rollout-due", help="Roll out every A/B campaign whose wait window has elapsed")
    return parser


def main(argv=None):
    """Main entry point for the scheduler"""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    init_db()
    db = SessionLocal()
    try:
        email_sender = get_email_sender(settings)
        if args.command == "dispatch":
            run_dispatch(db, email_sender, settings)
        elif args.command == "rollout":
            run_rollout(db, email_sender, settings, args.campaign_id)
        else:
            run_rollout_due(db, email_sender, settings)
        print(f"Scheduler completed successfully at {datetime.now()}")

    except Exception as e:
        logger.error(f"Scheduler failed: {e}")
        print(f"Scheduler failed: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
