# Delivery engine services
from .schedule_calculator import ScheduleConfigError, compute_next_run, parse_schedule_config
from .ab_testing import (
    ABTestCoordinator,
    calculate_ab_score,
    determine_winner,
    get_test_ratio,
    split_subscribers,
)
from .ab_stats import get_ab_stats, latest_ab_occurrence
from .winner_rollout import CampaignNotFoundError, WinnerRolloutService, find_campaigns_ready_for_rollout
from .dispatch import CampaignDispatchService

__all__ = [
    "ScheduleConfigError",
    "compute_next_run",
    "parse_schedule_config",
    "ABTestCoordinator",
    "calculate_ab_score",
    "determine_winner",
    "get_test_ratio",
    "split_subscribers",
    "get_ab_stats",
    "latest_ab_occurrence",
    "CampaignNotFoundError",
    "WinnerRolloutService",
    "find_campaigns_ready_for_rollout",
    "CampaignDispatchService",
]
