"""
Next-run computation for recurring campaigns.

Everything here is a pure function of its arguments: the current time is
always passed in, never read from the clock.
"""
import calendar
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

import pytz
from pydantic import ValidationError

from ..models import ScheduleType
from ..schemas import ScheduleConfig


class ScheduleConfigError(ValueError):
    """A campaign's schedule_type or schedule_config cannot be used"""


RECURRING_TYPES = {ScheduleType.DAILY.value, ScheduleType.WEEKLY.value, ScheduleType.MONTHLY.value}


def parse_schedule_config(raw: Union[str, Dict[str, Any], None]) -> ScheduleConfig:
    """Validate a stored schedule_config (JSON text or dict)"""
    if raw is None or raw == "":
        data = {}
    elif isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ScheduleConfigError(f"schedule_config is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ScheduleConfigError("schedule_config must be a JSON object")

    try:
        return ScheduleConfig(**data)
    except ValidationError as e:
        raise ScheduleConfigError(f"Invalid schedule_config: {e}") from e


def _to_local(moment: datetime, tz) -> datetime:
    """Naive UTC -> naive wall time in tz"""
    return pytz.utc.localize(moment).astimezone(tz).replace(tzinfo=None)


def _to_utc(local: datetime, tz) -> datetime:
    """Naive wall time in tz -> naive UTC"""
    return tz.normalize(tz.localize(local, is_dst=False)).astimezone(pytz.utc).replace(tzinfo=None)


def _at_time(day: datetime, config: ScheduleConfig) -> datetime:
    return day.replace(hour=config.hour, minute=config.minute, second=0, microsecond=0)


def _month_day(year: int, month: int, day_of_month: int, config: ScheduleConfig) -> datetime:
    # Days missing from the month clamp to its last day (31 -> Feb 28/29)
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day_of_month, last_day), config.hour, config.minute)


def _next_daily(after: datetime, config: ScheduleConfig) -> datetime:
    candidate = _at_time(after, config)
    if candidate <= after:
        candidate += timedelta(days=1)
    return candidate


def _next_weekly(after: datetime, config: ScheduleConfig) -> datetime:
    target = 1 if config.day_of_week is None else config.day_of_week  # Monday by default
    current = (after.weekday() + 1) % 7  # Python Monday=0 -> Sunday=0 convention
    candidate = _at_time(after, config) + timedelta(days=(target - current) % 7)
    if candidate <= after:
        candidate += timedelta(days=7)
    return candidate


def _next_monthly(after: datetime, config: ScheduleConfig) -> datetime:
    day_of_month = config.day_of_month or 1
    year, month = after.year, after.month
    candidate = _month_day(year, month, day_of_month, config)
    while candidate <= after:
        month += 1
        if month > 12:
            year, month = year + 1, 1
        candidate = _month_day(year, month, day_of_month, config)
    return candidate


_CALCULATORS = {
    ScheduleType.DAILY.value: _next_daily,
    ScheduleType.WEEKLY.value: _next_weekly,
    ScheduleType.MONTHLY.value: _next_monthly,
}


def compute_next_run(
    current_due: Optional[datetime],
    schedule_type: str,
    config: Union[ScheduleConfig, str, Dict[str, Any], None],
    now: datetime,
) -> datetime:
    """
    Next fire time of a recurring campaign.

    Args:
        current_due: the scheduled_at that just fired (may be None)
        schedule_type: 'daily', 'weekly' or 'monthly'
        config: ScheduleConfig, or its dict / JSON form
        now: current time, naive UTC

    Returns:
        Naive UTC datetime strictly later than both now and current_due.

    Raises:
        ScheduleConfigError: unknown schedule type or malformed config
    """
    if schedule_type not in RECURRING_TYPES:
        raise ScheduleConfigError(f"Unsupported schedule type: {schedule_type}")

    if not isinstance(config, ScheduleConfig):
        config = parse_schedule_config(config)

    after = now if current_due is None else max(now, current_due)
    tz = pytz.timezone(config.timezone)

    local_after = _to_local(after, tz)
    calculate = _CALCULATORS[schedule_type]
    next_run = _to_utc(calculate(local_after, config), tz)

    # A DST gap can map the local candidate back onto or before `after`
    while next_run <= after:
        local_after += timedelta(hours=1)
        next_run = _to_utc(calculate(local_after, config), tz)

    return next_run
