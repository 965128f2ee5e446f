"""
Pydantic schemas for schedule configuration, sending results and A/B statistics
"""
from typing import List, Optional

import pytz
from pydantic import BaseModel, Field, validator


class ScheduleConfig(BaseModel):
    """Recurring schedule of a campaign; stored as JSON in campaigns.schedule_config"""
    hour: int = Field(9, ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)
    day_of_week: Optional[int] = Field(None, ge=0, le=6, alias="dayOfWeek")  # 0 = Sunday
    day_of_month: Optional[int] = Field(None, ge=1, le=31, alias="dayOfMonth")
    timezone: str = "UTC"

    class Config:
        populate_by_name = True

    @validator("timezone")
    def validate_timezone(cls, v):
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v


# Email sending

class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    from_name: Optional[str] = None


class SendResult(BaseModel):
    to: str
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None


class BatchSendResult(BaseModel):
    success: bool
    sent: int = 0
    results: List[SendResult] = []
    error: Optional[str] = None


# Engine results

class ScheduledProcessResult(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0


class AbTestResult(BaseModel):
    group_a_sent: int
    group_b_sent: int
    remaining: int = 0  # held back for the winner rollout
    status: str


class AbWinnerResult(BaseModel):
    campaign_id: str
    winner: Optional[str] = None
    remaining_sent: int = 0
    failed: int = 0
    completed: bool = True
    already_completed: bool = False


# A/B statistics

class AbVariantStats(BaseModel):
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    open_rate: float = 0.0
    click_rate: float = 0.0
    score: float = 0.0


class AbStats(BaseModel):
    variant_a: AbVariantStats
    variant_b: AbVariantStats
