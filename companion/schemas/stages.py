from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class RequirementOut(BaseModel):
    id: str
    stage: str
    title: str
    description: str | None = None
    completion_mode: str
    metric: str | None = None
    required_value: int
    youth_signed: bool
    elderly_signed: bool
    is_completed: bool
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class StageInfo(BaseModel):
    stage: str
    display_name: str
    order: int
    is_current: bool
    is_completed: bool
    locked_message: str | None = None


class FeatureOut(BaseModel):
    key: str
    name: str
    description: str
    is_unlocked: bool
    unlock_stage: str
    unlock_message: str | None = None


class StageProgressionOut(BaseModel):
    relationship_id: str
    current_stage: str
    status: str
    stages: list[StageInfo]
    metrics: dict
    requirements: list[RequirementOut]
    progress_percent: int
    next_stage_preview: list[str]
    features: list[FeatureOut]
    days_together: int

    class Config:
        from_attributes = True


class RelationshipOut(BaseModel):
    id: str
    youth_id: int
    elderly_id: int
    application_id: str
    current_stage: str
    stage_start_date: datetime
    stage_metrics: dict
    status: str
    end_request_status: str
    end_request_by: int | None = None
    end_request_reason: str | None = None
    end_request_at: datetime | None = None
    cooling_ends_at: datetime | None = None
    progress_frozen_at: float | None = None
    created_at: datetime
    ended_at: datetime | None = None

    class Config:
        from_attributes = True


class AdvanceOut(BaseModel):
    advanced: bool
    from_stage: str | None = None
    to_stage: str | None = None
    reason: str | None = None
    relationship: RelationshipOut


class ActivityCreate(BaseModel):
    metric: Literal["message_count", "active_days", "video_calls", "meetings"]
    amount: int = Field(1, ge=1, le=100)


class WithdrawalRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class EndRequestReview(BaseModel):
    approve: bool
    notes: str | None = None


class CoolingPeriodOut(BaseModel):
    is_in_cooling_period: bool
    relationship_id: str | None = None
    end_request_status: str
    cooling_ends_at: datetime | None = None
    remaining_seconds: int
    progress_frozen_at: float | None = None
    stage_display_name: str

    class Config:
        from_attributes = True
