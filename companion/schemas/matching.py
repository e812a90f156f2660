from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class InterestCreate(BaseModel):
    elderly_id: int


class InterestResponse(BaseModel):
    accept: bool


class FormalApplicationCreate(BaseModel):
    motivation_letter: str = Field(..., min_length=1, max_length=5000)


class ElderlyReviewRequest(BaseModel):
    decision: Literal["approve", "reject"]


class ElderlyFinalDecision(BaseModel):
    accept: bool
    reason: str | None = None


class ApplicationOut(BaseModel):
    id: str
    youth_id: int
    elderly_id: int
    status: str
    youth_decision: str
    elderly_decision: str
    motivation_letter: str | None = None
    rejection_reason: str | None = None
    info_requested: str | None = None
    applied_at: datetime
    reviewed_at: datetime | None = None
    locked_by: int | None = None
    locked_at: datetime | None = None

    class Config:
        from_attributes = True


class ApplicationListResponse(BaseModel):
    count: int
    items: list[ApplicationOut]


class PreMatchStatusOut(BaseModel):
    days_passed: int
    can_apply: bool
    is_expired: bool
    days_until_apply: int

    class Config:
        from_attributes = True


class AdmissionOut(BaseModel):
    allowed: bool
    reason: str | None = None


class AdminApproveRequest(BaseModel):
    notes: str | None = None


class AdminRejectRequest(BaseModel):
    reason: str
    notes: str | None = None


class AdminInfoRequest(BaseModel):
    info: str


class ReviewDetailOut(BaseModel):
    application: ApplicationOut
    is_valid: bool
    issues: list[str]
    waiting_hours: int
    waiting_alert: bool


class ApplicationStatsOut(BaseModel):
    pending_review: int
    locked_by_others: int
    approved_today: int
    avg_waiting_hours: float
    by_status: dict[str, int]

    class Config:
        from_attributes = True
