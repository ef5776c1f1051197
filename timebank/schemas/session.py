from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal

from timebank.models.session import (
    MAX_CREDIT_AMOUNT,
    MAX_DURATION_HOURS,
    DisputeResolution,
    SessionMode,
    SessionStatus,
)

# ======================
# SESSION REQUEST MODELS
# ======================

class SessionCreate(BaseModel):
    """Booking request sent by the student"""
    teacher_id: int = Field(..., description="User who will teach the session")
    skill_reference: str = Field(..., min_length=1, max_length=100, description="Opaque skill identifier")
    duration_hours: Decimal = Field(..., gt=0, le=MAX_DURATION_HOURS, description="Planned length in hours")
    credit_amount: Optional[Decimal] = Field(None, gt=0, le=MAX_CREDIT_AMOUNT, description="Agreed price; defaults to duration x hourly_rate")
    hourly_rate: Decimal = Field(Decimal("1"), gt=0, description="Credits per hour when credit_amount is omitted")
    mode: SessionMode = SessionMode.ONLINE
    scheduled_at: Optional[datetime] = None
    title: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = None
    location: Optional[str] = Field(None, max_length=255)
    meeting_link: Optional[str] = Field(None, max_length=255)


class SessionReason(BaseModel):
    """Optional free-text reason for reject / cancel / dispute"""
    reason: Optional[str] = Field(None, max_length=1000)


class DisputeResolveRequest(BaseModel):
    resolution: DisputeResolution = Field(..., description="complete | cancel | reject")

# ======================
# SESSION RESPONSE MODELS
# ======================

class SessionResponse(BaseModel):
    id: int
    teacher_id: int
    student_id: int
    skill_reference: str
    title: Optional[str] = None
    notes: Optional[str] = None
    duration_hours: Decimal
    credit_amount: Decimal
    mode: SessionMode
    scheduled_at: Optional[datetime] = None
    location: Optional[str] = None
    meeting_link: Optional[str] = None
    status: SessionStatus

    teacher_checked_in: bool = False
    student_checked_in: bool = False
    teacher_checked_in_at: Optional[datetime] = None
    student_checked_in_at: Optional[datetime] = None
    teacher_confirmed: bool = False
    student_confirmed: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    credit_held: bool = False

    cancelled_by: Optional[int] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    disputed_by: Optional[int] = None
    dispute_reason: Optional[str] = None
    dispute_opened_at: Optional[datetime] = None
    dispute_resolution: Optional[DisputeResolution] = None
    dispute_resolved_at: Optional[datetime] = None

    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SessionProgressResponse(BaseModel):
    """Live timing view for an in-progress session"""
    session_id: int
    status: str
    started_at: Optional[datetime] = None
    elapsed_seconds: float = Field(..., description="Seconds since both parties checked in")
    planned_seconds: float = Field(..., description="duration_hours x 3600")
    progress_percent: float = Field(..., ge=0, le=1, description="Clamped fraction of planned time used")
    is_overtime: bool
    check_in_opens_at: Optional[datetime] = None
    check_in_closes_at: Optional[datetime] = None
    can_check_in_now: bool = False
