"""Visit domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from ...models_visit import VISIT_STATUSES
from ...shared.time_utils import to_naive_utc


def _validate_status(v):
    if v is not None and v not in VISIT_STATUSES:
        raise ValueError(f"status must be one of {', '.join(VISIT_STATUSES)}")
    return v


def _validate_duration(v):
    if v is not None and v <= 0:
        raise ValueError("duration_minutes must be positive")
    return v


class VisitCreate(BaseModel):
    """Schema for creating a new visit"""

    patient_id: int
    visit_date: datetime
    duration_minutes: Optional[int] = None
    visit_type: Optional[str] = None
    status: str = "SCHEDULED"
    notes: Optional[str] = None

    @field_validator("visit_date")
    @classmethod
    def normalize_visit_date(cls, v):
        return to_naive_utc(v)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _validate_status(v)

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v):
        return _validate_duration(v)


class VisitUpdate(BaseModel):
    """Schema for updating a visit; unset fields are left alone"""

    patient_id: Optional[int] = None
    visit_date: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    visit_type: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("visit_date")
    @classmethod
    def normalize_visit_date(cls, v):
        return to_naive_utc(v) if v else v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _validate_status(v)

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v):
        return _validate_duration(v)


class VisitResponse(BaseModel):
    """Schema for visit response"""

    id: int
    patient_id: int
    dietitian_id: int
    visit_date: datetime
    duration_minutes: Optional[int] = None
    visit_type: Optional[str] = None
    status: str
    notes: Optional[str] = None
    google_event_id: Optional[str] = None
    google_event_deleted: bool = False
    sync_status: str
    last_sync_at: Optional[datetime] = None
    last_sync_source: Optional[str] = None
    sync_error_message: Optional[str] = None
    sync_error_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
