from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from attendance_ot.models import (
    DeviceType,
    LocationCapability,
    LocationValidationType,
    OTSessionStatus,
    OTType,
    PayrollPeriodStatus,
    ReviewAction,
)


class DeviceInfoPayload(BaseModel):
    type: DeviceType | None = None
    location_capability: LocationCapability | None = None


class LocationPayload(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float = Field(ge=0)
    device: DeviceInfoPayload | None = None


class DetectedOfficeRead(BaseModel):
    id: int
    name: str
    distance: int


class LocationValidationRead(BaseModel):
    is_valid: bool
    confidence: float
    distance: int
    validation_type: LocationValidationType
    message: str
    detected_office: DetectedOfficeRead | None = None
    recommendations: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AttendanceRecordRead(BaseModel):
    id: int
    user_id: int
    work_date: date
    check_in_time: datetime | None = None
    check_out_time: datetime | None = None
    location_validation_type: LocationValidationType | None = None
    location_confidence: float | None = None
    is_ot_only: bool
    total_ot_hours: float
    auto_corrected_at: datetime | None = None
    auto_correction_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)


class CheckinResponse(BaseModel):
    record: AttendanceRecordRead
    location: LocationValidationRead


class OTEvidencePayload(BaseModel):
    image_url: str | None = Field(default=None, max_length=2048)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    address: str | None = Field(default=None, max_length=1000)


class OTStartRequest(OTEvidencePayload):
    ot_type: OTType | None = None
    reason: str | None = Field(default=None, max_length=2000)


class OTEndRequest(OTEvidencePayload):
    pass


class OTSessionRead(BaseModel):
    session_id: str
    session_number: int
    user_id: int
    work_date: date
    ot_type: OTType
    status: OTSessionStatus
    start_time: datetime
    end_time: datetime | None = None
    ot_hours: float
    reason: str | None = None
    auto_closed_at: datetime | None = None
    auto_closed_note: str | None = None
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None
    review_action: ReviewAction | None = None
    review_notes: str | None = None
    original_ot_hours: float | None = None
    adjusted_ot_hours: float | None = None
    payroll_locked: bool

    model_config = ConfigDict(from_attributes=True)


class OTEndResponse(BaseModel):
    session: OTSessionRead
    day_ot_hours: float
    exceeds_daily_cap: bool
    already_ended: bool


class OTActiveSessionResponse(BaseModel):
    session: OTSessionRead | None = None


class OTStatusResponse(BaseModel):
    user_id: int
    work_date: date
    checked_in: bool
    active_session: OTSessionRead | None = None
    sessions: list[OTSessionRead] = Field(default_factory=list)
    total_ot_hours: float

    model_config = ConfigDict(from_attributes=True)


class OTReviewRequest(BaseModel):
    action: ReviewAction
    notes: str | None = Field(default=None, max_length=2000)
    adjusted_hours: float | None = None


class PayrollLockRequest(BaseModel):
    month: int
    year: int


class PayrollUnlockRequest(BaseModel):
    month: int
    year: int
    reason: str


class PayrollPeriodRead(BaseModel):
    id: int
    month: int
    year: int
    period_key: str
    status: PayrollPeriodStatus
    locked_at: datetime | None = None
    locked_by: int | None = None
    unlocked_at: datetime | None = None
    unlocked_by: int | None = None
    unlock_reason: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ReconciliationRunRead(BaseModel):
    started_at: datetime
    finished_at: datetime | None = None
    scanned_records: int
    open_sessions: int
    closed: int
    open_checkouts: int = 0
    auto_checked_out: int = 0
    skipped_locked: int
    errors: int
    fatal_error: str | None = None
    closed_session_ids: list[str] = Field(default_factory=list)
    auto_checked_out_record_ids: list[int] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
