from fastapi import APIRouter, Depends, Request

from attendance_ot.dependencies import get_attendance_service, get_location_validator
from attendance_ot.schemas import (
    AttendanceRecordRead,
    CheckinResponse,
    DeviceInfoPayload,
    LocationPayload,
    LocationValidationRead,
)
from attendance_ot.security import Principal, require_user
from attendance_ot.services.attendance import AttendanceService
from attendance_ot.services.location import DeviceInfo, LocationValidator

router = APIRouter(tags=["attendance"])


def _device_info(payload: DeviceInfoPayload | None) -> DeviceInfo | None:
    if payload is None:
        return None
    return DeviceInfo(type=payload.type, capability=payload.location_capability)


@router.post("/api/location/validate", response_model=LocationValidationRead)
def validate_location(
    payload: LocationPayload,
    request: Request,
    principal: Principal = Depends(require_user),
    validator: LocationValidator = Depends(get_location_validator),
) -> LocationValidationRead:
    result = validator.validate(
        lat=payload.latitude,
        lon=payload.longitude,
        accuracy_m=payload.accuracy,
        device=_device_info(payload.device),
    )
    request.state.location_status = result.validation_type.value
    return LocationValidationRead.model_validate(result.to_dict())


@router.post("/api/attendance/checkin", response_model=CheckinResponse)
def checkin(
    payload: LocationPayload,
    request: Request,
    principal: Principal = Depends(require_user),
    service: AttendanceService = Depends(get_attendance_service),
) -> CheckinResponse:
    result = service.check_in(
        principal.user_id,
        lat=payload.latitude,
        lon=payload.longitude,
        accuracy_m=payload.accuracy,
        device=_device_info(payload.device),
    )
    request.state.location_status = result.location.validation_type.value
    return CheckinResponse(
        record=AttendanceRecordRead.model_validate(result.record),
        location=LocationValidationRead.model_validate(result.location.to_dict()),
    )


@router.post("/api/attendance/checkout", response_model=AttendanceRecordRead)
def checkout(
    principal: Principal = Depends(require_user),
    service: AttendanceService = Depends(get_attendance_service),
) -> AttendanceRecordRead:
    record = service.check_out(principal.user_id)
    return AttendanceRecordRead.model_validate(record)
