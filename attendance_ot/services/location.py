"""Geofence validation for check-ins.

Raw GPS is unreliable indoors and on laptops/desktops, so a reported position
is classified through ordered tiers instead of one hard radius. Each tier
carries a confidence that is discounted by how far the reported accuracy is
from what the device class normally achieves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from math import asin, cos, radians, sin, sqrt
from typing import TYPE_CHECKING, Any, Iterable

from attendance_ot.models import DeviceType, LocationCapability, LocationValidationType, OfficeLocation

if TYPE_CHECKING:
    from attendance_ot.repository import AttendanceRepository

logger = logging.getLogger("attendance_ot.location")

EARTH_RADIUS_M = 6371000.0
DEFAULT_OFFICE_RADIUS_M = 100

PRECISION_EXCELLENT_M = 10
PRECISION_GOOD_M = 50
PRECISION_FAIR_M = 200
PRECISION_POOR_M = 500

INDOOR_ACCURACY_THRESHOLD_M = 50
INDOOR_DISTANCE_MULTIPLIER = 20.0
POOR_GPS_THRESHOLD_M = 200
POOR_GPS_MULTIPLIER = 25.0
CLOSE_PROXIMITY_MULTIPLIER = 1.5

DEVICE_RADIUS_MULTIPLIERS: dict[LocationCapability | None, float] = {
    LocationCapability.EXCELLENT: 1.0,
    LocationCapability.GOOD: 1.5,
    LocationCapability.LIMITED: 2.5,
    LocationCapability.POOR: 3.0,
    None: 2.0,
}

# (typical, max) accuracy in meters per device class.
EXPECTED_ACCURACY_M: dict[LocationCapability | None, tuple[float, float]] = {
    LocationCapability.EXCELLENT: (10, 20),
    LocationCapability.GOOD: (25, 50),
    LocationCapability.LIMITED: (100, 200),
    LocationCapability.POOR: (300, 1000),
    None: (200, 500),
}


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    type: DeviceType | None = None
    capability: LocationCapability | None = None


@dataclass(frozen=True, slots=True)
class DetectedOffice:
    id: int
    name: str
    distance: int


@dataclass(frozen=True, slots=True)
class LocationValidationResult:
    is_valid: bool
    confidence: float
    distance: int
    validation_type: LocationValidationType
    message: str
    accuracy: float
    effective_radius: int
    detected_office: DetectedOffice | None = None
    recommendations: list[str] = field(default_factory=list)
    confidence_factors: list[str] = field(default_factory=list)

    @property
    def indoor_detection(self) -> bool:
        return self.validation_type == LocationValidationType.INDOOR_COMPENSATION

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence": self.confidence,
            "distance": self.distance,
            "validation_type": self.validation_type.value,
            "message": self.message,
            "detected_office": (
                {
                    "id": self.detected_office.id,
                    "name": self.detected_office.name,
                    "distance": self.detected_office.distance,
                }
                if self.detected_office is not None
                else None
            ),
            "recommendations": list(self.recommendations),
            "metadata": {
                "accuracy": self.accuracy,
                "effective_radius": self.effective_radius,
                "indoor_detection": self.indoor_detection,
                "confidence_factors": list(self.confidence_factors),
            },
        }


@dataclass(frozen=True, slots=True)
class _CompensationTier:
    factor: str
    min_accuracy_m: float
    radius_multiplier: float
    confidence: float
    validation_type: LocationValidationType
    message: str
    recommendation: str


# Poor accuracy is read as evidence of being indoors near the office.
COMPENSATION_TIERS: tuple[_CompensationTier, ...] = (
    _CompensationTier(
        factor="indoor_gps_compensation",
        min_accuracy_m=INDOOR_ACCURACY_THRESHOLD_M,
        radius_multiplier=INDOOR_DISTANCE_MULTIPLIER,
        confidence=0.85,
        validation_type=LocationValidationType.INDOOR_COMPENSATION,
        message="Indoor location detected with GPS compensation.",
        recommendation="GPS accuracy is limited indoors - location validated successfully",
    ),
    _CompensationTier(
        factor="poor_gps_indoor_assumption",
        min_accuracy_m=POOR_GPS_THRESHOLD_M,
        radius_multiplier=POOR_GPS_MULTIPLIER,
        confidence=0.80,
        validation_type=LocationValidationType.PROXIMITY_BASED,
        message="Poor GPS signal - assuming indoor office location.",
        recommendation="Poor GPS signal typically indicates indoor location",
    ),
)


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(sqrt(min(1.0, a)))
    return EARTH_RADIUS_M * c


def device_radius_multiplier(device: DeviceInfo | None) -> float:
    capability = device.capability if device is not None else None
    return DEVICE_RADIUS_MULTIPLIERS.get(capability, DEVICE_RADIUS_MULTIPLIERS[None])


def device_confidence_multiplier(accuracy_m: float, device: DeviceInfo | None) -> float:
    if device is None or device.capability is None:
        return 0.8
    typical, maximum = EXPECTED_ACCURACY_M[device.capability]
    if accuracy_m <= typical:
        return 1.0
    if accuracy_m <= maximum:
        return 0.85
    return 0.7


def _gps_quality_factor(accuracy_m: float) -> tuple[float, str]:
    if accuracy_m <= PRECISION_EXCELLENT_M:
        return 0.95, "excellent_gps"
    if accuracy_m <= PRECISION_GOOD_M:
        return 0.9, "good_gps"
    if accuracy_m <= PRECISION_FAIR_M:
        return 0.8, "fair_gps"
    return 0.7, "poor_gps_but_close"


def validate_against_office(
    office: OfficeLocation,
    *,
    distance: float,
    accuracy_m: float,
    device: DeviceInfo | None = None,
) -> LocationValidationResult:
    base_radius = float(office.radius_m or DEFAULT_OFFICE_RADIUS_M)
    rounded_distance = int(round(distance))
    device_multiplier = device_confidence_multiplier(accuracy_m, device)
    device_type = device.type if device is not None else None
    capability = device.capability if device is not None else None
    factors: list[str] = []
    recommendations: list[str] = []
    effective_radius = base_radius

    if distance <= base_radius:
        gps_confidence, gps_factor = _gps_quality_factor(accuracy_m)
        validation_type = LocationValidationType.EXACT
        confidence = gps_confidence * device_multiplier
        message = f"Perfect office location match. Distance: {rounded_distance}m"
        factors.append("within_base_radius")
        if device_type is not None:
            factors.append(f"device_{device_type.value}")
        factors.append(gps_factor)
    elif distance <= base_radius * device_radius_multiplier(device):
        confidence = 0.85 * device_multiplier
        if device_type == DeviceType.MOBILE:
            validation_type = LocationValidationType.INDOOR_COMPENSATION
            message = f"Indoor location detected with GPS compensation. Distance: {rounded_distance}m"
            factors.append("mobile_indoor_compensation")
            recommendations.append("GPS accuracy is limited indoors - location validated successfully")
            effective_radius = base_radius * INDOOR_DISTANCE_MULTIPLIER
        else:
            validation_type = LocationValidationType.PROXIMITY_BASED
            message = f"Office location verified using network positioning. Distance: {rounded_distance}m"
            factors.append("desktop_network_positioning")
            recommendations.append("Network-based positioning working normally for office location")
        factors.append(f"device_aware_validation_{capability.value if capability else 'default'}")
    else:
        tier = next(
            (
                item
                for item in COMPENSATION_TIERS
                if accuracy_m >= item.min_accuracy_m and distance <= base_radius * item.radius_multiplier
            ),
            None,
        )
        if tier is not None:
            validation_type = tier.validation_type
            confidence = tier.confidence
            message = f"{tier.message} Distance: {rounded_distance}m"
            factors.append(tier.factor)
            recommendations.append(tier.recommendation)
            effective_radius = base_radius * tier.radius_multiplier
        elif distance <= base_radius * CLOSE_PROXIMITY_MULTIPLIER and accuracy_m <= PRECISION_GOOD_M:
            validation_type = LocationValidationType.PROXIMITY_BASED
            confidence = 0.65
            message = f"Close proximity to office detected. Distance: {rounded_distance}m"
            factors.append("close_proximity_good_gps")
        else:
            validation_type = LocationValidationType.FAILED
            confidence = 0.0
            message = f"Outside office premises. Distance: {rounded_distance}m (limit: {int(base_radius)}m)"
            if accuracy_m > PRECISION_POOR_M:
                recommendations.append("GPS accuracy is very poor - try moving to an open area")
                recommendations.append("Ensure location services are enabled")
                factors.append("very_poor_gps")
            else:
                recommendations.append(f"Move closer to office (currently {rounded_distance}m away)")
                factors.append("outside_range")

    is_valid = validation_type != LocationValidationType.FAILED
    return LocationValidationResult(
        is_valid=is_valid,
        confidence=round(confidence, 4),
        distance=rounded_distance,
        validation_type=validation_type,
        message=message,
        accuracy=accuracy_m,
        effective_radius=int(round(effective_radius)),
        detected_office=(
            DetectedOffice(id=office.id, name=office.name, distance=rounded_distance) if is_valid else None
        ),
        recommendations=recommendations,
        confidence_factors=factors,
    )


def validate_location(
    offices: Iterable[OfficeLocation],
    *,
    lat: float,
    lon: float,
    accuracy_m: float,
    device: DeviceInfo | None = None,
) -> LocationValidationResult:
    best: LocationValidationResult | None = None
    closest: tuple[float, OfficeLocation] | None = None

    for office in offices:
        distance = distance_m(lat, lon, office.latitude, office.longitude)
        if closest is None or distance < closest[0]:
            closest = (distance, office)
        candidate = validate_against_office(office, distance=distance, accuracy_m=accuracy_m, device=device)
        if candidate.is_valid and (best is None or candidate.confidence > best.confidence):
            best = candidate

    if best is not None:
        return best

    if closest is None:
        return LocationValidationResult(
            is_valid=False,
            confidence=0.0,
            distance=0,
            validation_type=LocationValidationType.FAILED,
            message="No office locations configured",
            accuracy=accuracy_m,
            effective_radius=0,
            recommendations=["Contact administrator to configure office locations"],
            confidence_factors=["no_office_locations"],
        )

    distance, office = closest
    return validate_against_office(office, distance=distance, accuracy_m=accuracy_m, device=device)


def location_recommendations(accuracy_m: float) -> list[str]:
    if accuracy_m > PRECISION_POOR_M:
        return [
            "GPS accuracy is very poor - try these steps:",
            "Move to an open area away from buildings",
            "Restart your location services",
            "Check if location permissions are granted",
        ]
    if accuracy_m > PRECISION_FAIR_M:
        return [
            "GPS accuracy is limited - try these steps:",
            "Move closer to a window if indoors",
            "Wait a moment for GPS to improve",
        ]
    if accuracy_m > PRECISION_GOOD_M:
        return ["GPS accuracy is moderate - location detected successfully"]
    return ["Excellent GPS accuracy - location precisely detected"]


class LocationValidator:
    """Validates a reported position against every active office."""

    def __init__(self, repository: AttendanceRepository) -> None:
        self._repository = repository

    def validate(
        self,
        *,
        lat: float,
        lon: float,
        accuracy_m: float,
        device: DeviceInfo | None = None,
    ) -> LocationValidationResult:
        offices = [office for office in self._repository.list_office_locations() if office.is_active]
        result = validate_location(offices, lat=lat, lon=lon, accuracy_m=accuracy_m, device=device)
        logger.info(
            "location_validated",
            extra={
                "is_valid": result.is_valid,
                "validation_type": result.validation_type.value,
                "confidence": result.confidence,
                "distance_m": result.distance,
                "accuracy_m": accuracy_m,
                "office_count": len(offices),
            },
        )
        return result
