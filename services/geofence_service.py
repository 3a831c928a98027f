import math
from enum import Enum

from pydantic import BaseModel

from core.config import GeofenceConfig
from core.errors import InvalidCoordinates
from utils.geofence import haversine_dist, is_valid_coordinate_pair

DEFAULT_WALKING_SPEED_MPS = 1.4


class GeofenceClassification(str, Enum):
    INSIDE = "inside"
    BUFFER = "buffer"
    OUTSIDE = "outside"


class GeofenceDecision(BaseModel):
    distance_meters: float
    classification: GeofenceClassification

    @property
    def is_inside(self) -> bool:
        return self.classification == GeofenceClassification.INSIDE


class CheckInHint(BaseModel):
    classification: GeofenceClassification
    distance_meters: float
    can_check_in: bool
    severity: str
    message: str


class ArrivalEstimate(BaseModel):
    distance_meters: float
    eta_seconds: int
    eta_minutes: int
    walking_speed_mps: float


class GeofenceEvaluator:
    """Classifies a position against the single office geofence.

    Stateless apart from the frozen config, so one instance is shared by every
    request handler and socket without locking.
    """

    def __init__(self, config: GeofenceConfig):
        self.config = config

    def _raw_distance(self, latitude, longitude) -> float:
        if not is_valid_coordinate_pair(latitude, longitude):
            raise InvalidCoordinates(latitude, longitude)
        return haversine_dist(
            self.config.center_lat,
            self.config.center_lng,
            latitude,
            longitude,
        )

    def evaluate(self, latitude: float, longitude: float) -> GeofenceDecision:
        distance = self._raw_distance(latitude, longitude)
        core = self.config.radius_meters

        if distance <= core:
            classification = GeofenceClassification.INSIDE
        elif distance <= core + self.config.buffer_meters:
            classification = GeofenceClassification.BUFFER
        else:
            classification = GeofenceClassification.OUTSIDE

        return GeofenceDecision(
            distance_meters=round(distance, 2),
            classification=classification,
        )

    def estimated_arrival_seconds(
        self,
        latitude: float,
        longitude: float,
        walking_speed_mps: float = DEFAULT_WALKING_SPEED_MPS,
    ) -> float:
        if walking_speed_mps <= 0:
            raise ValueError("walking_speed_mps must be greater than zero")
        return self._raw_distance(latitude, longitude) / walking_speed_mps

    def eta(
        self,
        latitude: float,
        longitude: float,
        walking_speed_mps: float = DEFAULT_WALKING_SPEED_MPS,
    ) -> ArrivalEstimate:
        seconds = self.estimated_arrival_seconds(latitude, longitude, walking_speed_mps)
        return ArrivalEstimate(
            distance_meters=round(seconds * walking_speed_mps, 2),
            eta_seconds=round(seconds),
            eta_minutes=math.ceil(seconds / 60),
            walking_speed_mps=walking_speed_mps,
        )

    def check_in_hint(self, latitude: float, longitude: float) -> CheckInHint:
        decision = self.evaluate(latitude, longitude)
        core = self.config.radius_meters
        distance = decision.distance_meters

        if decision.classification == GeofenceClassification.INSIDE:
            message = f"You're inside the office ({distance}m from center). Ready to check in!"
            severity = "success"
        elif decision.classification == GeofenceClassification.BUFFER:
            message = (
                f"You're close to the office ({distance}m away). "
                f"Move {distance - core:.1f}m closer to check in."
            )
            severity = "warning"
        else:
            message = (
                f"You're too far from the office ({distance}m away). "
                f"You need to be within {core:g}m to check in."
            )
            severity = "error"

        return CheckInHint(
            classification=decision.classification,
            distance_meters=distance,
            can_check_in=decision.is_inside,
            severity=severity,
            message=message,
        )
