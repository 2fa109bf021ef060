"""
Transit records held in the prediction store.

Static entities (routes, trips, stops) are replaced wholesale on every
schedule load. Stop time instances and updates are keyed by
``(service_date, trip_id, stop_id)`` and upserted individually.

All instants are timezone-aware UTC datetimes in Python and epoch
milliseconds once serialized.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, NamedTuple

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer


def to_epoch_millis(value: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    return int(value.timestamp() * 1000)


def from_epoch_millis(value: Any) -> Any:
    """Accept epoch milliseconds wherever a datetime is expected."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return value


EpochMillis = Annotated[
    datetime,
    BeforeValidator(from_epoch_millis),
    PlainSerializer(to_epoch_millis, return_type=int),
]

SERVICE_DATE_PATTERN = r"^\d{8}$"


class StopTimeStatus(str, Enum):
    """Status of a single stop visit as seen by riders."""

    SCHEDULED = "scheduled"
    DEPARTED = "departed"
    SKIPPED = "skipped"


class Location(BaseModel):
    lat: float
    lng: float


class Route(BaseModel):
    """A route as shown on arrival boards and vehicle icons."""

    route_id: str
    short_name: str
    color: str = Field("#000000", description="Background color, '#RRGGBB'")
    text_color: str = Field("#FFFFFF", description="Text color, '#RRGGBB'")


class RouteWithShapes(Route):
    """A route plus one polyline per distinct shape its trips use."""

    shapes: list[list[Location]] = Field(default_factory=list)

    def without_shapes(self) -> Route:
        return Route.model_validate(self.model_dump(exclude={"shapes"}))


class Trip(BaseModel):
    trip_id: str
    route_id: str
    service_id: str
    shape_id: str | None = None
    headsign: str = ""


class Stop(BaseModel):
    """A rider-facing stop with its display name already disambiguated."""

    stop_id: str
    stop_code: str
    name: str
    location: Location
    route_ids: list[str] = Field(default_factory=list)


class VehiclePosition(BaseModel):
    vehicle_id: str
    location: Location
    route: Route


class Alert(BaseModel):
    alert_id: str
    header_text: str
    description_text: str


class StopTimeInstanceKey(NamedTuple):
    """Identity of "this trip visits this stop on this service date"."""

    service_date: str
    trip_id: str
    stop_id: str

    def encode(self) -> str:
        return f"{self.service_date}:{self.trip_id}:{self.stop_id}"

    @classmethod
    def decode(cls, raw: str) -> "StopTimeInstanceKey":
        # Service dates never contain ':' so the first split is unambiguous,
        # stop ids are split off the right because trip ids may contain ':'.
        service_date, rest = raw.split(":", 1)
        trip_id, stop_id = rest.rsplit(":", 1)
        return cls(service_date, trip_id, stop_id)


class _KeyedStopTime(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_date: str = Field(..., pattern=SERVICE_DATE_PATTERN)
    trip_id: str
    stop_id: str

    @property
    def key(self) -> StopTimeInstanceKey:
        return StopTimeInstanceKey(self.service_date, self.trip_id, self.stop_id)


class StopTimeInstance(_KeyedStopTime):
    """A scheduled stop visit. Never mutated once written."""

    scheduled_time: EpochMillis
    route: Route
    trip: Trip


class StopTimeUpdate(_KeyedStopTime):
    """A live prediction for a scheduled stop visit."""

    predicted_time: EpochMillis
    status: StopTimeStatus = StopTimeStatus.SCHEDULED


class LiveStopTimeInstance(StopTimeInstance):
    """Read-time merge of a scheduled instance and its latest live update."""

    predicted_time: EpochMillis
    status: StopTimeStatus = StopTimeStatus.SCHEDULED

    @classmethod
    def merge(
        cls, instance: StopTimeInstance, update: StopTimeUpdate | None
    ) -> "LiveStopTimeInstance":
        return cls(
            service_date=instance.service_date,
            trip_id=instance.trip_id,
            stop_id=instance.stop_id,
            scheduled_time=instance.scheduled_time,
            route=instance.route,
            trip=instance.trip,
            predicted_time=(
                update.predicted_time if update else instance.scheduled_time
            ),
            status=update.status if update else StopTimeStatus.SCHEDULED,
        )


__all__ = [
    "Alert",
    "EpochMillis",
    "LiveStopTimeInstance",
    "Location",
    "Route",
    "RouteWithShapes",
    "Stop",
    "StopTimeInstance",
    "StopTimeInstanceKey",
    "StopTimeStatus",
    "StopTimeUpdate",
    "Trip",
    "VehiclePosition",
    "from_epoch_millis",
    "to_epoch_millis",
]
