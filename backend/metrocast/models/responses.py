"""API response envelopes."""

from __future__ import annotations

from pydantic import BaseModel, Field

from metrocast.models.transit import LiveStopTimeInstance, Stop


class ArrivalsResponse(BaseModel):
    """Upcoming visits at one stop, ordered by predicted time."""

    stop: Stop
    arrivals: list[LiveStopTimeInstance] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    store: str
    static_etag: str | None = None
    vehicle_positions_updated_at: int | None = Field(
        default=None, description="Epoch milliseconds of the last vehicle snapshot."
    )
