"""
GTFS Real-Time feed decoder.

Fetches the three live feeds (vehicle positions, trip updates, alerts) and
turns their protobuf messages into typed records. Raw wire enums are decoded
here; nothing downstream ever sees a schedule-relationship integer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from metrocast.core.config import Settings
from metrocast.core.metrics import record_skipped_record
from metrocast.models.transit import Alert
from metrocast.services.errors import FeedFetchError, FeedFormatError

logger = logging.getLogger(__name__)

FeedMessage = gtfs_realtime_pb2.FeedMessage
_SKIPPED = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate.SKIPPED
_ENGLISH = "en"


@dataclass(frozen=True)
class VehicleReport:
    """A vehicle as reported by the feed, before trip/route resolution."""

    vehicle_id: str
    trip_id: str
    lat: float
    lng: float


@dataclass(frozen=True)
class StopTimeEvent:
    """A single stop's prediction within a trip update."""

    stop_id: str
    # None only for a skipped stop the feed gave no time for.
    time: datetime | None
    skipped: bool = False


@dataclass
class TripUpdateReport:
    trip_id: str
    stop_time_events: list[StopTimeEvent] = field(default_factory=list)


def decode_feed_message(payload: bytes) -> FeedMessage:
    """Parse a GTFS-RT ``FeedMessage``, raising ``FeedFormatError`` if invalid."""
    feed = FeedMessage()
    try:
        feed.ParseFromString(payload)
    except DecodeError as exc:
        raise FeedFormatError(f"Invalid GTFS-RT payload: {exc}") from exc
    return feed


def feed_timestamp(feed: FeedMessage) -> datetime | None:
    """Return the feed header timestamp, if the producer set one."""
    if feed.header.HasField("timestamp") and feed.header.timestamp:
        return datetime.fromtimestamp(feed.header.timestamp, timezone.utc)
    return None


def extract_vehicle_reports(feed: FeedMessage) -> list[VehicleReport]:
    """Extract vehicles that carry an id, a trip and a position."""
    reports = []
    for entity in feed.entity:
        if not entity.HasField("vehicle"):
            continue

        vehicle = entity.vehicle
        vehicle_id = vehicle.vehicle.id if vehicle.HasField("vehicle") else ""
        trip_id = vehicle.trip.trip_id if vehicle.HasField("trip") else ""
        has_position = vehicle.HasField("position")
        lat = vehicle.position.latitude if has_position else 0.0
        lng = vehicle.position.longitude if has_position else 0.0

        # A 0,0 coordinate is what an unset position decodes to.
        if not vehicle_id or not trip_id or not lat or not lng:
            logger.warning("Invalid vehicle data in entity %s", entity.id)
            record_skipped_record("vehicle_positions", "invalid")
            continue

        reports.append(
            VehicleReport(vehicle_id=vehicle_id, trip_id=trip_id, lat=lat, lng=lng)
        )
    return reports


def _event_time(stop_time_update) -> int | None:
    # The first stop of a trip only has a departure and the last only an
    # arrival, riders care about arrival everywhere else.
    for event_name in ("arrival", "departure"):
        if stop_time_update.HasField(event_name):
            event = getattr(stop_time_update, event_name)
            if event.HasField("time") and event.time:
                return event.time
    return None


def extract_trip_updates(feed: FeedMessage) -> list[TripUpdateReport]:
    """Extract trip updates with their per-stop predicted times."""
    reports = []
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue

        trip_update = entity.trip_update
        trip_id = trip_update.trip.trip_id
        if not trip_id:
            logger.warning("Trip update without trip id in entity %s", entity.id)
            record_skipped_record("trip_updates", "missing_trip")
            continue

        report = TripUpdateReport(trip_id=trip_id)
        for stop_time_update in trip_update.stop_time_update:
            raw_time = _event_time(stop_time_update)
            stop_id = stop_time_update.stop_id
            skipped = stop_time_update.schedule_relationship == _SKIPPED
            if not stop_id or (not raw_time and not skipped):
                logger.warning(
                    "Missing time or stop id in trip %s update: %s",
                    trip_id,
                    stop_time_update,
                )
                record_skipped_record("trip_updates", "missing_time")
                continue

            report.stop_time_events.append(
                StopTimeEvent(
                    stop_id=stop_id,
                    time=datetime.fromtimestamp(raw_time, timezone.utc)
                    if raw_time
                    else None,
                    skipped=skipped,
                )
            )
        reports.append(report)
    return reports


def _english_text(translated_string) -> str | None:
    for translation in translated_string.translation:
        if translation.language == _ENGLISH:
            return translation.text
    return None


def extract_alerts(feed: FeedMessage) -> list[Alert]:
    """Extract alerts that have an English header and description."""
    alerts = []
    for entity in feed.entity:
        if not entity.HasField("alert"):
            continue

        header = _english_text(entity.alert.header_text)
        description = _english_text(entity.alert.description_text)
        if header is None or description is None:
            logger.debug("Dropping alert %s without English text", entity.id)
            record_skipped_record("alerts", "no_english")
            continue

        alerts.append(
            Alert(alert_id=entity.id, header_text=header, description_text=description)
        )
    return alerts


class GTFSRealtimeClient:
    """Fetches and decodes the live GTFS-RT feeds."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            timeout=settings.gtfs_rt_timeout_seconds,
            headers={"User-Agent": "Metrocast-GTFS-RT/1.0"},
        )

    async def __aenter__(self) -> "GTFSRealtimeClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def fetch(self, url: str) -> FeedMessage:
        """Fetch one feed URL and decode it."""
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise FeedFetchError(f"GET {url} failed: {exc}") from exc
        return decode_feed_message(response.content)

    async def fetch_vehicle_positions(self) -> FeedMessage:
        return await self.fetch(self.settings.gtfs_rt_vehicle_positions_url)

    async def fetch_trip_updates(self) -> FeedMessage:
        return await self.fetch(self.settings.gtfs_rt_trip_updates_url)

    async def fetch_alerts(self) -> FeedMessage:
        return await self.fetch(self.settings.gtfs_rt_alerts_url)
