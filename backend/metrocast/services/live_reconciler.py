"""
Live feed reconciliation.

Maps GTFS-RT vehicle positions, trip updates and alerts onto the static
entities already in the prediction store and writes the result back.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from metrocast.core.config import Settings
from metrocast.core.metrics import record_skipped_record
from metrocast.models.transit import (
    Location,
    StopTimeInstanceKey,
    StopTimeStatus,
    StopTimeUpdate,
    VehiclePosition,
)
from metrocast.services.gtfs_realtime import (
    GTFSRealtimeClient,
    extract_alerts,
    extract_trip_updates,
    extract_vehicle_reports,
    feed_timestamp,
)
from metrocast.services.gtfs_time import service_date_for
from metrocast.services.prediction_store import PredictionStore

logger = logging.getLogger(__name__)


def determine_status(
    event_time: datetime, skipped: bool, now: datetime
) -> StopTimeStatus:
    """Rider-facing status of a predicted stop visit.

    A skip marker wins over timing; otherwise a prediction strictly in the
    past means the vehicle already left.
    """
    if skipped:
        return StopTimeStatus.SKIPPED
    if event_time < now:
        return StopTimeStatus.DEPARTED
    return StopTimeStatus.SCHEDULED


class LiveReconciler:
    """Runs one poll cycle of each live feed against the prediction store."""

    def __init__(
        self,
        store: PredictionStore,
        client: GTFSRealtimeClient,
        settings: Settings,
    ) -> None:
        self.store = store
        self.client = client
        self.settings = settings

    async def load_vehicle_positions(self, now: datetime | None = None) -> int:
        """Replace the vehicle position snapshot. Returns the vehicle count."""
        feed = await self.client.fetch_vehicle_positions()
        reports = extract_vehicle_reports(feed)

        trips = await self.store.get_trips_by_id(report.trip_id for report in reports)
        routes = await self.store.get_routes_by_id(
            trip.route_id for trip in trips.values()
        )

        vehicles = []
        for report in reports:
            trip = trips.get(report.trip_id)
            if trip is None:
                logger.warning(
                    "No trip found for vehicle %s trip_id %s",
                    report.vehicle_id,
                    report.trip_id,
                )
                record_skipped_record("vehicle_positions", "unknown_trip")
                continue
            route = routes.get(trip.route_id)
            if route is None:
                logger.warning(
                    "No route found for vehicle %s route_id %s",
                    report.vehicle_id,
                    trip.route_id,
                )
                record_skipped_record("vehicle_positions", "unknown_route")
                continue
            vehicles.append(
                VehiclePosition(
                    vehicle_id=report.vehicle_id,
                    location=Location(lat=report.lat, lng=report.lng),
                    route=route,
                )
            )

        updated_at = feed_timestamp(feed) or now or datetime.now(timezone.utc)
        await self.store.set_vehicle_positions(vehicles, updated_at)
        logger.debug("Stored %d vehicle positions", len(vehicles))
        return len(vehicles)

    async def load_trip_updates(self, now: datetime | None = None) -> int:
        """Apply predicted stop times. Returns the number of updates stored."""
        now = now or datetime.now(timezone.utc)
        tz = self.settings.timezone

        feed = await self.client.fetch_trip_updates()
        reports = extract_trip_updates(feed)
        known_trips = await self.store.get_trips_by_id(
            report.trip_id for report in reports
        )

        updates = []
        untimed_skips: list[StopTimeInstanceKey] = []
        for report in reports:
            if report.trip_id not in known_trips:
                logger.warning("No trip found for trip update %s", report.trip_id)
                record_skipped_record("trip_updates", "unknown_trip")
                continue
            if not report.stop_time_events:
                continue

            # Trip updates do not name their service date, the first
            # predicted stop is the best anchor available.
            anchor = next(
                (event.time for event in report.stop_time_events if event.time),
                now,
            )
            service_date = service_date_for(anchor, tz)
            for event in report.stop_time_events:
                key = StopTimeInstanceKey(
                    service_date=service_date,
                    trip_id=report.trip_id,
                    stop_id=event.stop_id,
                )
                if event.time is None:
                    untimed_skips.append(key)
                    continue
                updates.append(
                    StopTimeUpdate(
                        **key._asdict(),
                        predicted_time=event.time,
                        status=determine_status(event.time, event.skipped, now),
                    )
                )

        # A skip without a time keeps the visit at its scheduled position.
        scheduled = await self.store.get_stop_time_instances(untimed_skips)
        for key in untimed_skips:
            instance = scheduled.get(key.encode())
            if instance is None:
                record_skipped_record("trip_updates", "unknown_instance")
                continue
            updates.append(
                StopTimeUpdate(
                    **key._asdict(),
                    predicted_time=instance.scheduled_time,
                    status=StopTimeStatus.SKIPPED,
                )
            )

        applied = await self.store.set_stop_time_updates(updates, now)
        logger.debug("Applied %d of %d stop time updates", applied, len(updates))
        return applied

    async def load_alerts(self) -> int:
        """Replace the active alert set. Returns the alert count."""
        feed = await self.client.fetch_alerts()
        alerts = extract_alerts(feed)
        await self.store.set_alerts(alerts)
        logger.info("Stored %d service alerts", len(alerts))
        return len(alerts)
