"""
Expand the static schedule into concrete stop visits.

Every stop time of every trip running on an active calendar date inside the
horizon becomes one ``StopTimeInstance`` with an absolute scheduled time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import date
from zoneinfo import ZoneInfo

from metrocast.core.metrics import record_skipped_record
from metrocast.models.transit import Route, StopTimeInstance, Trip
from metrocast.services.entity_reconciler import StaticEntities
from metrocast.services.errors import GTFSTimeFormatError
from metrocast.services.gtfs_static import StaticRows, StopTimeRow
from metrocast.services.gtfs_time import days_between, gtfs_timestamp

logger = logging.getLogger(__name__)

# calendar_dates.txt: 1 = service added for the date, 2 = service removed
SERVICE_ADDED = 1


def active_service_dates(
    rows: StaticRows, today: date, horizon_days: int, retention_days: int
) -> dict[str, list[str]]:
    """service_date -> active service ids, from the retention cutoff to the horizon.

    A date older than the retention window is never materialized again,
    so reloads cannot restore visits cleanup has removed.
    """
    active: dict[str, dict[str, None]] = {}
    for row in rows.calendar_dates:
        if row.exception_type != SERVICE_ADDED:
            continue
        offset = days_between(row.date, today)
        if offset > horizon_days or offset < -retention_days:
            continue
        active.setdefault(row.date, {}).setdefault(row.service_id, None)
    return {day: list(service_ids) for day, service_ids in sorted(active.items())}


def _stop_times_by_trip(rows: StaticRows) -> dict[str, list[StopTimeRow]]:
    by_trip: dict[str, list[StopTimeRow]] = {}
    for stop_time in rows.stop_times:
        by_trip.setdefault(stop_time.trip_id, []).append(stop_time)
    return by_trip


def iter_stop_time_instances(
    rows: StaticRows,
    entities: StaticEntities,
    *,
    tz: ZoneInfo,
    today: date,
    horizon_days: int,
    retention_days: int,
) -> Iterator[StopTimeInstance]:
    """Yield one scheduled instance per (service date, trip, stop)."""
    routes: dict[str, Route] = {
        route.route_id: route.without_shapes() for route in entities.routes
    }
    trips_by_service: dict[str, list[Trip]] = {}
    for trip in entities.trips:
        trips_by_service.setdefault(trip.service_id, []).append(trip)
    stop_times_by_trip = _stop_times_by_trip(rows)

    for service_date, service_ids in active_service_dates(
        rows, today, horizon_days, retention_days
    ).items():
        for service_id in service_ids:
            for trip in trips_by_service.get(service_id, []):
                route = routes.get(trip.route_id)
                if route is None:
                    logger.warning(
                        "No route %s found for trip %s", trip.route_id, trip.trip_id
                    )
                    record_skipped_record("static", "unknown_route")
                    continue

                for stop_time in stop_times_by_trip.get(trip.trip_id, []):
                    time_of_day = stop_time.arrival_time or stop_time.departure_time
                    try:
                        scheduled_time = gtfs_timestamp(service_date, time_of_day, tz)
                    except GTFSTimeFormatError as exc:
                        logger.warning(
                            "Skipping stop time %s/%s: %s",
                            trip.trip_id,
                            stop_time.stop_id,
                            exc,
                        )
                        record_skipped_record("static", "invalid_time")
                        continue

                    yield StopTimeInstance(
                        service_date=service_date,
                        trip_id=trip.trip_id,
                        stop_id=stop_time.stop_id,
                        scheduled_time=scheduled_time,
                        route=route,
                        trip=trip,
                    )


def materialize_stop_times(
    rows: StaticRows,
    entities: StaticEntities,
    *,
    tz: ZoneInfo,
    today: date,
    horizon_days: int = 3,
    retention_days: int = 3,
) -> list[StopTimeInstance]:
    """Materialize every scheduled stop visit inside the horizon."""
    instances = list(
        iter_stop_time_instances(
            rows,
            entities,
            tz=tz,
            today=today,
            horizon_days=horizon_days,
            retention_days=retention_days,
        )
    )
    logger.info(
        "Materialized %d stop time instances (horizon %d days from %s)",
        len(instances),
        horizon_days,
        today.isoformat(),
    )
    return instances
