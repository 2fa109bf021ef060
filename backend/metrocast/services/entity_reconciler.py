"""
Build normalized routes, trips and stops from decoded static rows.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from metrocast.core.metrics import record_skipped_record
from metrocast.models.transit import Location, RouteWithShapes, Stop, Trip
from metrocast.services.gtfs_static import ShapePointRow, StaticRows
from metrocast.services.stop_names import (
    DEFAULT_STOP_NAME_OVERRIDES,
    disambiguate_stop_names,
)

logger = logging.getLogger(__name__)

_HEX_COLOR_RE = re.compile(r"^#?([0-9A-Fa-f]{6}|[0-9A-Fa-f]{3})$")


@dataclass
class StaticEntities:
    routes: list[RouteWithShapes] = field(default_factory=list)
    trips: list[Trip] = field(default_factory=list)
    stops: list[Stop] = field(default_factory=list)
    stop_name_overrides: dict[str, str] = field(default_factory=dict)


def normalize_color(value: str | None, default: str) -> str:
    """Return a ``#RRGGBB`` color, falling back to ``default`` when invalid."""
    if not value:
        return default
    match = _HEX_COLOR_RE.match(value.strip())
    if not match:
        logger.warning("Invalid route color %r, using %s", value, default)
        return default
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(char * 2 for char in digits)
    return f"#{digits.upper()}"


def build_polylines(shape_points: Iterable[ShapePointRow]) -> dict[str, list[Location]]:
    """Group shape points by shape id, ordered by their sequence number."""
    by_shape: dict[str, list[ShapePointRow]] = {}
    for point in shape_points:
        by_shape.setdefault(point.shape_id, []).append(point)
    return {
        shape_id: [
            Location(lat=point.lat, lng=point.lng)
            for point in sorted(points, key=lambda p: p.sequence)
        ]
        for shape_id, points in by_shape.items()
    }


def build_destinations_by_stop(
    rows: StaticRows, trips_by_id: Mapping[str, Trip]
) -> dict[str, dict[str, list[str]]]:
    """stop_id -> route_id -> distinct trip headsigns serving that stop."""
    destinations: dict[str, dict[str, dict[str, None]]] = {}
    for stop_time in rows.stop_times:
        trip = trips_by_id.get(stop_time.trip_id)
        if trip is None:
            continue
        by_route = destinations.setdefault(stop_time.stop_id, {})
        by_route.setdefault(trip.route_id, {}).setdefault(trip.headsign, None)
    return {
        stop_id: {route_id: list(headsigns) for route_id, headsigns in by_route.items()}
        for stop_id, by_route in destinations.items()
    }


def build_stop_routes(
    rows: StaticRows, trips_by_id: Mapping[str, Trip]
) -> dict[str, list[str]]:
    """stop_id -> route ids serving it, deduplicated, in first-seen order."""
    stop_routes: dict[str, dict[str, None]] = {}
    missing_trips: set[str] = set()
    for stop_time in rows.stop_times:
        trip = trips_by_id.get(stop_time.trip_id)
        if trip is None:
            if stop_time.trip_id not in missing_trips:
                logger.warning("No trip found for trip_id: %s", stop_time.trip_id)
                record_skipped_record("static", "unknown_trip")
                missing_trips.add(stop_time.trip_id)
            continue
        stop_routes.setdefault(stop_time.stop_id, {}).setdefault(trip.route_id, None)
    return {stop_id: list(routes) for stop_id, routes in stop_routes.items()}


def build_static_entities(
    rows: StaticRows,
    *,
    hub_destinations: Iterable[str] = ("PULSE",),
    name_overrides: Mapping[str, str] | None = None,
) -> StaticEntities:
    """Reconcile decoded rows into the entities the prediction store holds."""
    trips = [
        Trip(
            trip_id=row.trip_id,
            route_id=row.route_id,
            service_id=row.service_id,
            shape_id=row.shape_id,
            headsign=row.headsign,
        )
        for row in rows.trips
    ]
    trips_by_id = {trip.trip_id: trip for trip in trips}

    polylines = build_polylines(rows.shapes)
    shape_ids_by_route: dict[str, dict[str, None]] = {}
    for trip in trips:
        if trip.shape_id:
            shape_ids_by_route.setdefault(trip.route_id, {}).setdefault(
                trip.shape_id, None
            )

    routes = []
    for row in rows.routes:
        shapes = []
        for shape_id in shape_ids_by_route.get(row.route_id, {}):
            polyline = polylines.get(shape_id)
            if polyline is None:
                logger.warning(
                    "Route %s references unknown shape %s", row.route_id, shape_id
                )
                continue
            shapes.append(polyline)
        routes.append(
            RouteWithShapes(
                route_id=row.route_id,
                short_name=row.short_name,
                color=normalize_color(row.color, "#000000"),
                text_color=normalize_color(row.text_color, "#FFFFFF"),
                shapes=shapes,
            )
        )

    stop_routes = build_stop_routes(rows, trips_by_id)
    renamed = disambiguate_stop_names(
        {row.stop_id: row.name for row in rows.stops},
        build_destinations_by_stop(rows, trips_by_id),
        hub_destinations=hub_destinations,
        overrides=(
            name_overrides if name_overrides is not None else DEFAULT_STOP_NAME_OVERRIDES
        ),
    )

    stops = []
    for row in rows.stops:
        if not row.stop_code:
            logger.warning("No stop_code found for stop_id: %s", row.stop_id)
            record_skipped_record("static", "missing_stop_code")
            continue
        stops.append(
            Stop(
                stop_id=row.stop_id,
                stop_code=row.stop_code,
                name=renamed.get(row.stop_id, row.name),
                location=Location(lat=row.lat, lng=row.lng),
                route_ids=stop_routes.get(row.stop_id, []),
            )
        )

    logger.info(
        "Reconciled %d routes, %d trips, %d stops (%d renamed)",
        len(routes),
        len(trips),
        len(stops),
        len(renamed),
    )
    return StaticEntities(
        routes=routes, trips=trips, stops=stops, stop_name_overrides=renamed
    )
