"""
GTFS static feed decoder.

Fetches the agency's schedule bundle, reads it with gtfs-kit and turns each
table into typed rows. Rows that fail validation are logged and skipped so a
single bad line never sinks a whole schedule load.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, TypeVar

import gtfs_kit as gk
import httpx
import pandas as pd

from metrocast.core.config import Settings
from metrocast.core.metrics import record_skipped_record
from metrocast.services.errors import FeedFetchError, FeedFormatError

logger = logging.getLogger(__name__)
T = TypeVar("T")

_USER_AGENT = "Metrocast-GTFS-Static/1.0"
_REQUIRED_TABLES = ("routes", "trips", "stops", "stop_times")


def _clean_value(val: Any) -> Any:
    """Convert pandas NA/NaN values and numpy scalars to Python natives."""
    if val is None:
        return None
    if pd.isna(val):
        return None
    if hasattr(val, "item"):
        return val.item()
    return val


def _text(row: Any, name: str) -> str | None:
    value = _clean_value(getattr(row, name, None))
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _number(row: Any, name: str) -> float | None:
    value = _clean_value(getattr(row, name, None))
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class RouteRow:
    route_id: str
    short_name: str
    color: str | None = None
    text_color: str | None = None


@dataclass(frozen=True)
class TripRow:
    trip_id: str
    route_id: str
    service_id: str
    shape_id: str | None = None
    headsign: str = ""


@dataclass(frozen=True)
class StopRow:
    stop_id: str
    stop_code: str | None
    name: str
    lat: float
    lng: float


@dataclass(frozen=True)
class StopTimeRow:
    trip_id: str
    stop_id: str
    arrival_time: str | None
    departure_time: str | None
    stop_sequence: int


@dataclass(frozen=True)
class ShapePointRow:
    shape_id: str
    lat: float
    lng: float
    sequence: float


@dataclass(frozen=True)
class CalendarDateRow:
    service_id: str
    date: str
    exception_type: int


@dataclass
class StaticRows:
    """Typed rows decoded from one schedule bundle."""

    routes: list[RouteRow] = field(default_factory=list)
    trips: list[TripRow] = field(default_factory=list)
    stops: list[StopRow] = field(default_factory=list)
    stop_times: list[StopTimeRow] = field(default_factory=list)
    shapes: list[ShapePointRow] = field(default_factory=list)
    calendar_dates: list[CalendarDateRow] = field(default_factory=list)

    def has_required_data(self) -> bool:
        """True when every table a schedule load needs has at least one row."""
        return all(getattr(self, table) for table in _REQUIRED_TABLES)


def _parse_route(row: Any) -> RouteRow | None:
    route_id = _text(row, "route_id")
    if route_id is None:
        return None
    short_name = (
        _text(row, "route_short_name") or _text(row, "route_long_name") or route_id
    )
    return RouteRow(
        route_id=route_id,
        short_name=short_name,
        color=_text(row, "route_color"),
        text_color=_text(row, "route_text_color"),
    )


def _parse_trip(row: Any) -> TripRow | None:
    trip_id = _text(row, "trip_id")
    route_id = _text(row, "route_id")
    service_id = _text(row, "service_id")
    if not (trip_id and route_id and service_id):
        return None
    return TripRow(
        trip_id=trip_id,
        route_id=route_id,
        service_id=service_id,
        shape_id=_text(row, "shape_id"),
        headsign=_text(row, "trip_headsign") or "",
    )


def _parse_stop(row: Any) -> StopRow | None:
    stop_id = _text(row, "stop_id")
    name = _text(row, "stop_name")
    lat = _number(row, "stop_lat")
    lng = _number(row, "stop_lon")
    if stop_id is None or name is None or lat is None or lng is None:
        return None
    return StopRow(
        stop_id=stop_id,
        stop_code=_text(row, "stop_code"),
        name=name,
        lat=lat,
        lng=lng,
    )


def _parse_stop_time(row: Any) -> StopTimeRow | None:
    trip_id = _text(row, "trip_id")
    stop_id = _text(row, "stop_id")
    sequence = _number(row, "stop_sequence")
    arrival = _text(row, "arrival_time")
    departure = _text(row, "departure_time")
    if not (trip_id and stop_id) or sequence is None:
        return None
    if arrival is None and departure is None:
        return None
    return StopTimeRow(
        trip_id=trip_id,
        stop_id=stop_id,
        arrival_time=arrival,
        departure_time=departure,
        stop_sequence=int(sequence),
    )


def _parse_shape_point(row: Any) -> ShapePointRow | None:
    shape_id = _text(row, "shape_id")
    lat = _number(row, "shape_pt_lat")
    lng = _number(row, "shape_pt_lon")
    sequence = _number(row, "shape_pt_sequence")
    if shape_id is None or lat is None or lng is None or sequence is None:
        return None
    return ShapePointRow(shape_id=shape_id, lat=lat, lng=lng, sequence=sequence)


def _parse_calendar_date(row: Any) -> CalendarDateRow | None:
    service_id = _text(row, "service_id")
    day = _text(row, "date")
    exception_type = _number(row, "exception_type")
    if service_id is None or day is None or exception_type is None:
        return None
    if len(day) != 8 or not day.isdigit():
        return None
    return CalendarDateRow(
        service_id=service_id, date=day, exception_type=int(exception_type)
    )


def _parse_table(
    table: str,
    frame: pd.DataFrame | None,
    parse: Callable[[Any], T | None],
) -> list[T]:
    """Parse every row of a table, logging and skipping invalid rows."""
    if frame is None or frame.empty:
        return []

    parsed: list[T] = []
    skipped = 0
    for row in frame.itertuples(index=False):
        try:
            record = parse(row)
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid %s row %r: %s", table, row, exc)
            record = None
        if record is None:
            skipped += 1
            record_skipped_record("static", table)
            continue
        parsed.append(record)

    if skipped:
        logger.warning("Skipped %d invalid %s rows", skipped, table)
    return parsed


def rows_from_feed(feed: Any) -> StaticRows:
    """Convert a gtfs-kit ``Feed`` into typed rows."""
    return StaticRows(
        routes=_parse_table("routes", getattr(feed, "routes", None), _parse_route),
        trips=_parse_table("trips", getattr(feed, "trips", None), _parse_trip),
        stops=_parse_table("stops", getattr(feed, "stops", None), _parse_stop),
        stop_times=_parse_table(
            "stop_times", getattr(feed, "stop_times", None), _parse_stop_time
        ),
        shapes=_parse_table("shapes", getattr(feed, "shapes", None), _parse_shape_point),
        calendar_dates=_parse_table(
            "calendar_dates",
            getattr(feed, "calendar_dates", None),
            _parse_calendar_date,
        ),
    )


class GTFSStaticFeed:
    """Download and decode the static schedule bundle.

    Usage::

        async with GTFSStaticFeed(settings) as feed:
            etag = await feed.fetch_etag()
            rows = await feed.load()
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.url = settings.gtfs_static_url
        self._client = client
        self._owns_client = client is None
        self._temp_dir: Path | None = None

    async def __aenter__(self) -> "GTFSStaticFeed":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cleanup()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.gtfs_static_download_timeout_seconds,
                headers={"User-Agent": _USER_AGENT},
                follow_redirects=True,
            )
        return self._client

    async def fetch_etag(self) -> str | None:
        """Fetch the bundle's content fingerprint without downloading it."""
        try:
            response = await self._get_client().head(self.url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise FeedFetchError(f"HEAD {self.url} failed: {exc}") from exc
        return response.headers.get("etag")

    async def download(self) -> Path:
        """Download the bundle into a fresh temp directory, retrying with backoff."""
        attempts = self.settings.gtfs_static_download_attempts
        backoff = self.settings.gtfs_static_download_backoff_seconds

        if self._temp_dir is None:
            self._temp_dir = Path(tempfile.mkdtemp(prefix="gtfs-"))
        feed_path = self._temp_dir / "gtfs.zip"

        for attempt in range(1, attempts + 1):
            try:
                logger.info("Downloading GTFS feed from %s (attempt %d)", self.url, attempt)
                async with self._get_client().stream("GET", self.url) as response:
                    response.raise_for_status()
                    with open(feed_path, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
                logger.info("Downloaded GTFS feed to %s", feed_path)
                return feed_path
            except httpx.HTTPError as exc:
                if attempt == attempts:
                    raise FeedFetchError(
                        f"Download of {self.url} failed after {attempts} attempts: {exc}"
                    ) from exc
                delay = backoff * 2 ** (attempt - 1)
                logger.warning(
                    "GTFS download attempt %d failed (%s), retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

        raise FeedFetchError(f"Download of {self.url} was not attempted")

    async def read(self, feed_path: Path) -> StaticRows:
        """Decode a bundle on disk into typed rows."""
        try:
            feed = await asyncio.to_thread(gk.read_feed, feed_path, dist_units="km")
        except Exception as exc:
            raise FeedFormatError(f"Unreadable GTFS bundle {feed_path}: {exc}") from exc

        rows = await asyncio.to_thread(rows_from_feed, feed)
        if not rows.has_required_data():
            raise FeedFormatError(
                f"GTFS bundle {feed_path} is missing one of {', '.join(_REQUIRED_TABLES)}"
            )
        logger.info(
            "Decoded GTFS feed: %d routes, %d trips, %d stops, %d stop times",
            len(rows.routes),
            len(rows.trips),
            len(rows.stops),
            len(rows.stop_times),
        )
        return rows

    async def load(self) -> StaticRows:
        return await self.read(await self.download())

    async def cleanup(self) -> None:
        if self._temp_dir is not None:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            self._temp_dir = None
            logger.debug("GTFS static temp data cleaned up")
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
