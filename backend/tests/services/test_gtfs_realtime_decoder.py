"""
Unit tests for decoding GTFS-RT feed messages.
"""

from datetime import datetime, timezone

import httpx
import pytest

from metrocast.core.config import Settings
from metrocast.services.errors import FeedFetchError, FeedFormatError
from metrocast.services.gtfs_realtime import (
    GTFSRealtimeClient,
    decode_feed_message,
    extract_alerts,
    extract_trip_updates,
    extract_vehicle_reports,
    feed_timestamp,
)
from tests.fixtures.gtfs_data import (
    create_alert_feed,
    create_trip_update_feed,
    create_vehicle_feed,
)

NOON = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestDecodeFeedMessage:
    def test_round_trips_serialized_feed(self):
        feed = create_vehicle_feed([("bus-1", "t1", 43.6, -70.2)], timestamp=NOON)

        decoded = decode_feed_message(feed.SerializeToString())

        assert len(decoded.entity) == 1
        assert feed_timestamp(decoded) == NOON

    def test_garbage_payload_raises_format_error(self):
        with pytest.raises(FeedFormatError):
            decode_feed_message(b"\xff\xff\xff\xff not a protobuf")

    def test_missing_timestamp(self):
        feed = create_vehicle_feed([])
        assert feed_timestamp(feed) is None


class TestExtractVehicleReports:
    def test_drops_incomplete_vehicles(self):
        feed = create_vehicle_feed(
            [
                ("bus-1", "t1", 43.6, -70.2),
                ("", "t2", 43.6, -70.2),
                ("bus-3", "", 43.6, -70.2),
                ("bus-4", "t4", 0.0, 0.0),
            ]
        )

        reports = extract_vehicle_reports(feed)

        assert [report.vehicle_id for report in reports] == ["bus-1"]
        assert reports[0].trip_id == "t1"
        assert reports[0].lat == pytest.approx(43.6)
        assert reports[0].lng == pytest.approx(-70.2)


class TestExtractTripUpdates:
    def test_prefers_arrival_over_departure(self):
        arrival = datetime(2024, 6, 1, 12, 5, tzinfo=timezone.utc)
        departure = datetime(2024, 6, 1, 12, 6, tzinfo=timezone.utc)
        feed = create_trip_update_feed(
            {"t1": [{"stop_id": "a", "arrival": arrival, "departure": departure}]}
        )

        [report] = extract_trip_updates(feed)

        assert report.trip_id == "t1"
        assert report.stop_time_events[0].time == arrival

    def test_falls_back_to_departure(self):
        departure = datetime(2024, 6, 1, 12, 6, tzinfo=timezone.utc)
        feed = create_trip_update_feed({"t1": [{"stop_id": "a", "departure": departure}]})

        [report] = extract_trip_updates(feed)

        assert report.stop_time_events[0].time == departure

    def test_skipped_stop_is_decoded(self):
        feed = create_trip_update_feed(
            {"t1": [{"stop_id": "a", "arrival": NOON, "skipped": True}, {"stop_id": "b", "arrival": NOON}]}
        )

        [report] = extract_trip_updates(feed)

        assert [event.skipped for event in report.stop_time_events] == [True, False]

    def test_skips_events_without_time_or_stop(self):
        feed = create_trip_update_feed(
            {"t1": [{"stop_id": "a"}, {"arrival": NOON}, {"stop_id": "c", "arrival": NOON}]}
        )

        [report] = extract_trip_updates(feed)

        assert [event.stop_id for event in report.stop_time_events] == ["c"]

    def test_skipped_stop_without_time_is_kept(self):
        feed = create_trip_update_feed(
            {"t1": [{"stop_id": "a", "arrival": NOON}, {"stop_id": "b", "skipped": True}]}
        )

        [report] = extract_trip_updates(feed)

        assert [(event.stop_id, event.skipped) for event in report.stop_time_events] == [
            ("a", False),
            ("b", True),
        ]
        assert report.stop_time_events[1].time is None


class TestExtractAlerts:
    def test_keeps_english_translation(self):
        feed = create_alert_feed(
            {
                "alert-1": {
                    "fr": ("Détour", "Route 1 en détour"),
                    "en": ("Detour", "Route 1 is detoured"),
                },
                "alert-2": {"fr": ("Fermé", "Arrêt fermé")},
            }
        )

        alerts = extract_alerts(feed)

        assert len(alerts) == 1
        assert alerts[0].alert_id == "alert-1"
        assert alerts[0].header_text == "Detour"
        assert alerts[0].description_text == "Route 1 is detoured"


class TestGTFSRealtimeClient:
    @pytest.fixture
    def settings(self):
        return Settings(GTFS_RT_VEHICLE_POSITIONS_URL="https://example.com/vp.pb")

    @pytest.mark.asyncio
    async def test_fetch_decodes_payload(self, settings):
        payload = create_vehicle_feed([("bus-1", "t1", 43.6, -70.2)]).SerializeToString()
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=payload))

        async with GTFSRealtimeClient(
            settings, client=httpx.AsyncClient(transport=transport)
        ) as client:
            feed = await client.fetch_vehicle_positions()

        assert feed.entity[0].vehicle.vehicle.id == "bus-1"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_fetch_error(self, settings):
        transport = httpx.MockTransport(lambda request: httpx.Response(502))

        async with GTFSRealtimeClient(
            settings, client=httpx.AsyncClient(transport=transport)
        ) as client:
            with pytest.raises(FeedFetchError):
                await client.fetch_vehicle_positions()
