"""Tests for the transit record models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from metrocast.models.transit import (
    LiveStopTimeInstance,
    StopTimeInstanceKey,
    StopTimeStatus,
    from_epoch_millis,
    to_epoch_millis,
)
from tests.fixtures.gtfs_data import (
    create_test_instance,
    create_test_route_with_shapes,
    create_test_update,
)

SCHEDULED = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestStopTimeInstanceKey:
    def test_encode(self):
        assert StopTimeInstanceKey("20240601", "t1", "a").encode() == "20240601:t1:a"

    def test_decode_trip_id_with_colons(self):
        key = StopTimeInstanceKey.decode("20240601:0:trip:7:0:42")

        assert key == StopTimeInstanceKey("20240601", "0:trip:7:0", "42")

    def test_instance_exposes_key(self):
        instance = create_test_instance(SCHEDULED, trip_id="t9", stop_id="b")

        assert instance.key.encode() == "20240601:t9:b"


class TestEpochMillis:
    def test_round_trip(self):
        assert from_epoch_millis(to_epoch_millis(SCHEDULED)) == SCHEDULED

    def test_serialized_as_integer_millis(self):
        instance = create_test_instance(SCHEDULED)

        assert instance.model_dump(mode="json")["scheduled_time"] == 1717243200000

    def test_invalid_service_date_rejected(self):
        with pytest.raises(ValidationError):
            create_test_instance(SCHEDULED, service_date="2024-06-01")


class TestLiveStopTimeInstance:
    def test_merge_without_update_defaults_to_schedule(self):
        live = LiveStopTimeInstance.merge(create_test_instance(SCHEDULED), None)

        assert live.predicted_time == SCHEDULED
        assert live.status == StopTimeStatus.SCHEDULED

    def test_merge_with_update(self):
        predicted = datetime(2024, 6, 1, 12, 4, tzinfo=timezone.utc)
        live = LiveStopTimeInstance.merge(
            create_test_instance(SCHEDULED),
            create_test_update(predicted, status=StopTimeStatus.SKIPPED),
        )

        assert live.scheduled_time == SCHEDULED
        assert live.predicted_time == predicted
        assert live.status == StopTimeStatus.SKIPPED


def test_route_without_shapes_drops_polylines():
    route = create_test_route_with_shapes("1").without_shapes()

    assert "shapes" not in route.model_dump()
    assert route.route_id == "1"
