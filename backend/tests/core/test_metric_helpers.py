"""Tests for the Prometheus metric helpers."""

from prometheus_client import REGISTRY

from metrocast.core.metrics import (
    observe_feed_cycle,
    observe_store_batch,
    record_conditional_response,
    record_skipped_record,
)


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_observe_feed_cycle_counts_and_times():
    labels = {"job": "trip_updates", "result": "success"}
    before = _sample("metrocast_feed_cycles_total", labels)
    latency_before = _sample("metrocast_feed_cycle_seconds_count", {"job": "trip_updates"})

    observe_feed_cycle("trip_updates", "success", 0.25)

    assert _sample("metrocast_feed_cycles_total", labels) == before + 1
    assert (
        _sample("metrocast_feed_cycle_seconds_count", {"job": "trip_updates"})
        == latency_before + 1
    )


def test_record_skipped_record():
    labels = {"feed": "vehicle_positions", "reason": "unknown_trip"}
    before = _sample("metrocast_feed_records_skipped_total", labels)

    record_skipped_record("vehicle_positions", "unknown_trip")

    assert _sample("metrocast_feed_records_skipped_total", labels) == before + 1


def test_observe_store_batch():
    before = _sample("metrocast_store_write_batch_size_sum", {"kind": "trips"})

    observe_store_batch("trips", 40)

    assert _sample("metrocast_store_write_batch_size_sum", {"kind": "trips"}) == before + 40


def test_record_conditional_response():
    labels = {"endpoint": "arrivals", "outcome": "not_modified"}
    before = _sample("metrocast_conditional_responses_total", labels)

    record_conditional_response("arrivals", "not_modified")

    assert _sample("metrocast_conditional_responses_total", labels) == before + 1
