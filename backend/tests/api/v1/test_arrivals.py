"""
Tests for the arrivals endpoint and its freshness protocol.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from metrocast.api.v1.shared.freshness import format_http_date
from tests.fixtures.gtfs_data import (
    create_test_instance,
    create_test_stop,
    create_test_update,
)


def _service_date(value: datetime) -> str:
    return value.strftime("%Y%m%d")


def _seed_stop(store, visits: int = 3, with_update: bool = True) -> datetime:
    """Seed stop 100 with upcoming visits; returns the freshness marker."""
    now = datetime.now(timezone.utc)
    marker = (now - timedelta(minutes=1)).replace(microsecond=0)
    instances = [
        create_test_instance(
            now + timedelta(minutes=5 * (n + 1)),
            trip_id=f"t{n}",
            service_date=_service_date(now),
        )
        for n in range(visits)
    ]

    async def seed():
        await store.set_stops([create_test_stop("a", "100")])
        await store.set_stop_time_instances(instances)
        if with_update:
            await store.set_stop_time_updates(
                [
                    create_test_update(
                        now + timedelta(minutes=7),
                        trip_id="t0",
                        service_date=_service_date(now),
                    )
                ],
                marker,
            )

    asyncio.run(seed())
    return marker


def test_arrivals_return_merged_predictions(api_client, prediction_store):
    marker = _seed_stop(prediction_store)

    response = api_client.get("/api/v1/arrivals/100")

    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "no-cache"
    assert response.headers["Last-Modified"] == format_http_date(marker)
    body = response.json()
    assert body["stop"]["stop_code"] == "100"
    assert [arrival["trip_id"] for arrival in body["arrivals"]] == ["t0", "t1", "t2"]
    first = body["arrivals"][0]
    assert first["predicted_time"] - first["scheduled_time"] == 2 * 60 * 1000
    assert first["status"] == "scheduled"


def test_arrivals_respect_limit(api_client, prediction_store):
    _seed_stop(prediction_store, visits=5)

    response = api_client.get("/api/v1/arrivals/100", params={"limit": 2})

    assert response.status_code == 200
    assert len(response.json()["arrivals"]) == 2


def test_arrivals_limit_bounds(api_client, prediction_store):
    _seed_stop(prediction_store)

    assert api_client.get("/api/v1/arrivals/100", params={"limit": 0}).status_code == 422
    assert api_client.get("/api/v1/arrivals/100", params={"limit": 101}).status_code == 422


def test_arrivals_unknown_stop(api_client, prediction_store):
    _seed_stop(prediction_store)

    response = api_client.get("/api/v1/arrivals/999")

    assert response.status_code == 404


def test_if_modified_since_returns_304(api_client, prediction_store):
    _seed_stop(prediction_store)
    first = api_client.get("/api/v1/arrivals/100")

    response = api_client.get(
        "/api/v1/arrivals/100",
        headers={"If-Modified-Since": first.headers["Last-Modified"]},
    )

    assert response.status_code == 304
    assert response.content == b""
    assert response.headers["Last-Modified"] == first.headers["Last-Modified"]


def test_x_if_modified_since_fallback(api_client, prediction_store):
    _seed_stop(prediction_store)
    first = api_client.get("/api/v1/arrivals/100")

    response = api_client.get(
        "/api/v1/arrivals/100",
        headers={"X-If-Modified-Since": first.headers["Last-Modified"]},
    )

    assert response.status_code == 304


def test_older_client_copy_gets_full_response(api_client, prediction_store):
    marker = _seed_stop(prediction_store)

    response = api_client.get(
        "/api/v1/arrivals/100",
        headers={"If-Modified-Since": format_http_date(marker - timedelta(seconds=5))},
    )

    assert response.status_code == 200
    assert response.json()["arrivals"]


def test_schedule_only_stop_answers_not_modified(api_client, prediction_store):
    _seed_stop(prediction_store, with_update=False)

    first = api_client.get("/api/v1/arrivals/100")
    second = api_client.get(
        "/api/v1/arrivals/100",
        headers={"If-Modified-Since": first.headers["Last-Modified"]},
    )

    assert first.status_code == 200
    assert first.json()["arrivals"]
    assert second.status_code == 304
    assert second.headers["Last-Modified"] == first.headers["Last-Modified"]


def test_unparseable_if_modified_since_is_ignored(api_client, prediction_store):
    _seed_stop(prediction_store)

    response = api_client.get(
        "/api/v1/arrivals/100", headers={"If-Modified-Since": "yesterday-ish"}
    )

    assert response.status_code == 200
