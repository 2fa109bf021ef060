"""
Tests for the static schedule pipeline.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from metrocast.services import static_loader
from metrocast.services.prediction_store import STOP_TIME_INSTANCES_HASH
from metrocast.services.static_loader import StaticScheduleLoader
from tests.fixtures.gtfs_data import create_static_rows

NOW = datetime(2024, 6, 1, 16, 0, tzinfo=timezone.utc)


class FakeStaticFeed:
    """Stands in for the HTTP/gtfs-kit feed reader."""

    etag: str | None = '"v1"'
    loads = 0

    def __init__(self, settings, client=None):
        self.settings = settings

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def fetch_etag(self):
        return type(self).etag

    async def load(self):
        type(self).loads += 1
        return create_static_rows(date(2024, 6, 1))


@pytest.fixture()
def fake_feed(monkeypatch):
    FakeStaticFeed.etag = '"v1"'
    FakeStaticFeed.loads = 0
    monkeypatch.setattr(static_loader, "GTFSStaticFeed", FakeStaticFeed)
    return FakeStaticFeed


@pytest.fixture()
def notifier():
    mock = AsyncMock()
    mock.notify = AsyncMock()
    return mock


class TestStaticScheduleLoader:
    @pytest.mark.asyncio
    async def test_writes_entities_and_instances(
        self, fake_feed, prediction_store, settings, notifier
    ):
        loader = StaticScheduleLoader(prediction_store, settings, notifier=notifier)

        result = await loader.load(now=NOW)

        assert result.loaded is True
        assert result.routes == 2
        assert result.stops == 3
        assert result.stop_time_instances > 0
        assert {route.route_id for route in await prediction_store.get_routes()} == {"1", "2"}
        assert (await prediction_store.get_stop_by_code("100")).stop_id == "a"
        assert await prediction_store.get_static_etag() == '"v1"'
        assert await prediction_store.get_static_loaded_on() == "20240601"
        notifier.notify.assert_awaited_once_with(NOW)

    @pytest.mark.asyncio
    async def test_unchanged_bundle_same_day_is_skipped(
        self, fake_feed, prediction_store, settings, notifier
    ):
        loader = StaticScheduleLoader(prediction_store, settings, notifier=notifier)
        await loader.load(now=NOW)

        result = await loader.load(now=NOW)

        assert result.loaded is False
        assert fake_feed.loads == 1
        assert notifier.notify.await_count == 1

    @pytest.mark.asyncio
    async def test_unchanged_bundle_next_day_extends_window(
        self, fake_feed, prediction_store, settings, notifier
    ):
        loader = StaticScheduleLoader(prediction_store, settings, notifier=notifier)
        await loader.load(now=NOW)

        result = await loader.load(now=datetime(2024, 6, 2, 16, 0, tzinfo=timezone.utc))

        assert result.loaded is True
        assert fake_feed.loads == 2
        assert await prediction_store.get_static_loaded_on() == "20240602"
        # Same bundle, so collaborators are not told about a change.
        assert notifier.notify.await_count == 1

    @pytest.mark.asyncio
    async def test_force_reloads(self, fake_feed, prediction_store, settings):
        loader = StaticScheduleLoader(prediction_store, settings)
        await loader.load(now=NOW)

        result = await loader.load(force=True, now=NOW)

        assert result.loaded is True
        assert fake_feed.loads == 2

    @pytest.mark.asyncio
    async def test_missing_etag_always_loads(
        self, fake_feed, prediction_store, settings, notifier
    ):
        fake_feed.etag = None
        loader = StaticScheduleLoader(prediction_store, settings, notifier=notifier)

        await loader.load(now=NOW)
        await loader.load(now=NOW)

        assert fake_feed.loads == 2
        assert notifier.notify.await_count == 2
        assert await prediction_store.get_static_etag() is None

    @pytest.mark.asyncio
    async def test_new_etag_notifies(self, fake_feed, prediction_store, settings, notifier):
        loader = StaticScheduleLoader(prediction_store, settings, notifier=notifier)
        await loader.load(now=NOW)

        fake_feed.etag = '"v2"'
        await loader.load(now=NOW)

        assert notifier.notify.await_count == 2
        assert await prediction_store.get_static_etag() == '"v2"'

    @pytest.mark.asyncio
    async def test_reload_does_not_restore_cleaned_up_visits(
        self, fake_feed, prediction_store, settings, fake_valkey
    ):
        loader = StaticScheduleLoader(prediction_store, settings)
        await loader.load(now=NOW)
        assert await fake_valkey.hgetall(STOP_TIME_INSTANCES_HASH)

        later = datetime(2024, 6, 10, 16, 0, tzinfo=timezone.utc)
        await prediction_store.cleanup_stop_time_instances(later - timedelta(days=3))
        result = await loader.load(now=later)

        assert result.loaded is True
        assert result.stop_time_instances == 0
        assert await fake_valkey.hgetall(STOP_TIME_INSTANCES_HASH) == {}

    @pytest.mark.asyncio
    async def test_new_visits_move_stop_marker(
        self, fake_feed, prediction_store, settings
    ):
        loader = StaticScheduleLoader(prediction_store, settings)

        await loader.load(now=NOW)

        assert await prediction_store.get_stop_updated_at("a") == NOW
