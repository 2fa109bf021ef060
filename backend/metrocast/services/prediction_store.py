"""
Valkey-backed prediction store.

Layout:

- ``routes``, ``trips``, ``stops``, ``stop_codes``: hashes of JSON documents,
  replaced wholesale on every schedule load via a temp hash and ``RENAME``.
- ``routes_with_shapes``, ``alerts``, ``vehicle_positions``: JSON strings.
- ``stop_time_instances`` / ``stop_time_updates``: hashes keyed by
  ``StopTimeInstanceKey.encode()``.
- ``stop_time_sorted_set:{stop_id}``: per-stop time index scored in epoch
  milliseconds. The score is the scheduled time until a live update lands,
  after which it is the predicted time.
- ``stop_updated_at``: per-stop freshness marker (epoch milliseconds), moved
  whenever a stop gains a scheduled visit or a live update.

Batches are pipelined without ``MULTI`` so the sub-second feeds never block
the server. Two windows are accepted as a result: an update's payload is
written before its score, and a stop's freshness marker is written after its
data. A reader in between sees fresh data looking stale for one poll at most,
never stale data looking fresh.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any, TypeVar

import valkey.asyncio as valkey
from pydantic import BaseModel, TypeAdapter
from valkey.exceptions import ValkeyError

from metrocast.core.config import Settings
from metrocast.core.metrics import observe_store_batch
from metrocast.models.transit import (
    Alert,
    LiveStopTimeInstance,
    Route,
    RouteWithShapes,
    Stop,
    StopTimeInstance,
    StopTimeInstanceKey,
    StopTimeUpdate,
    Trip,
    VehiclePosition,
    from_epoch_millis,
    to_epoch_millis,
)
from metrocast.services.errors import StoreWriteError

logger = logging.getLogger(__name__)
ModelT = TypeVar("ModelT", bound=BaseModel)

ROUTES_HASH = "routes"
ROUTES_WITH_SHAPES_KEY = "routes_with_shapes"
TRIPS_HASH = "trips"
STOPS_HASH = "stops"
STOP_CODES_HASH = "stop_codes"
ALERTS_KEY = "alerts"
VEHICLE_POSITIONS_KEY = "vehicle_positions"
VEHICLE_POSITIONS_UPDATED_AT_KEY = "vehicle_positions_updated_at"
STOP_TIME_INSTANCES_HASH = "stop_time_instances"
STOP_TIME_UPDATES_HASH = "stop_time_updates"
STOP_TIME_INDEX_PREFIX = "stop_time_sorted_set"
STOP_UPDATED_AT_HASH = "stop_updated_at"
STATIC_ETAG_KEY = "static_etag"
STATIC_LOADED_ON_KEY = "static_loaded_on"

# Keeps any single pipeline to a bounded number of commands.
WRITE_BATCH_SIZE = 2000

_routes_with_shapes = TypeAdapter(list[RouteWithShapes])
_vehicle_positions = TypeAdapter(list[VehiclePosition])
_alerts = TypeAdapter(list[Alert])


def stop_time_index_key(stop_id: str) -> str:
    return f"{STOP_TIME_INDEX_PREFIX}:{stop_id}"


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _parse_millis(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return from_epoch_millis(int(raw))


class PredictionStore:
    """Read/write access to the prediction data held in Valkey."""

    def __init__(self, client: valkey.Valkey) -> None:
        self._client = client

    @property
    def client(self) -> valkey.Valkey:
        return self._client

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(self, pipe: Any, description: str) -> list[Any]:
        try:
            return await pipe.execute(raise_on_error=True)
        except ValkeyError as exc:
            logger.error("Store batch %s failed: %s", description, exc)
            raise StoreWriteError(f"{description} failed: {exc}") from exc

    async def _replace_hash(self, name: str, mapping: dict[str, str]) -> None:
        """Replace a whole hash without readers ever seeing it half-built."""
        if not mapping:
            try:
                await self._client.delete(name)
            except ValkeyError as exc:
                raise StoreWriteError(f"clearing {name} failed: {exc}") from exc
            return

        temp_name = f"{name}:temp"
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.delete(temp_name)
            for chunk in _chunks(list(mapping.items()), WRITE_BATCH_SIZE):
                pipe.hset(temp_name, mapping=dict(chunk))
            await self._execute(pipe, f"building {temp_name}")

        # Only swap in the new hash once it was written completely.
        try:
            await self._client.rename(temp_name, name)
        except ValkeyError as exc:
            raise StoreWriteError(f"renaming {temp_name} failed: {exc}") from exc
        observe_store_batch(name, len(mapping))

    async def _get_hash_values(self, name: str, model: type[ModelT]) -> list[ModelT]:
        values = await self._client.hgetall(name)
        return [model.model_validate_json(value) for value in values.values()]

    async def _get_hash_value(
        self, name: str, field: str, model: type[ModelT]
    ) -> ModelT | None:
        value = await self._client.hget(name, field)
        return model.model_validate_json(value) if value else None

    async def _get_hash_many(
        self, name: str, fields: Iterable[str], model: type[ModelT]
    ) -> dict[str, ModelT]:
        unique = list(dict.fromkeys(fields))
        if not unique:
            return {}
        values = await self._client.hmget(name, unique)
        return {
            field: model.model_validate_json(value)
            for field, value in zip(unique, values)
            if value
        }

    # ------------------------------------------------------------------
    # Static data
    # ------------------------------------------------------------------

    async def get_routes(self) -> list[Route]:
        return await self._get_hash_values(ROUTES_HASH, Route)

    async def get_route(self, route_id: str) -> Route | None:
        return await self._get_hash_value(ROUTES_HASH, route_id, Route)

    async def get_routes_by_id(self, route_ids: Iterable[str]) -> dict[str, Route]:
        return await self._get_hash_many(ROUTES_HASH, route_ids, Route)

    async def get_routes_with_shapes(self) -> list[RouteWithShapes]:
        raw = await self._client.get(ROUTES_WITH_SHAPES_KEY)
        return _routes_with_shapes.validate_json(raw) if raw else []

    async def set_routes(self, routes: list[RouteWithShapes]) -> None:
        await self._replace_hash(
            ROUTES_HASH,
            {route.route_id: route.without_shapes().model_dump_json() for route in routes},
        )
        try:
            await self._client.set(
                ROUTES_WITH_SHAPES_KEY, _routes_with_shapes.dump_json(routes).decode()
            )
        except ValkeyError as exc:
            raise StoreWriteError(f"writing routes with shapes failed: {exc}") from exc

    async def get_trips(self) -> list[Trip]:
        return await self._get_hash_values(TRIPS_HASH, Trip)

    async def get_trip(self, trip_id: str) -> Trip | None:
        return await self._get_hash_value(TRIPS_HASH, trip_id, Trip)

    async def get_trips_by_id(self, trip_ids: Iterable[str]) -> dict[str, Trip]:
        """Look up many trips at once; unknown ids are absent from the result."""
        return await self._get_hash_many(TRIPS_HASH, trip_ids, Trip)

    async def set_trips(self, trips: list[Trip]) -> None:
        await self._replace_hash(
            TRIPS_HASH, {trip.trip_id: trip.model_dump_json() for trip in trips}
        )

    async def get_stops(self) -> list[Stop]:
        return await self._get_hash_values(STOPS_HASH, Stop)

    async def get_stop(self, stop_id: str) -> Stop | None:
        return await self._get_hash_value(STOPS_HASH, stop_id, Stop)

    async def get_stop_by_code(self, stop_code: str) -> Stop | None:
        stop_id = await self._client.hget(STOP_CODES_HASH, stop_code)
        if stop_id is None:
            return None
        return await self.get_stop(stop_id)

    async def set_stops(self, stops: list[Stop]) -> None:
        await self._replace_hash(
            STOPS_HASH, {stop.stop_id: stop.model_dump_json() for stop in stops}
        )
        await self._replace_hash(
            STOP_CODES_HASH, {stop.stop_code: stop.stop_id for stop in stops}
        )

    async def get_static_etag(self) -> str | None:
        return await self._client.get(STATIC_ETAG_KEY)

    async def set_static_etag(self, etag: str) -> None:
        await self._client.set(STATIC_ETAG_KEY, etag)

    async def get_static_loaded_on(self) -> str | None:
        """Service date (``YYYYMMDD``) of the last completed schedule load."""
        return await self._client.get(STATIC_LOADED_ON_KEY)

    async def set_static_loaded_on(self, service_date: str) -> None:
        await self._client.set(STATIC_LOADED_ON_KEY, service_date)

    # ------------------------------------------------------------------
    # Alerts and vehicle positions
    # ------------------------------------------------------------------

    async def get_alerts(self) -> list[Alert]:
        raw = await self._client.get(ALERTS_KEY)
        return _alerts.validate_json(raw) if raw else []

    async def set_alerts(self, alerts: list[Alert]) -> None:
        try:
            await self._client.set(ALERTS_KEY, _alerts.dump_json(alerts).decode())
        except ValkeyError as exc:
            raise StoreWriteError(f"writing alerts failed: {exc}") from exc

    async def get_vehicle_positions(self) -> list[VehiclePosition]:
        raw = await self.get_vehicle_positions_raw()
        return _vehicle_positions.validate_json(raw) if raw else []

    async def get_vehicle_positions_raw(self) -> str | None:
        return await self._client.get(VEHICLE_POSITIONS_KEY)

    async def get_vehicle_positions_updated_at(self) -> datetime | None:
        return _parse_millis(await self._client.get(VEHICLE_POSITIONS_UPDATED_AT_KEY))

    async def set_vehicle_positions(
        self, vehicles: list[VehiclePosition], updated_at: datetime
    ) -> None:
        """Replace the vehicle set and its timestamp in one MULTI/EXEC."""
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(VEHICLE_POSITIONS_KEY, _vehicle_positions.dump_json(vehicles).decode())
            pipe.set(VEHICLE_POSITIONS_UPDATED_AT_KEY, str(to_epoch_millis(updated_at)))
            await self._execute(pipe, "writing vehicle positions")
        observe_store_batch("vehicle_positions", len(vehicles))

    # ------------------------------------------------------------------
    # Stop time instances and updates
    # ------------------------------------------------------------------

    async def set_stop_time_instances(
        self, instances: list[StopTimeInstance], updated_at: datetime | None = None
    ) -> int:
        """Add scheduled instances. An existing key is never overwritten.

        Stops that gained a visit get their freshness marker moved to
        ``updated_at`` once the batch is written. Returns the number added.
        """
        marker = str(to_epoch_millis(updated_at or datetime.now(timezone.utc)))
        added = 0
        for chunk in _chunks(instances, WRITE_BATCH_SIZE):
            async with self._client.pipeline(transaction=False) as pipe:
                for instance in chunk:
                    key = instance.key.encode()
                    pipe.hsetnx(STOP_TIME_INSTANCES_HASH, key, instance.model_dump_json())
                    # NX keeps a live-updated score from being reset to the
                    # scheduled time by a later materialization.
                    pipe.zadd(
                        stop_time_index_key(instance.stop_id),
                        {key: to_epoch_millis(instance.scheduled_time)},
                        nx=True,
                    )
                results = await self._execute(pipe, "writing stop time instances")
            observe_store_batch("stop_time_instances", len(chunk))

            # hsetnx results sit at every other position.
            touched_stops = {
                instance.stop_id: None
                for instance, created in zip(chunk, results[::2])
                if created
            }
            if not touched_stops:
                continue
            added += sum(1 for created in results[::2] if created)
            async with self._client.pipeline(transaction=False) as pipe:
                for stop_id in touched_stops:
                    pipe.hset(STOP_UPDATED_AT_HASH, stop_id, marker)
                await self._execute(pipe, "writing stop freshness markers")
        return added

    async def get_stop_time_instances(
        self, keys: Iterable[StopTimeInstanceKey]
    ) -> dict[str, StopTimeInstance]:
        """Scheduled instances by encoded key; unknown keys are absent."""
        return await self._get_hash_many(
            STOP_TIME_INSTANCES_HASH, (key.encode() for key in keys), StopTimeInstance
        )

    async def _existing_instance_keys(self, keys: list[str]) -> set[str]:
        async with self._client.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.hexists(STOP_TIME_INSTANCES_HASH, key)
            results = await self._execute(pipe, "checking stop time instances")
        return {key for key, exists in zip(keys, results) if exists}

    async def set_stop_time_updates(
        self, updates: list[StopTimeUpdate], updated_at: datetime
    ) -> int:
        """Apply live updates to keys that already have a scheduled instance.

        Updates for unknown keys are dropped. Returns the number applied.
        """
        if not updates:
            return 0

        keys = [update.key.encode() for update in updates]
        existing = await self._existing_instance_keys(keys)
        applied = [
            (key, update) for key, update in zip(keys, updates) if key in existing
        ]
        if len(applied) < len(updates):
            logger.debug(
                "Dropped %d stop time updates without a scheduled instance",
                len(updates) - len(applied),
            )
        if not applied:
            return 0

        marker = str(to_epoch_millis(updated_at))
        async with self._client.pipeline(transaction=False) as pipe:
            touched_stops: dict[str, None] = {}
            for key, update in applied:
                # Prediction first, order second: a reader caught between the
                # two sees the right time in a slightly stale position.
                pipe.hset(STOP_TIME_UPDATES_HASH, key, update.model_dump_json())
                pipe.zadd(
                    stop_time_index_key(update.stop_id),
                    {key: to_epoch_millis(update.predicted_time)},
                    xx=True,
                )
                touched_stops.setdefault(update.stop_id, None)
            # Markers go last so a stop never looks fresher than its data.
            for stop_id in touched_stops:
                pipe.hset(STOP_UPDATED_AT_HASH, stop_id, marker)
            await self._execute(pipe, "writing stop time updates")

        observe_store_batch("stop_time_updates", len(applied))
        return len(applied)

    async def get_predictions(
        self, stop_id: str, since: datetime, limit: int
    ) -> list[LiveStopTimeInstance]:
        """Upcoming visits at a stop with a predicted time at or after ``since``."""
        if limit <= 0:
            return []

        keys = await self._client.zrangebyscore(
            stop_time_index_key(stop_id),
            to_epoch_millis(since),
            "+inf",
            start=0,
            num=limit,
        )
        if not keys:
            return []

        instances = await self._client.hmget(STOP_TIME_INSTANCES_HASH, keys)
        updates = await self._client.hmget(STOP_TIME_UPDATES_HASH, keys)

        predictions = []
        for raw_instance, raw_update in zip(instances, updates):
            # Cleanup may have removed the payload between the two reads.
            if not raw_instance:
                continue
            predictions.append(
                LiveStopTimeInstance.merge(
                    StopTimeInstance.model_validate_json(raw_instance),
                    StopTimeUpdate.model_validate_json(raw_update) if raw_update else None,
                )
            )
        predictions.sort(key=lambda prediction: prediction.predicted_time)
        return predictions

    async def get_stop_updated_at(self, stop_id: str) -> datetime | None:
        return _parse_millis(await self._client.hget(STOP_UPDATED_AT_HASH, stop_id))

    async def cleanup_stop_time_instances(self, before: datetime) -> int:
        """Remove every instance/update pair whose index score is below ``before``."""
        cutoff = f"({to_epoch_millis(before)}"
        removed = 0
        async for index_key in self._client.scan_iter(
            match=f"{STOP_TIME_INDEX_PREFIX}:*"
        ):
            keys = await self._client.zrangebyscore(index_key, "-inf", cutoff)
            if not keys:
                continue
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.hdel(STOP_TIME_INSTANCES_HASH, *keys)
                pipe.hdel(STOP_TIME_UPDATES_HASH, *keys)
                pipe.zremrangebyscore(index_key, "-inf", cutoff)
                await self._execute(pipe, f"cleaning up {index_key}")
            removed += len(keys)

        await self._remove_orphaned_updates()

        logger.info(
            "Removed %d stop time instances before %s", removed, before.isoformat()
        )
        return removed

    async def _remove_orphaned_updates(self) -> int:
        """Drop updates whose instance is gone.

        The existence check in ``set_stop_time_updates`` and its write are
        separate round trips, so a cleanup landing in between can leave an
        update behind that no index entry points at.
        """
        orphans = []
        batch: list[str] = []
        async for key, _ in self._client.hscan_iter(STOP_TIME_UPDATES_HASH):
            batch.append(key)
            if len(batch) >= WRITE_BATCH_SIZE:
                orphans.extend(await self._missing_instances(batch))
                batch = []
        if batch:
            orphans.extend(await self._missing_instances(batch))
        if not orphans:
            return 0

        async with self._client.pipeline(transaction=False) as pipe:
            pipe.hdel(STOP_TIME_UPDATES_HASH, *orphans)
            await self._execute(pipe, "removing orphaned stop time updates")
        logger.info("Removed %d orphaned stop time updates", len(orphans))
        return len(orphans)

    async def _missing_instances(self, keys: list[str]) -> list[str]:
        instances = await self._client.hmget(STOP_TIME_INSTANCES_HASH, keys)
        return [key for key, instance in zip(keys, instances) if instance is None]


def create_valkey_client(settings: Settings) -> valkey.Valkey:
    """Build the process' Valkey connection pool."""
    return valkey.from_url(
        settings.valkey_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=settings.valkey_connect_timeout_seconds,
    )


__all__ = [
    "PredictionStore",
    "create_valkey_client",
    "stop_time_index_key",
]
