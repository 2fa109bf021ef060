from __future__ import annotations

import fnmatch
import sys
from pathlib import Path
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient
from valkey.exceptions import ConnectionError as ValkeyConnectionError
from valkey.exceptions import ResponseError

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from metrocast.core.config import Settings, get_settings  # noqa: E402
from metrocast.services.prediction_store import PredictionStore  # noqa: E402


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")


def _score_bound(value: Any) -> tuple[float, bool]:
    """Parse a sorted-set range bound into (score, exclusive)."""
    if isinstance(value, (int, float)):
        return float(value), False
    text = str(value)
    exclusive = text.startswith("(")
    if exclusive:
        text = text[1:]
    if text in ("-inf", "+inf", "inf"):
        return float(text), exclusive
    return float(text), exclusive


def _in_range(score: float, low: Any, high: Any) -> bool:
    low_value, low_exclusive = _score_bound(low)
    high_value, high_exclusive = _score_bound(high)
    above = score > low_value if low_exclusive else score >= low_value
    below = score < high_value if high_exclusive else score <= high_value
    return above and below


class FakePipeline:
    """Buffers commands and replays them against the fake on execute()."""

    def __init__(self, client: "FakeValkey", transaction: bool) -> None:
        self._client = client
        self.transaction = transaction
        self._commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self._commands = []

    def __getattr__(self, name: str):
        if name.startswith("_") or not hasattr(self._client, name):
            raise AttributeError(name)

        def buffer(*args: Any, **kwargs: Any) -> "FakePipeline":
            self._commands.append((name, args, kwargs))
            return self

        return buffer

    async def execute(self, raise_on_error: bool = True) -> list[Any]:
        if self._client.should_fail:
            raise ValkeyConnectionError("valkey unavailable")
        self._client.executed_pipelines.append(
            (self.transaction, [name for name, _, _ in self._commands])
        )
        results = []
        for name, args, kwargs in self._commands:
            try:
                results.append(await getattr(self._client, name)(*args, **kwargs))
            except ResponseError as exc:
                if raise_on_error:
                    raise
                results.append(exc)
        self._commands = []
        return results


class FakeValkey:
    """In-memory Valkey replacement used for tests.

    Implements the string, hash and sorted-set commands the prediction store
    uses, plus pipelines that replay their commands in order.
    """

    def __init__(self) -> None:
        self._strings: dict[str, str] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._zsets: dict[str, dict[str, float]] = {}
        self.should_fail = False
        self.executed_pipelines: list[tuple[bool, list[str]]] = []

    def _check(self) -> None:
        if self.should_fail:
            raise ValkeyConnectionError("valkey unavailable")

    def _keys(self) -> set[str]:
        return set(self._strings) | set(self._hashes) | set(self._zsets)

    # Connection

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        return None

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self, transaction)

    # Keys

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            for space in (self._strings, self._hashes, self._zsets):
                if space.pop(key, None) is not None:
                    removed += 1
        return removed

    async def rename(self, src: str, dst: str) -> bool:
        self._check()
        for space in (self._strings, self._hashes, self._zsets):
            if src in space:
                await self.delete(dst)
                space[dst] = space.pop(src)
                return True
        raise ResponseError("no such key")

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        self._check()
        for key in sorted(self._keys()):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    # Strings

    async def get(self, key: str) -> str | None:
        self._check()
        return self._strings.get(key)

    async def set(
        self,
        key: str,
        value: str,
        ex: int | None = None,
        nx: bool | None = None,
    ) -> bool:
        self._check()
        if nx and key in self._strings:
            return False
        self._strings[key] = str(value)
        return True

    # Hashes

    async def hset(
        self,
        name: str,
        key: str | None = None,
        value: str | None = None,
        mapping: dict[str, str] | None = None,
    ) -> int:
        self._check()
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        if not items:
            raise ResponseError("wrong number of arguments for 'hset' command")
        table = self._hashes.setdefault(name, {})
        added = sum(1 for field in items if field not in table)
        table.update({field: str(v) for field, v in items.items()})
        return added

    async def hsetnx(self, name: str, key: str, value: str) -> bool:
        self._check()
        table = self._hashes.setdefault(name, {})
        if key in table:
            return False
        table[key] = str(value)
        return True

    async def hget(self, name: str, key: str) -> str | None:
        self._check()
        return self._hashes.get(name, {}).get(key)

    async def hmget(self, name: str, keys: list[str], *args: str) -> list[str | None]:
        self._check()
        table = self._hashes.get(name, {})
        return [table.get(key) for key in [*keys, *args]]

    async def hgetall(self, name: str) -> dict[str, str]:
        self._check()
        return dict(self._hashes.get(name, {}))

    async def hscan_iter(self, name: str, match: str | None = None, count: int | None = None):
        self._check()
        for field, value in sorted(self._hashes.get(name, {}).items()):
            if match is None or fnmatch.fnmatchcase(field, match):
                yield field, value

    async def hexists(self, name: str, key: str) -> bool:
        self._check()
        return key in self._hashes.get(name, {})

    async def hdel(self, name: str, *keys: str) -> int:
        self._check()
        table = self._hashes.get(name, {})
        removed = sum(1 for key in keys if table.pop(key, None) is not None)
        if name in self._hashes and not table:
            del self._hashes[name]
        return removed

    # Sorted sets

    async def zadd(
        self,
        name: str,
        mapping: dict[str, float],
        nx: bool = False,
        xx: bool = False,
    ) -> int:
        self._check()
        zset = self._zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            exists = member in zset
            if (nx and exists) or (xx and not exists):
                continue
            if not exists:
                added += 1
            zset[member] = float(score)
        if not zset:
            del self._zsets[name]
        return added

    async def zscore(self, name: str, member: str) -> float | None:
        self._check()
        return self._zsets.get(name, {}).get(member)

    async def zrangebyscore(
        self,
        name: str,
        min: Any,
        max: Any,
        start: int | None = None,
        num: int | None = None,
    ) -> list[str]:
        self._check()
        members = sorted(
            (
                (score, member)
                for member, score in self._zsets.get(name, {}).items()
                if _in_range(score, min, max)
            ),
        )
        result = [member for _, member in members]
        if start is not None and num is not None:
            result = result[start : start + num]
        return result

    async def zremrangebyscore(self, name: str, min: Any, max: Any) -> int:
        self._check()
        zset = self._zsets.get(name, {})
        doomed = [member for member, score in zset.items() if _in_range(score, min, max)]
        for member in doomed:
            del zset[member]
        if name in self._zsets and not zset:
            del self._zsets[name]
        return len(doomed)


@pytest.fixture()
def fake_valkey() -> FakeValkey:
    return FakeValkey()


@pytest.fixture()
def prediction_store(fake_valkey: FakeValkey) -> PredictionStore:
    return PredictionStore(fake_valkey)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        GTFS_TIMEZONE="America/New_York",
        FEED_JOBS_ENABLED=False,
        HUB_DESTINATIONS="PULSE",
    )


@pytest.fixture()
def api_client(
    fake_valkey: FakeValkey, monkeypatch: pytest.MonkeyPatch
) -> Iterator[TestClient]:
    """Create a test client whose prediction store is backed by the fake."""
    monkeypatch.setenv("FEED_JOBS_ENABLED", "false")
    get_settings.cache_clear()

    from metrocast import main

    monkeypatch.setattr(main, "create_valkey_client", lambda settings: fake_valkey)
    app = main.create_app()
    with TestClient(app) as client:
        yield client
    get_settings.cache_clear()
