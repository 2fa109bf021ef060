"""Notification fired when a schedule load actually changed the static data."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable

import httpx

from metrocast.core.config import Settings
from metrocast.models.transit import to_epoch_millis

logger = logging.getLogger(__name__)

StaticDataListener = Callable[[datetime], Awaitable[None]]


class StaticDataNotifier:
    """Tells collaborators (page caches, map tiles) that the schedule changed.

    In-process listeners are awaited in registration order. If a webhook URL
    is configured the change is also POSTed there. Failures are logged and
    never propagate into the schedule load that triggered them.
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.webhook_url = settings.static_data_webhook_url
        self.webhook_token = settings.static_data_webhook_token
        self._client = client
        self._timeout = settings.gtfs_rt_timeout_seconds
        self._listeners: list[StaticDataListener] = []

    def subscribe(self, listener: StaticDataListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: StaticDataListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def notify(self, changed_at: datetime) -> None:
        for listener in list(self._listeners):
            try:
                await listener(changed_at)
            except Exception:
                logger.exception("Static data listener %r failed", listener)

        if self.webhook_url:
            await self._post_webhook(changed_at)

    async def _post_webhook(self, changed_at: datetime) -> None:
        headers = {}
        if self.webhook_token:
            headers["Authorization"] = f"Bearer {self.webhook_token}"
        payload = {"changed_at": to_epoch_millis(changed_at)}

        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await client.post(self.webhook_url, json=payload, headers=headers)
            response.raise_for_status()
            logger.info("Notified %s of static data change", self.webhook_url)
        except httpx.HTTPError as exc:
            logger.warning("Static data webhook %s failed: %s", self.webhook_url, exc)
        finally:
            if self._client is None:
                await client.aclose()
