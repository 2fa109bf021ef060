from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from valkey.exceptions import ValkeyError

from metrocast.core.metrics import set_snapshot_age
from metrocast.services.prediction_store import PredictionStore

logger = logging.getLogger(__name__)

router = APIRouter()


async def _refresh_snapshot_ages(store: PredictionStore) -> None:
    try:
        updated_at = await store.get_vehicle_positions_updated_at()
    except ValkeyError as exc:
        logger.warning("Could not read snapshot ages for metrics: %s", exc)
        return
    if updated_at is not None:
        age = (datetime.now(timezone.utc) - updated_at).total_seconds()
        set_snapshot_age("vehicle_positions", max(age, 0.0))


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    """Prometheus exposition, with snapshot ages refreshed at scrape time."""
    store = getattr(request.app.state, "prediction_store", None)
    if store is not None:
        await _refresh_snapshot_ages(store)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
