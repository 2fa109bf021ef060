import logging

from fastapi import APIRouter, Depends, Response, status
from valkey.exceptions import ValkeyError

from metrocast.api.v1.shared.dependencies import get_prediction_store
from metrocast.models.responses import HealthResponse
from metrocast.models.transit import to_epoch_millis
from metrocast.services.prediction_store import PredictionStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def healthcheck(
    response: Response,
    store: PredictionStore = Depends(get_prediction_store),
) -> HealthResponse:
    """Readiness probe, reports whether the store answers."""
    try:
        await store.ping()
        static_etag = await store.get_static_etag()
        updated_at = await store.get_vehicle_positions_updated_at()
    except (ValkeyError, OSError) as exc:
        logger.warning("Health check could not reach the store: %s", exc)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="degraded", store="unavailable")

    return HealthResponse(
        status="ok",
        store="ok",
        static_etag=static_etag,
        vehicle_positions_updated_at=(
            to_epoch_millis(updated_at) if updated_at is not None else None
        ),
    )
