"""
Stop lookup endpoints.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Response, status

from metrocast.api.v1.shared.dependencies import get_prediction_store
from metrocast.models.transit import Stop
from metrocast.services.prediction_store import PredictionStore

router = APIRouter()

# Stops only change with a schedule load.
_STOP_CACHE_SECONDS = 600


@router.get(
    "/stops",
    response_model=list[Stop],
    summary="List all stops",
)
async def list_stops(
    response: Response,
    store: PredictionStore = Depends(get_prediction_store),
) -> list[Stop]:
    stops = await store.get_stops()
    response.headers["Cache-Control"] = f"public, max-age={_STOP_CACHE_SECONDS}"
    return sorted(stops, key=lambda stop: stop.stop_code)


@router.get(
    "/stops/{stop_code}",
    response_model=Stop,
    summary="Get a stop by its rider-facing code",
)
async def get_stop(
    response: Response,
    stop_code: Annotated[str, Path(min_length=1, description="Rider-facing stop code.")],
    store: PredictionStore = Depends(get_prediction_store),
) -> Stop:
    """Resolve a stop code to its stop."""
    stop = await store.get_stop_by_code(stop_code)
    if stop is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Stop '{stop_code}' not found",
        )
    response.headers["Cache-Control"] = f"public, max-age={_STOP_CACHE_SECONDS}"
    return stop
