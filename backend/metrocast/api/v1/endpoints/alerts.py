from fastapi import APIRouter, Depends

from metrocast.api.v1.shared.dependencies import get_prediction_store
from metrocast.models.transit import Alert
from metrocast.services.prediction_store import PredictionStore

router = APIRouter()


@router.get(
    "/alerts",
    response_model=list[Alert],
    summary="Get active service alerts",
)
async def get_alerts(
    store: PredictionStore = Depends(get_prediction_store),
) -> list[Alert]:
    """Return every active alert with English text."""
    return await store.get_alerts()
