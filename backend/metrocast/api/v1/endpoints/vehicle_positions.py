"""Vehicle positions endpoint, served straight from the stored JSON snapshot."""

from fastapi import APIRouter, Depends, Request, Response

from metrocast.api.v1.shared.dependencies import get_prediction_store
from metrocast.api.v1.shared.freshness import (
    etag_for,
    etag_matches,
    format_http_date,
    not_modified_response,
)
from metrocast.core.metrics import record_conditional_response
from metrocast.models.transit import VehiclePosition, to_epoch_millis
from metrocast.services.prediction_store import PredictionStore

router = APIRouter()

_ENDPOINT = "vehicle_positions"


@router.get(
    "/vehicle-positions",
    response_model=list[VehiclePosition],
    summary="Get all live vehicle positions",
    responses={304: {"description": "Snapshot unchanged for the given ETag"}},
)
async def get_vehicle_positions(
    request: Request,
    store: PredictionStore = Depends(get_prediction_store),
) -> Response:
    """Return the latest vehicle snapshot with an ETag for conditional polling."""
    updated_at = await store.get_vehicle_positions_updated_at()
    headers = {"Cache-Control": "no-cache"}
    if updated_at is not None:
        headers["ETag"] = etag_for(str(to_epoch_millis(updated_at)))
        headers["Last-Modified"] = format_http_date(updated_at)
        if etag_matches(request, headers["ETag"]):
            return not_modified_response(_ENDPOINT, headers)

    raw = await store.get_vehicle_positions_raw()
    record_conditional_response(_ENDPOINT, "full")
    return Response(content=raw or "[]", media_type="application/json", headers=headers)
