"""
Arrivals endpoint.

Clients poll this every few seconds. The per-stop freshness marker lets an
unchanged stop be answered with an empty 304 instead of a full prediction list.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response, status

from metrocast.api.v1.shared.dependencies import get_prediction_store
from metrocast.api.v1.shared.freshness import (
    format_http_date,
    get_if_modified_since,
    is_not_modified,
    not_modified_response,
)
from metrocast.core.config import Settings, get_settings
from metrocast.core.metrics import record_conditional_response
from metrocast.models.responses import ArrivalsResponse
from metrocast.services.prediction_store import PredictionStore

router = APIRouter()

_ENDPOINT = "arrivals"


@router.get(
    "/arrivals/{stop_code}",
    response_model=ArrivalsResponse,
    summary="Get upcoming arrivals for a stop",
    description=(
        "Returns scheduled visits merged with live predictions. Honours "
        "If-Modified-Since (or X-If-Modified-Since) with a 304 when the stop "
        "has not changed."
    ),
    responses={304: {"description": "Predictions unchanged since the given date"}},
)
async def get_arrivals(
    request: Request,
    response: Response,
    stop_code: Annotated[str, Path(min_length=1, description="Rider-facing stop code.")],
    limit: Annotated[
        int | None,
        Query(ge=1, le=100, description="Maximum number of arrivals to return."),
    ] = None,
    store: PredictionStore = Depends(get_prediction_store),
    settings: Settings = Depends(get_settings),
):
    """Retrieve the next arrivals for the requested stop."""
    stop = await store.get_stop_by_code(stop_code)
    if stop is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Stop '{stop_code}' not found",
        )

    marker = await store.get_stop_updated_at(stop.stop_id)
    headers = {"Cache-Control": "no-cache"}
    if marker is not None:
        headers["Last-Modified"] = format_http_date(marker)

    if is_not_modified(marker, get_if_modified_since(request)):
        return not_modified_response(_ENDPOINT, headers)

    since = datetime.now(timezone.utc) - timedelta(
        minutes=settings.arrivals_lookback_minutes
    )
    arrivals = await store.get_predictions(
        stop.stop_id, since, limit or settings.arrivals_default_limit
    )

    record_conditional_response(_ENDPOINT, "full")
    for name, value in headers.items():
        response.headers[name] = value
    return ArrivalsResponse(stop=stop, arrivals=arrivals)
