from fastapi import APIRouter, Depends, Response

from metrocast.api.v1.shared.dependencies import get_prediction_store
from metrocast.models.transit import RouteWithShapes
from metrocast.services.prediction_store import PredictionStore

router = APIRouter()


@router.get(
    "/routes",
    response_model=list[RouteWithShapes],
    summary="List routes with their shapes",
    description="Each route carries one polyline per distinct shape its trips use.",
)
async def list_routes(
    response: Response,
    store: PredictionStore = Depends(get_prediction_store),
) -> list[RouteWithShapes]:
    routes = await store.get_routes_with_shapes()
    response.headers["Cache-Control"] = "public, max-age=600"
    return routes
