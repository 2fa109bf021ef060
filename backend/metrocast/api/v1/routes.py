from fastapi import APIRouter

from metrocast.api.v1.endpoints.alerts import router as alerts_router
from metrocast.api.v1.endpoints.arrivals import router as arrivals_router
from metrocast.api.v1.endpoints.health import router as health_router
from metrocast.api.v1.endpoints.routes import router as routes_router
from metrocast.api.v1.endpoints.stops import router as stops_router
from metrocast.api.v1.endpoints.vehicle_positions import (
    router as vehicle_positions_router,
)

router = APIRouter()
router.include_router(health_router, tags=["meta"])
router.include_router(arrivals_router, tags=["arrivals"])
router.include_router(vehicle_positions_router, tags=["vehicles"])
router.include_router(alerts_router, tags=["alerts"])
router.include_router(stops_router, tags=["stops"])
router.include_router(routes_router, tags=["routes"])
