"""
Shared dependency injection functions for API endpoints.
"""

from fastapi import HTTPException, Request, status

from metrocast.services.prediction_store import PredictionStore


def get_prediction_store(request: Request) -> PredictionStore:
    """Return the store created for this process in the app lifespan."""
    store = getattr(request.app.state, "prediction_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Prediction store is not available",
        )
    return store
