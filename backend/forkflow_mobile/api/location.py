from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
from pydantic import BaseModel, Field
from datetime import datetime
from ..core.deps import get_services
from ..services.container import MobileServices
from ..services.geolocation import Coordinates, LocationOptions, LocationUnavailableError

router = APIRouter(prefix="/location", tags=["location"])


class CoordinatesModel(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = None
    captured_at: Optional[datetime] = None


class LocationResponse(BaseModel):
    permission: str
    coordinates: Optional[CoordinatesModel] = None
    formatted: Optional[str] = None
    is_accurate: Optional[bool] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class DistanceRequest(BaseModel):
    origin: CoordinatesModel
    destination: CoordinatesModel


def _coords_model(coords: Coordinates) -> CoordinatesModel:
    return CoordinatesModel(**vars(coords))


@router.get("/current", response_model=LocationResponse)
async def get_current_location(
    high_accuracy: bool = True,
    timeout_ms: Optional[int] = None,
    max_cache_age_ms: Optional[int] = None,
    services: MobileServices = Depends(get_services),
):
    provider = services.geolocation
    defaults = provider.default_options
    options = LocationOptions(
        high_accuracy=high_accuracy,
        timeout_ms=timeout_ms if timeout_ms is not None else defaults.timeout_ms,
        max_cache_age_ms=max_cache_age_ms if max_cache_age_ms is not None else defaults.max_cache_age_ms,
    )
    try:
        result = await provider.get_current_location(options)
    except LocationUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    if result.coordinates is None:
        return LocationResponse(
            permission=result.permission.value,
            error=result.error,
            error_kind=result.error_kind.value if result.error_kind else None,
        )
    return LocationResponse(
        permission=result.permission.value,
        coordinates=_coords_model(result.coordinates),
        formatted=provider.format_coordinates(result.coordinates),
        is_accurate=provider.is_location_accurate(result.coordinates),
    )


@router.get("/cached", response_model=CoordinatesModel)
async def get_cached_location(services: MobileServices = Depends(get_services)):
    """Last fix, if captured within the past five minutes."""
    cached = services.geolocation.get_cached_location()
    if cached is None:
        raise HTTPException(status_code=404, detail="No recent location")
    return _coords_model(cached)


@router.get("/permission")
async def get_permission(services: MobileServices = Depends(get_services)):
    permission = await services.geolocation.check_permission()
    return {"permission": permission.value, "available": services.geolocation.is_available()}


@router.post("/distance")
def calculate_distance(
    body: DistanceRequest,
    services: MobileServices = Depends(get_services),
):
    origin = Coordinates(latitude=body.origin.latitude, longitude=body.origin.longitude)
    destination = Coordinates(latitude=body.destination.latitude, longitude=body.destination.longitude)
    meters = services.geolocation.calculate_distance(origin, destination)
    return {"meters": round(meters, 1)}
