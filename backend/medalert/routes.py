from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from .alerts import AlertLifecycleManager
from .config import Config
from .constants import AmbulanceStatus
from .dependencies import get_alerts, get_dispatcher, get_principal, get_settings, get_store
from .errors import ValidationError
from .geo import parse_coordinate
from .models import User
from .proximity import ranked
from .schemas import (
    AlertCreate,
    AlertOut,
    AmbulanceOut,
    AmbulanceStatusUpdate,
    AssignRequest,
    FacilityOut,
)
from .store import EntityStore

health_router = APIRouter()
router = APIRouter(prefix="/api")


@health_router.get("")
def health():
    return {"status": "ok"}


# ---------------------- Emergencies ----------------------

@router.post("/emergencies", response_model=AlertOut, status_code=status.HTTP_201_CREATED)
async def create_emergency(
    payload: AlertCreate,
    principal: User = Depends(get_principal),
    alerts: AlertLifecycleManager = Depends(get_alerts),
):
    return await alerts.create(
        user_id=principal.id,
        latitude=payload.latitude,
        longitude=payload.longitude,
        emergency_type=payload.emergency_type,
        description=payload.description,
    )


@router.get("/emergencies/active", response_model=List[AlertOut])
async def active_emergencies(
    _: User = Depends(get_principal),
    alerts: AlertLifecycleManager = Depends(get_alerts),
):
    return await alerts.active()


@router.get("/emergencies/user", response_model=List[AlertOut])
async def user_emergency_history(
    principal: User = Depends(get_principal),
    alerts: AlertLifecycleManager = Depends(get_alerts),
):
    return await alerts.history(principal.id)


@router.get("/emergencies/recent", response_model=List[AlertOut])
async def recent_emergencies(
    _: User = Depends(get_principal),
    alerts: AlertLifecycleManager = Depends(get_alerts),
):
    return await alerts.recent()


@router.post("/emergencies/assign", response_model=AlertOut)
async def assign_ambulance(
    payload: AssignRequest,
    principal: User = Depends(get_dispatcher),
    alerts: AlertLifecycleManager = Depends(get_alerts),
):
    return await alerts.assign(principal, payload.emergency_id, payload.ambulance_id)


@router.post("/emergencies/{emergency_id}/resolve", response_model=AlertOut)
async def resolve_emergency(
    emergency_id: int,
    principal: User = Depends(get_dispatcher),
    alerts: AlertLifecycleManager = Depends(get_alerts),
):
    return await alerts.resolve(principal, emergency_id)


# ---------------------- Ambulances ----------------------

def _origin(latitude: Optional[str], longitude: Optional[str]) -> tuple[float, float]:
    lat = parse_coordinate(latitude)
    lon = parse_coordinate(longitude)
    if lat is None or lon is None:
        raise ValidationError("Latitude and longitude required")
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise ValidationError("Latitude or longitude out of range")
    return lat, lon


def _radius(radius: Optional[float], settings: Config) -> float:
    if radius is None:
        return settings.NEARBY_RADIUS_KM
    if radius <= 0:
        raise ValidationError("Radius must be positive")
    return radius


@router.get("/ambulances", response_model=List[AmbulanceOut])
async def list_ambulances(_: User = Depends(get_principal), store: EntityStore = Depends(get_store)):
    return await store.list_ambulances()


@router.get("/ambulances/available", response_model=List[AmbulanceOut])
async def available_ambulances(_: User = Depends(get_principal), store: EntityStore = Depends(get_store)):
    return await store.list_ambulances(status=AmbulanceStatus.AVAILABLE.value)


@router.get("/ambulances/nearby", response_model=List[AmbulanceOut])
async def nearby_ambulances(
    latitude: Optional[str] = Query(default=None),
    longitude: Optional[str] = Query(default=None),
    radius: Optional[float] = Query(default=None),
    _: User = Depends(get_principal),
    store: EntityStore = Depends(get_store),
    settings: Config = Depends(get_settings),
):
    lat, lon = _origin(latitude, longitude)
    units = await store.list_ambulances()
    return [
        AmbulanceOut.model_validate(unit).model_copy(update={"distance_km": round(distance, 3)})
        for unit, distance in ranked(lat, lon, units, _radius(radius, settings))
    ]


@router.patch("/ambulances/{ambulance_id}/status", response_model=AmbulanceOut)
async def update_ambulance_status(
    ambulance_id: int,
    payload: AmbulanceStatusUpdate,
    _: User = Depends(get_dispatcher),
    store: EntityStore = Depends(get_store),
):
    return await store.update_ambulance_status(ambulance_id, payload.status)


# ---------------------- Facilities ----------------------

@router.get("/facilities", response_model=List[FacilityOut])
async def list_facilities(_: User = Depends(get_principal), store: EntityStore = Depends(get_store)):
    return await store.list_facilities()


@router.get("/facilities/nearby", response_model=List[FacilityOut])
async def nearby_facilities(
    latitude: Optional[str] = Query(default=None),
    longitude: Optional[str] = Query(default=None),
    radius: Optional[float] = Query(default=None),
    _: User = Depends(get_principal),
    store: EntityStore = Depends(get_store),
    settings: Config = Depends(get_settings),
):
    lat, lon = _origin(latitude, longitude)
    facilities = await store.list_facilities()
    return [
        FacilityOut.model_validate(facility).model_copy(update={"distance_km": round(distance, 3)})
        for facility, distance in ranked(lat, lon, facilities, _radius(radius, settings))
    ]
