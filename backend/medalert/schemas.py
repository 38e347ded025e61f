"""Pydantic schemas for HTTP bodies and realtime frames (camelCase on the wire)."""

from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


Latitude = Annotated[float, Field(ge=-90, le=90, allow_inf_nan=False)]
Longitude = Annotated[float, Field(ge=-180, le=180, allow_inf_nan=False)]


# ---------------------- Records ----------------------

class AlertOut(CamelModel):
    id: int
    user_id: int
    latitude: float
    longitude: float
    emergency_type: str
    description: Optional[str] = None
    status: str
    ambulance_id: Optional[int] = None
    created_at: datetime


class AmbulanceOut(CamelModel):
    id: int
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: str
    distance_km: Optional[float] = None


class FacilityOut(CamelModel):
    id: int
    name: str
    type: str
    address: str
    latitude: float
    longitude: float
    phone: Optional[str] = None
    open_hours: Optional[str] = None
    rating: Optional[str] = None
    distance_km: Optional[float] = None


# ---------------------- Request bodies ----------------------

class AlertCreate(CamelModel):
    latitude: Latitude
    longitude: Longitude
    emergency_type: str = Field(min_length=1)
    description: Optional[str] = None

    @field_validator("emergency_type")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("emergencyType must not be blank")
        return value.strip()


class AssignRequest(CamelModel):
    emergency_id: int
    ambulance_id: int


class AmbulanceStatusUpdate(CamelModel):
    status: Literal["available", "dispatched", "returning", "maintenance"]


# ---------------------- Realtime frames ----------------------

class LocationUpdate(CamelModel):
    type: Literal["location_update"] = "location_update"
    id: int | str
    latitude: Latitude
    longitude: Longitude
    role: Optional[str] = None


class EmergencyAlertFrame(CamelModel):
    type: Literal["emergency_alert"] = "emergency_alert"
    user_id: int
    latitude: Latitude
    longitude: Longitude
    emergency_type: str = Field(min_length=1)
    description: Optional[str] = None


class SubscriptionFrame(CamelModel):
    type: Literal["subscribe", "unsubscribe"]
    topics: List[str]


class ChatMessage(CamelModel):
    id: str
    text: str
    sender: Literal["user", "support"] = "user"
    timestamp: Optional[datetime] = None
    status: Optional[Literal["sending", "sent", "error"]] = None
    recipient_id: Optional[str] = None


class TypingIndicator(CamelModel):
    type: Literal["typing"] = "typing"
    is_typing: bool
    user_id: Optional[int] = None
    recipient_id: Optional[str] = None
