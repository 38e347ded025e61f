from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel

from .constants import AlertStatus, AmbulanceStatus, UserRole


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    role: str = UserRole.USER.value


class AuthSession(SQLModel, table=True):
    token: str = Field(primary_key=True)
    user_id: int = Field(index=True, foreign_key="user.id")
    expires_at: datetime


class EmergencyAlert(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    latitude: float
    longitude: float
    emergency_type: str
    description: Optional[str] = None
    status: str = Field(default=AlertStatus.ACTIVE.value, index=True)
    ambulance_id: Optional[int] = Field(default=None, foreign_key="ambulanceunit.id")
    created_at: datetime = Field(default_factory=utcnow, index=True)


class AmbulanceUnit(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: str = Field(default=AmbulanceStatus.AVAILABLE.value, index=True)
    last_update: Optional[datetime] = None


class MedicalFacility(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    type: str
    address: str
    latitude: float
    longitude: float
    phone: Optional[str] = None
    open_hours: Optional[str] = None
    rating: Optional[str] = None


class ChatMessageRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: str = Field(index=True)
    text: str
    sender: str
    user_id: int = Field(index=True)
    recipient_id: Optional[str] = None
    status: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
