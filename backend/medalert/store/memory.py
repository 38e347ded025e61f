"""
In-memory entity store.

Deterministic and synchronous under the hood: no method awaits anything, so
each call runs to completion on the event loop and conditional writes are
atomic without locks. Records are replaced, never mutated in place, so a
record handed to a caller is a stable snapshot.
"""
import itertools
import secrets
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from ..constants import OPEN_ALERT_STATUSES, AmbulanceStatus
from ..errors import AlreadyDispatched, Conflict, NotFound
from ..models import (
    AmbulanceUnit,
    AuthSession,
    ChatMessageRecord,
    EmergencyAlert,
    MedicalFacility,
    User,
    utcnow,
)
from .base import DEFAULT_SESSION_TTL_HOURS, UNSET, EntityStore


def _replace(record, **changes):
    return type(record)(**{**record.model_dump(), **changes})


def _newest_first(alerts: Iterable[EmergencyAlert]) -> List[EmergencyAlert]:
    return sorted(alerts, key=lambda a: (a.created_at, a.id), reverse=True)


class MemoryStore(EntityStore):
    def __init__(self, session_ttl_hours: float = DEFAULT_SESSION_TTL_HOURS):
        self.session_ttl_hours = session_ttl_hours
        self._users: Dict[int, User] = {}
        self._sessions: Dict[str, AuthSession] = {}
        self._alerts: Dict[int, EmergencyAlert] = {}
        self._ambulances: Dict[int, AmbulanceUnit] = {}
        self._facilities: Dict[int, MedicalFacility] = {}
        self._chat_messages: List[ChatMessageRecord] = []

        self._user_ids = itertools.count(1)
        self._alert_ids = itertools.count(1)
        self._ambulance_ids = itertools.count(1)
        self._facility_ids = itertools.count(1)
        self._chat_ids = itertools.count(1)

    # Users and sessions

    async def create_user(self, username: str, role: str) -> User:
        if any(u.username == username for u in self._users.values()):
            raise Conflict("Username already exists")
        user = User(id=next(self._user_ids), username=username, role=role)
        self._users[user.id] = user
        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    async def create_session(self, user_id: int, ttl_hours: Optional[float] = None) -> str:
        if user_id not in self._users:
            raise NotFound("User not found")
        if ttl_hours is None:
            ttl_hours = self.session_ttl_hours
        token = secrets.token_urlsafe(32)
        self._sessions[token] = AuthSession(
            token=token,
            user_id=user_id,
            expires_at=utcnow() + timedelta(hours=ttl_hours),
        )
        return token

    async def get_session_user(self, token: str) -> Optional[User]:
        session = self._sessions.get(token)
        if session is None:
            return None
        if session.expires_at <= utcnow():
            self._sessions.pop(token, None)
            return None
        return self._users.get(session.user_id)

    # Emergency alerts

    async def create_alert(
        self,
        user_id: int,
        latitude: float,
        longitude: float,
        emergency_type: str,
        description: Optional[str] = None,
    ) -> EmergencyAlert:
        alert = EmergencyAlert(
            id=next(self._alert_ids),
            user_id=user_id,
            latitude=latitude,
            longitude=longitude,
            emergency_type=emergency_type,
            description=description,
            created_at=utcnow(),
        )
        self._alerts[alert.id] = alert
        return alert

    async def get_alert(self, alert_id: int) -> Optional[EmergencyAlert]:
        return self._alerts.get(alert_id)

    async def list_alerts(
        self,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[EmergencyAlert]:
        alerts = [
            a for a in self._alerts.values()
            if (status is None or a.status == status)
            and (user_id is None or a.user_id == user_id)
        ]
        alerts = _newest_first(alerts)
        return alerts if limit is None else alerts[:limit]

    async def transition_alert(
        self,
        alert_id: int,
        expected: Iterable[str],
        status: str,
        ambulance_id=UNSET,
        expected_ambulance_id=UNSET,
    ) -> EmergencyAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFound("Emergency not found")
        if alert.status not in set(expected):
            raise Conflict(f"Emergency is already {alert.status}")
        if expected_ambulance_id is not UNSET and alert.ambulance_id != expected_ambulance_id:
            raise Conflict("Emergency was reassigned concurrently")
        changes = {"status": status}
        if ambulance_id is not UNSET:
            changes["ambulance_id"] = ambulance_id
        updated = _replace(alert, **changes)
        self._alerts[alert_id] = updated
        return updated

    # Ambulance units

    async def create_ambulance(
        self,
        name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        status: str = AmbulanceStatus.AVAILABLE.value,
    ) -> AmbulanceUnit:
        unit = AmbulanceUnit(
            id=next(self._ambulance_ids),
            name=name,
            latitude=latitude,
            longitude=longitude,
            status=status,
        )
        self._ambulances[unit.id] = unit
        return unit

    async def get_ambulance(self, ambulance_id: int) -> Optional[AmbulanceUnit]:
        return self._ambulances.get(ambulance_id)

    async def list_ambulances(self, status: Optional[str] = None) -> List[AmbulanceUnit]:
        return [u for u in self._ambulances.values() if status is None or u.status == status]

    def _require_ambulance(self, ambulance_id: int) -> AmbulanceUnit:
        unit = self._ambulances.get(ambulance_id)
        if unit is None:
            raise NotFound("Ambulance unit not found")
        return unit

    async def claim_ambulance(self, ambulance_id: int) -> AmbulanceUnit:
        unit = self._require_ambulance(ambulance_id)
        if unit.status != AmbulanceStatus.AVAILABLE.value:
            raise AlreadyDispatched(f"Ambulance unit {ambulance_id} is {unit.status}")
        updated = _replace(unit, status=AmbulanceStatus.DISPATCHED.value)
        self._ambulances[ambulance_id] = updated
        return updated

    async def release_ambulance(self, ambulance_id: int) -> bool:
        unit = self._ambulances.get(ambulance_id)
        if unit is None or unit.status != AmbulanceStatus.DISPATCHED.value:
            return False
        if any(
            a.ambulance_id == ambulance_id and a.status in OPEN_ALERT_STATUSES
            for a in self._alerts.values()
        ):
            return False
        self._ambulances[ambulance_id] = _replace(unit, status=AmbulanceStatus.AVAILABLE.value)
        return True

    async def update_ambulance_status(self, ambulance_id: int, status: str) -> AmbulanceUnit:
        unit = self._require_ambulance(ambulance_id)
        updated = _replace(unit, status=status)
        self._ambulances[ambulance_id] = updated
        return updated

    async def update_ambulance_location(
        self, ambulance_id: int, latitude: float, longitude: float
    ) -> AmbulanceUnit:
        unit = self._require_ambulance(ambulance_id)
        updated = _replace(unit, latitude=latitude, longitude=longitude, last_update=utcnow())
        self._ambulances[ambulance_id] = updated
        return updated

    # Medical facilities

    async def create_facility(self, facility: MedicalFacility) -> MedicalFacility:
        stored = _replace(facility, id=next(self._facility_ids))
        self._facilities[stored.id] = stored
        return stored

    async def list_facilities(self) -> List[MedicalFacility]:
        return list(self._facilities.values())

    # Chat audit trail

    async def create_chat_message(self, record: ChatMessageRecord) -> ChatMessageRecord:
        stored = _replace(record, id=next(self._chat_ids))
        self._chat_messages.append(stored)
        return stored

    async def list_chat_messages(self, user_id: Optional[int] = None) -> List[ChatMessageRecord]:
        return [m for m in self._chat_messages if user_id is None or m.user_id == user_id]
