"""
Entity store interface.

The dispatch core only talks to persistence through this capability set.
All methods are coroutines: a durable backend is I/O bound, and every call is
a point where the event loop may service other connections.

Conditional writes (`transition_alert`, `claim_ambulance`,
`release_ambulance`) re-check the current status at write time, so callers
never act on a copy read before an await.
"""
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from ..models import (
    AmbulanceUnit,
    ChatMessageRecord,
    EmergencyAlert,
    MedicalFacility,
    User,
)

UNSET = object()

DEFAULT_SESSION_TTL_HOURS = 24


class EntityStore(ABC):
    # Users and sessions

    @abstractmethod
    async def create_user(self, username: str, role: str) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: int) -> Optional[User]: ...

    @abstractmethod
    async def create_session(self, user_id: int, ttl_hours: Optional[float] = None) -> str:
        """Issue an opaque bearer token for an existing user.

        Without `ttl_hours` the token lives for the store's configured session TTL.
        """

    @abstractmethod
    async def get_session_user(self, token: str) -> Optional[User]:
        """Resolve a bearer token; None when unknown or expired."""

    # Emergency alerts

    @abstractmethod
    async def create_alert(
        self,
        user_id: int,
        latitude: float,
        longitude: float,
        emergency_type: str,
        description: Optional[str] = None,
    ) -> EmergencyAlert: ...

    @abstractmethod
    async def get_alert(self, alert_id: int) -> Optional[EmergencyAlert]: ...

    @abstractmethod
    async def list_alerts(
        self,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[EmergencyAlert]:
        """Alerts matching the filters, most recent first."""

    @abstractmethod
    async def transition_alert(
        self,
        alert_id: int,
        expected: Iterable[str],
        status: str,
        ambulance_id=UNSET,
        expected_ambulance_id=UNSET,
    ) -> EmergencyAlert:
        """Move an alert to `status` only if its current status is in `expected`.

        When `expected_ambulance_id` is passed the alert must also still
        reference that unit. Raises NotFound for an unknown id and Conflict
        when either check fails. `ambulance_id` is written only when passed.
        """

    # Ambulance units

    @abstractmethod
    async def create_ambulance(
        self,
        name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        status: str = "available",
    ) -> AmbulanceUnit: ...

    @abstractmethod
    async def get_ambulance(self, ambulance_id: int) -> Optional[AmbulanceUnit]: ...

    @abstractmethod
    async def list_ambulances(self, status: Optional[str] = None) -> List[AmbulanceUnit]: ...

    @abstractmethod
    async def claim_ambulance(self, ambulance_id: int) -> AmbulanceUnit:
        """`available` -> `dispatched` as one conditional write.

        Raises NotFound for an unknown id and AlreadyDispatched when the unit
        is not available at write time.
        """

    @abstractmethod
    async def release_ambulance(self, ambulance_id: int) -> bool:
        """`dispatched` -> `available`; returns False when nothing changed.

        A unit still referenced by an open alert stays dispatched.
        """

    @abstractmethod
    async def update_ambulance_status(self, ambulance_id: int, status: str) -> AmbulanceUnit: ...

    @abstractmethod
    async def update_ambulance_location(
        self, ambulance_id: int, latitude: float, longitude: float
    ) -> AmbulanceUnit: ...

    # Medical facilities

    @abstractmethod
    async def create_facility(self, facility: MedicalFacility) -> MedicalFacility: ...

    @abstractmethod
    async def list_facilities(self) -> List[MedicalFacility]: ...

    # Chat audit trail

    @abstractmethod
    async def create_chat_message(self, record: ChatMessageRecord) -> ChatMessageRecord: ...

    @abstractmethod
    async def list_chat_messages(self, user_id: Optional[int] = None) -> List[ChatMessageRecord]: ...


async def seed_sample_data(store: EntityStore) -> None:
    """Reference units and facilities used by development deployments."""
    await store.create_ambulance("Ambulance Unit 103", 37.7749, -122.4194)
    await store.create_ambulance("Ambulance Unit 105", 37.7833, -122.4167)
    await store.create_ambulance("MedEvac Helicopter", 37.8044, -122.2711)

    await store.create_facility(MedicalFacility(
        name="City General Hospital",
        type="Hospital",
        address="123 Main St, Cityville",
        latitude=37.7749,
        longitude=-122.4194,
        phone="555-123-4567",
        open_hours="24/7",
        rating="4.8",
    ))
    await store.create_facility(MedicalFacility(
        name="Urgent Care Center",
        type="Urgent Care",
        address="456 Oak Ave, Townsville",
        latitude=37.7833,
        longitude=-122.4167,
        phone="555-987-6543",
        open_hours="8AM-10PM",
        rating="4.5",
    ))
    await store.create_facility(MedicalFacility(
        name="HealthPlus Pharmacy",
        type="Pharmacy",
        address="789 Elm St, Villageton",
        latitude=37.7894,
        longitude=-122.4107,
        phone="555-456-7890",
        open_hours="9AM-9PM",
        rating="4.2",
    ))
