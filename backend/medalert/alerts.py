"""
Alert lifecycle.

An alert moves forward only: active -> in_progress -> resolved. Dispatching
a unit touches two records (the alert and the unit); the unit is claimed
first with a conditional write, and the claim is undone if the alert write
fails, so neither record is left half-updated. A unit goes back to
`available` only once no open alert references it.
"""
import logging
from typing import Awaitable, Callable, List, Optional

from .constants import DISPATCH_ROLES, OPEN_ALERT_STATUSES, AlertStatus
from .errors import Conflict, NotFound, Unauthenticated, Unauthorized, ValidationError
from .geo import parse_coordinate
from .models import EmergencyAlert, User
from .store import EntityStore

logger = logging.getLogger(__name__)

AlertListener = Callable[[str, EmergencyAlert], Awaitable[None]]

ALERT_CREATED = "created"
ALERT_UPDATED = "updated"


def authorize_dispatch(principal: Optional[User]) -> User:
    """Single role gate for every state-mutating dispatch operation."""
    if principal is None:
        raise Unauthenticated()
    if principal.role not in {role.value for role in DISPATCH_ROLES}:
        raise Unauthorized("Response team or admin role required")
    return principal


def _coordinate(value, name: str, bound: float) -> float:
    number = parse_coordinate(value)
    if number is None:
        raise ValidationError(f"{name} is required and must be a number")
    if not -bound <= number <= bound:
        raise ValidationError(f"{name} must be between -{bound:g} and {bound:g}")
    return number


class AlertLifecycleManager:
    def __init__(self, store: EntityStore, release_on_resolve: bool = True, recent_limit: int = 5):
        self.store = store
        self.release_on_resolve = release_on_resolve
        self.recent_limit = recent_limit
        self._listeners: List[AlertListener] = []

    def subscribe(self, listener: AlertListener) -> None:
        self._listeners.append(listener)

    async def _notify(self, event: str, alert: EmergencyAlert) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event, alert)
            except Exception:
                logger.exception(f"Alert listener failed for {event} alert {alert.id}")

    # Transitions

    async def create(
        self,
        user_id: int,
        latitude,
        longitude,
        emergency_type: Optional[str],
        description: Optional[str] = None,
    ) -> EmergencyAlert:
        if user_id is None:
            raise ValidationError("userId is required")
        lat = _coordinate(latitude, "latitude", 90)
        lon = _coordinate(longitude, "longitude", 180)
        if not emergency_type or not str(emergency_type).strip():
            raise ValidationError("emergencyType is required")

        alert = await self.store.create_alert(
            user_id=user_id,
            latitude=lat,
            longitude=lon,
            emergency_type=str(emergency_type).strip(),
            description=description or None,
        )
        logger.info(f"Emergency {alert.id} ({alert.emergency_type}) raised by user {user_id}")
        await self._notify(ALERT_CREATED, alert)
        return alert

    async def assign(self, principal: Optional[User], emergency_id: int, ambulance_id: int) -> EmergencyAlert:
        authorize_dispatch(principal)

        alert = await self.store.get_alert(emergency_id)
        if alert is None:
            raise NotFound("Emergency not found")
        if alert.status == AlertStatus.RESOLVED.value:
            raise Conflict("Emergency is already resolved")
        previous_unit = alert.ambulance_id

        # Raises NotFound or AlreadyDispatched; a second claim on the same unit loses here.
        await self.store.claim_ambulance(ambulance_id)

        try:
            updated = await self.store.transition_alert(
                emergency_id,
                expected=OPEN_ALERT_STATUSES,
                status=AlertStatus.IN_PROGRESS.value,
                ambulance_id=ambulance_id,
                # Loses to a concurrent reassignment that committed after our read.
                expected_ambulance_id=previous_unit,
            )
        except Exception:
            await self._undo_claim(ambulance_id)
            raise

        if previous_unit is not None and previous_unit != ambulance_id:
            if await self.store.release_ambulance(previous_unit):
                logger.info(f"Unit {previous_unit} released from emergency {emergency_id}")

        logger.info(f"Unit {ambulance_id} dispatched to emergency {emergency_id} by user {principal.id}")
        await self._notify(ALERT_UPDATED, updated)
        return updated

    async def _undo_claim(self, ambulance_id: int) -> None:
        try:
            await self.store.release_ambulance(ambulance_id)
        except Exception:
            logger.exception(f"Could not release unit {ambulance_id} after failed assignment")

    async def resolve(self, principal: Optional[User], emergency_id: int) -> EmergencyAlert:
        authorize_dispatch(principal)

        updated = await self.store.transition_alert(
            emergency_id,
            expected=OPEN_ALERT_STATUSES,
            status=AlertStatus.RESOLVED.value,
        )
        logger.info(f"Emergency {emergency_id} resolved by user {principal.id}")

        if self.release_on_resolve and updated.ambulance_id is not None:
            if await self.store.release_ambulance(updated.ambulance_id):
                logger.info(f"Unit {updated.ambulance_id} available again")

        await self._notify(ALERT_UPDATED, updated)
        return updated

    # Queries

    async def active(self) -> List[EmergencyAlert]:
        return await self.store.list_alerts(status=AlertStatus.ACTIVE.value)

    async def history(self, user_id: int) -> List[EmergencyAlert]:
        return await self.store.list_alerts(user_id=user_id)

    async def recent(self) -> List[EmergencyAlert]:
        return await self.store.list_alerts(limit=self.recent_limit)
