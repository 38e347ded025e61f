"""
SQLModel-backed entity store.

Each public coroutine runs one short-lived Session in the threadpool so a
slow database never stalls the event loop. Conditional transitions are
single UPDATE statements guarded by the expected status; an affected row
count of zero means another writer got there first.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import exists, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, col, create_engine, select
from starlette.concurrency import run_in_threadpool

from ..constants import OPEN_ALERT_STATUSES, AmbulanceStatus
from ..errors import AlreadyDispatched, Conflict, DispatchError, NotFound, PersistenceFailure
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

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back without tzinfo.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _alert_utc(alert: Optional[EmergencyAlert]) -> Optional[EmergencyAlert]:
    if alert is not None:
        alert.created_at = _as_utc(alert.created_at)
    return alert


def _unit_utc(unit: Optional[AmbulanceUnit]) -> Optional[AmbulanceUnit]:
    if unit is not None:
        unit.last_update = _as_utc(unit.last_update)
    return unit


class SQLStore(EntityStore):
    def __init__(
        self,
        database_url: str,
        echo: bool = False,
        session_ttl_hours: float = DEFAULT_SESSION_TTL_HOURS,
    ):
        self.session_ttl_hours = session_ttl_hours
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self._session() as session:
                return fn(session)

        try:
            return await run_in_threadpool(work)
        except DispatchError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database operation failed: {e}")
            raise PersistenceFailure() from e

    def _add(self, session: Session, record: T) -> T:
        session.add(record)
        session.commit()
        session.refresh(record)
        return record

    # Users and sessions

    async def create_user(self, username: str, role: str) -> User:
        def op(session: Session) -> User:
            existing = session.exec(select(User).where(User.username == username)).first()
            if existing:
                raise Conflict("Username already exists")
            return self._add(session, User(username=username, role=role))

        return await self._run(op)

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self._run(lambda session: session.get(User, user_id))

    async def create_session(self, user_id: int, ttl_hours: Optional[float] = None) -> str:
        if ttl_hours is None:
            ttl_hours = self.session_ttl_hours

        def op(session: Session) -> str:
            if session.get(User, user_id) is None:
                raise NotFound("User not found")
            token = secrets.token_urlsafe(32)
            self._add(session, AuthSession(
                token=token,
                user_id=user_id,
                expires_at=utcnow() + timedelta(hours=ttl_hours),
            ))
            return token

        return await self._run(op)

    async def get_session_user(self, token: str) -> Optional[User]:
        def op(session: Session) -> Optional[User]:
            auth = session.get(AuthSession, token)
            if auth is None:
                return None
            if _as_utc(auth.expires_at) <= utcnow():
                session.delete(auth)
                session.commit()
                return None
            return session.get(User, auth.user_id)

        return await self._run(op)

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
            user_id=user_id,
            latitude=latitude,
            longitude=longitude,
            emergency_type=emergency_type,
            description=description,
            created_at=utcnow(),
        )
        return _alert_utc(await self._run(lambda session: self._add(session, alert)))

    async def get_alert(self, alert_id: int) -> Optional[EmergencyAlert]:
        return _alert_utc(await self._run(lambda session: session.get(EmergencyAlert, alert_id)))

    async def list_alerts(
        self,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[EmergencyAlert]:
        statement = select(EmergencyAlert)
        if status is not None:
            statement = statement.where(EmergencyAlert.status == status)
        if user_id is not None:
            statement = statement.where(EmergencyAlert.user_id == user_id)
        statement = statement.order_by(col(EmergencyAlert.created_at).desc(), col(EmergencyAlert.id).desc())
        if limit is not None:
            statement = statement.limit(limit)
        alerts = await self._run(lambda session: list(session.exec(statement).all()))
        return [_alert_utc(a) for a in alerts]

    async def transition_alert(
        self,
        alert_id: int,
        expected: Iterable[str],
        status: str,
        ambulance_id=UNSET,
        expected_ambulance_id=UNSET,
    ) -> EmergencyAlert:
        expected = list(expected)
        values = {"status": status}
        if ambulance_id is not UNSET:
            values["ambulance_id"] = ambulance_id

        statement = update(EmergencyAlert).where(
            col(EmergencyAlert.id) == alert_id, col(EmergencyAlert.status).in_(expected)
        )
        if expected_ambulance_id is not UNSET:
            if expected_ambulance_id is None:
                statement = statement.where(col(EmergencyAlert.ambulance_id).is_(None))
            else:
                statement = statement.where(col(EmergencyAlert.ambulance_id) == expected_ambulance_id)

        def op(session: Session) -> EmergencyAlert:
            result = session.execute(statement.values(**values))
            if result.rowcount == 0:
                session.rollback()
                current = session.get(EmergencyAlert, alert_id)
                if current is None:
                    raise NotFound("Emergency not found")
                if current.status not in expected:
                    raise Conflict(f"Emergency is already {current.status}")
                raise Conflict("Emergency was reassigned concurrently")
            session.commit()
            return session.get(EmergencyAlert, alert_id)

        return _alert_utc(await self._run(op))

    # Ambulance units

    async def create_ambulance(
        self,
        name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        status: str = AmbulanceStatus.AVAILABLE.value,
    ) -> AmbulanceUnit:
        unit = AmbulanceUnit(name=name, latitude=latitude, longitude=longitude, status=status)
        return await self._run(lambda session: self._add(session, unit))

    async def get_ambulance(self, ambulance_id: int) -> Optional[AmbulanceUnit]:
        return _unit_utc(await self._run(lambda session: session.get(AmbulanceUnit, ambulance_id)))

    async def list_ambulances(self, status: Optional[str] = None) -> List[AmbulanceUnit]:
        statement = select(AmbulanceUnit).order_by(col(AmbulanceUnit.id))
        if status is not None:
            statement = statement.where(AmbulanceUnit.status == status)
        units = await self._run(lambda session: list(session.exec(statement).all()))
        return [_unit_utc(u) for u in units]

    def _set_status(self, session: Session, ambulance_id: int, status: str, expected: Optional[str], *criteria) -> int:
        statement = update(AmbulanceUnit).where(col(AmbulanceUnit.id) == ambulance_id, *criteria)
        if expected is not None:
            statement = statement.where(col(AmbulanceUnit.status) == expected)
        result = session.execute(statement.values(status=status))
        return result.rowcount

    async def claim_ambulance(self, ambulance_id: int) -> AmbulanceUnit:
        def op(session: Session) -> AmbulanceUnit:
            changed = self._set_status(
                session, ambulance_id, AmbulanceStatus.DISPATCHED.value, AmbulanceStatus.AVAILABLE.value
            )
            if changed == 0:
                session.rollback()
                current = session.get(AmbulanceUnit, ambulance_id)
                if current is None:
                    raise NotFound("Ambulance unit not found")
                raise AlreadyDispatched(f"Ambulance unit {ambulance_id} is {current.status}")
            session.commit()
            return session.get(AmbulanceUnit, ambulance_id)

        return _unit_utc(await self._run(op))

    async def release_ambulance(self, ambulance_id: int) -> bool:
        still_held = exists().where(
            col(EmergencyAlert.ambulance_id) == ambulance_id,
            col(EmergencyAlert.status).in_(OPEN_ALERT_STATUSES),
        )

        def op(session: Session) -> bool:
            changed = self._set_status(
                session,
                ambulance_id,
                AmbulanceStatus.AVAILABLE.value,
                AmbulanceStatus.DISPATCHED.value,
                ~still_held,
            )
            session.commit()
            return changed > 0

        return await self._run(op)

    async def update_ambulance_status(self, ambulance_id: int, status: str) -> AmbulanceUnit:
        def op(session: Session) -> AmbulanceUnit:
            unit = session.get(AmbulanceUnit, ambulance_id)
            if unit is None:
                raise NotFound("Ambulance unit not found")
            unit.status = status
            return self._add(session, unit)

        return _unit_utc(await self._run(op))

    async def update_ambulance_location(
        self, ambulance_id: int, latitude: float, longitude: float
    ) -> AmbulanceUnit:
        def op(session: Session) -> AmbulanceUnit:
            unit = session.get(AmbulanceUnit, ambulance_id)
            if unit is None:
                raise NotFound("Ambulance unit not found")
            unit.latitude = latitude
            unit.longitude = longitude
            unit.last_update = utcnow()
            return self._add(session, unit)

        return _unit_utc(await self._run(op))

    # Medical facilities

    async def create_facility(self, facility: MedicalFacility) -> MedicalFacility:
        return await self._run(lambda session: self._add(session, facility))

    async def list_facilities(self) -> List[MedicalFacility]:
        statement = select(MedicalFacility).order_by(col(MedicalFacility.id))
        return await self._run(lambda session: list(session.exec(statement).all()))

    # Chat audit trail

    async def create_chat_message(self, record: ChatMessageRecord) -> ChatMessageRecord:
        return await self._run(lambda session: self._add(session, record))

    async def list_chat_messages(self, user_id: Optional[int] = None) -> List[ChatMessageRecord]:
        statement = select(ChatMessageRecord).order_by(col(ChatMessageRecord.id))
        if user_id is not None:
            statement = statement.where(ChatMessageRecord.user_id == user_id)
        return await self._run(lambda session: list(session.exec(statement).all()))
