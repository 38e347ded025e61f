from typing import Optional

from fastapi import Header, Request

from .alerts import AlertLifecycleManager, authorize_dispatch
from .config import Config
from .errors import Unauthenticated
from .models import User
from .store import EntityStore


def get_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def get_settings(request: Request) -> Config:
    return request.app.state.settings


def get_store(request: Request) -> EntityStore:
    return request.app.state.store


def get_alerts(request: Request) -> AlertLifecycleManager:
    return request.app.state.alerts


async def get_principal(request: Request, authorization: Optional[str] = Header(default=None)) -> User:
    token = get_bearer_token(authorization)
    if not token:
        raise Unauthenticated()
    user = await get_store(request).get_session_user(token)
    if user is None:
        raise Unauthenticated()
    return user


async def get_dispatcher(request: Request, authorization: Optional[str] = Header(default=None)) -> User:
    """Principal allowed to change alert or unit state."""
    return authorize_dispatch(await get_principal(request, authorization))
