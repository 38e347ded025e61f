from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from medalert.config import Config
from medalert.constants import StorageBackend, UserRole
from medalert.main import create_app
from medalert.store import MemoryStore, SQLStore


class FakeSocket:
    """Stands in for a Starlette WebSocket in hub and chat unit tests."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail
        self.accepted = False
        self.closed_with: int | None = None

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None):
        self.closed_with = code


def run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def fake_socket():
    return FakeSocket


@pytest.fixture()
def settings() -> Config:
    return Config(
        STORAGE_BACKEND=StorageBackend.MEMORY,
        SEED_SAMPLE_DATA=False,
        HEARTBEAT_INTERVAL_SECONDS=3600,
        LOG_LEVEL="WARNING",
    )


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture(params=["memory", "sql"])
def any_store(request, tmp_path):
    if request.param == "sql":
        return SQLStore(f"sqlite:///{tmp_path / 'medalert.sqlite'}")
    return MemoryStore()


@pytest.fixture()
def app(settings, store):
    return create_app(settings, store)


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def make_user(store):
    """Create a user with a live session; returns (user, auth headers, token)."""
    counter = {"n": 0}

    def factory(role: UserRole = UserRole.USER):
        counter["n"] += 1
        user = run(store.create_user(f"{role.value}-{counter['n']}", role.value))
        token = run(store.create_session(user.id))
        return user, {"Authorization": f"Bearer {token}"}, token

    return factory
