"""Alert lifecycle: creation, dispatch, resolution and the role gate."""

from __future__ import annotations

import asyncio

import pytest

from medalert.alerts import ALERT_CREATED, ALERT_UPDATED, AlertLifecycleManager
from medalert.errors import (
    AlreadyDispatched,
    Conflict,
    NotFound,
    PersistenceFailure,
    Unauthenticated,
    Unauthorized,
    ValidationError,
)
from medalert.models import User
from medalert.store import MemoryStore

from tests.conftest import run

DISPATCHER = User(id=100, username="dispatch", role="response_team")
ADMIN = User(id=101, username="admin", role="admin")
CITIZEN = User(id=7, username="citizen", role="user")


@pytest.fixture()
def manager(store):
    return AlertLifecycleManager(store)


def test_create_starts_active(manager):
    alert = run(manager.create(7, 37.77, -122.42, "Medical"))

    assert alert.status == "active"
    assert alert.ambulance_id is None
    assert alert.created_at is not None
    assert alert.user_id == 7


def test_create_assigns_increasing_unique_ids(manager):
    async def scenario():
        return [await manager.create(7, 37.77, -122.42, "Medical") for _ in range(5)]

    ids = [a.id for a in run(scenario())]

    assert ids == sorted(set(ids))


def test_create_accepts_decimal_strings(manager):
    alert = run(manager.create(7, "37.7749", "-122.4194", " Fire ", "smoke"))

    assert (alert.latitude, alert.longitude) == (37.7749, -122.4194)
    assert alert.emergency_type == "Fire"


@pytest.mark.parametrize(
    "latitude,longitude,emergency_type",
    [
        (None, -122.4, "Medical"),
        ("north", -122.4, "Medical"),
        (91, -122.4, "Medical"),
        (37.7, 181, "Medical"),
        (37.7, -122.4, ""),
        (37.7, -122.4, "   "),
    ],
)
def test_create_rejects_bad_input(manager, latitude, longitude, emergency_type):
    with pytest.raises(ValidationError):
        run(manager.create(7, latitude, longitude, emergency_type))


def test_assign_then_reassign_same_unit_conflicts(manager, store):
    """Raise, dispatch unit 1, then try to dispatch unit 1 again."""

    async def scenario():
        unit = await store.create_ambulance("Unit 1", 37.77, -122.42)
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        assigned = await manager.assign(DISPATCHER, alert.id, unit.id)
        with pytest.raises(Conflict):
            await manager.assign(DISPATCHER, alert.id, unit.id)
        return unit, assigned, await store.get_ambulance(unit.id)

    unit, assigned, stored_unit = run(scenario())

    assert assigned.status == "in_progress"
    assert assigned.ambulance_id == unit.id
    assert stored_unit.status == "dispatched"


def test_concurrent_assignments_of_one_unit(manager, store):
    async def scenario():
        unit = await store.create_ambulance("Unit 1", 37.77, -122.42)
        first = await manager.create(7, 37.77, -122.42, "Medical")
        second = await manager.create(8, 37.78, -122.41, "Fire")
        results = await asyncio.gather(
            manager.assign(DISPATCHER, first.id, unit.id),
            manager.assign(ADMIN, second.id, unit.id),
            return_exceptions=True,
        )
        return results, await store.get_ambulance(unit.id), await store.list_alerts(status="active")

    results, unit, still_active = run(scenario())

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1 and isinstance(failures[0], AlreadyDispatched)
    assert unit.status == "dispatched"
    assert len(still_active) == 1


def test_assign_unknown_ids(manager, store):
    async def scenario():
        unit = await store.create_ambulance("Unit 1")
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        with pytest.raises(NotFound):
            await manager.assign(DISPATCHER, 999, unit.id)
        with pytest.raises(NotFound):
            await manager.assign(DISPATCHER, alert.id, 999)
        return await store.get_ambulance(unit.id)

    assert run(scenario()).status == "available"


def test_reassignment_releases_previous_unit(manager, store):
    async def scenario():
        one = await store.create_ambulance("Unit 1")
        two = await store.create_ambulance("Unit 2")
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        await manager.assign(DISPATCHER, alert.id, one.id)
        moved = await manager.assign(DISPATCHER, alert.id, two.id)
        return moved, await store.get_ambulance(one.id), await store.get_ambulance(two.id)

    moved, one, two = run(scenario())

    assert moved.ambulance_id == two.id
    assert one.status == "available"
    assert two.status == "dispatched"


def test_failed_alert_write_undoes_the_claim(store):
    class FlakyStore(MemoryStore):
        async def transition_alert(self, *args, **kwargs):
            raise PersistenceFailure()

    flaky = FlakyStore()
    manager = AlertLifecycleManager(flaky)

    async def scenario():
        unit = await flaky.create_ambulance("Unit 1")
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        with pytest.raises(PersistenceFailure):
            await manager.assign(DISPATCHER, alert.id, unit.id)
        return await flaky.get_ambulance(unit.id), await flaky.get_alert(alert.id)

    unit, alert = run(scenario())

    assert unit.status == "available"
    assert alert.status == "active"


@pytest.mark.parametrize("principal,error", [(None, Unauthenticated), (CITIZEN, Unauthorized)])
def test_mutations_require_dispatch_role(manager, store, principal, error):
    async def scenario():
        unit = await store.create_ambulance("Unit 1")
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        with pytest.raises(error):
            await manager.assign(principal, alert.id, unit.id)
        with pytest.raises(error):
            await manager.resolve(principal, alert.id)
        return await store.get_alert(alert.id)

    assert run(scenario()).status == "active"


def test_resolve_unknown_alert_is_not_found(manager):
    with pytest.raises(NotFound):
        run(manager.resolve(DISPATCHER, 12345))


def test_resolve_releases_the_dispatched_unit(manager, store):
    async def scenario():
        unit = await store.create_ambulance("Unit 1")
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        await manager.assign(DISPATCHER, alert.id, unit.id)
        resolved = await manager.resolve(ADMIN, alert.id)
        with pytest.raises(Conflict):
            await manager.resolve(ADMIN, alert.id)
        with pytest.raises(Conflict):
            await manager.assign(ADMIN, alert.id, unit.id)
        return resolved, await store.get_ambulance(unit.id)

    resolved, unit = run(scenario())

    assert resolved.status == "resolved"
    assert resolved.ambulance_id is not None
    assert unit.status == "available"


def test_resolve_can_leave_unit_dispatched(store):
    manager = AlertLifecycleManager(store, release_on_resolve=False)

    async def scenario():
        unit = await store.create_ambulance("Unit 1")
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        await manager.assign(DISPATCHER, alert.id, unit.id)
        await manager.resolve(DISPATCHER, alert.id)
        return await store.get_ambulance(unit.id)

    assert run(scenario()).status == "dispatched"


def test_queries(manager):
    async def scenario():
        created = [await manager.create(7 if i % 2 else 8, 37.77, -122.42, "Medical") for i in range(8)]
        await manager.resolve(DISPATCHER, created[-1].id)
        return created, await manager.active(), await manager.history(7), await manager.recent()

    created, active, history, recent = run(scenario())

    assert all(a.status != "resolved" for a in active)
    assert len(active) == 7
    assert all(a.user_id == 7 for a in history)
    assert len(recent) == 5
    assert [a.id for a in recent] == [a.id for a in reversed(created)][:5]
    stamps = [a.created_at for a in recent]
    assert stamps == sorted(stamps, reverse=True)


def test_listeners_hear_transitions_and_failures_are_contained(manager, store):
    heard = []

    async def broken(event, alert):
        raise RuntimeError("listener exploded")

    async def recorder(event, alert):
        heard.append((event, alert.status))

    manager.subscribe(broken)
    manager.subscribe(recorder)

    async def scenario():
        unit = await store.create_ambulance("Unit 1")
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        await manager.assign(DISPATCHER, alert.id, unit.id)
        await manager.resolve(DISPATCHER, alert.id)

    run(scenario())

    assert heard == [
        (ALERT_CREATED, "active"),
        (ALERT_UPDATED, "in_progress"),
        (ALERT_UPDATED, "resolved"),
    ]


def test_resolving_an_old_alert_keeps_a_unit_another_alert_holds(any_store):
    """Unit 1 goes to A, is manually freed, then goes to B; resolving A must not free it."""
    manager = AlertLifecycleManager(any_store)

    async def scenario():
        unit = await any_store.create_ambulance("Unit 1")
        first = await manager.create(7, 37.77, -122.42, "Medical")
        second = await manager.create(8, 37.78, -122.41, "Fire")
        await manager.assign(DISPATCHER, first.id, unit.id)
        await any_store.update_ambulance_status(unit.id, "available")
        await manager.assign(DISPATCHER, second.id, unit.id)
        await manager.resolve(DISPATCHER, first.id)
        held = await any_store.get_ambulance(unit.id)
        await manager.resolve(DISPATCHER, second.id)
        return held, await any_store.get_ambulance(unit.id), await any_store.get_alert(second.id)

    held, freed, second = run(scenario())

    assert held.status == "dispatched"
    assert second.status == "resolved"
    assert freed.status == "available"


def test_reassigning_away_keeps_a_unit_another_alert_holds(any_store):
    manager = AlertLifecycleManager(any_store)

    async def scenario():
        one = await any_store.create_ambulance("Unit 1")
        two = await any_store.create_ambulance("Unit 2")
        first = await manager.create(7, 37.77, -122.42, "Medical")
        second = await manager.create(8, 37.78, -122.41, "Fire")
        await manager.assign(DISPATCHER, first.id, one.id)
        await any_store.update_ambulance_status(one.id, "available")
        await manager.assign(DISPATCHER, second.id, one.id)
        await manager.assign(DISPATCHER, first.id, two.id)
        return await any_store.get_ambulance(one.id)

    assert run(scenario()).status == "dispatched"


class YieldingStore(MemoryStore):
    """Suspends inside every claim, the way a threadpool-backed store does."""

    async def claim_ambulance(self, ambulance_id):
        await asyncio.sleep(0)
        return await super().claim_ambulance(ambulance_id)

    async def transition_alert(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().transition_alert(*args, **kwargs)


def test_concurrent_reassignments_leave_no_orphaned_unit():
    store = YieldingStore()
    manager = AlertLifecycleManager(store)

    async def scenario():
        units = [await store.create_ambulance(f"Unit {i}") for i in (1, 2, 3)]
        alert = await manager.create(7, 37.77, -122.42, "Medical")
        await manager.assign(DISPATCHER, alert.id, units[0].id)
        results = await asyncio.gather(
            manager.assign(DISPATCHER, alert.id, units[1].id),
            manager.assign(ADMIN, alert.id, units[2].id),
            return_exceptions=True,
        )
        return results, await store.get_alert(alert.id), await store.list_ambulances(status="dispatched")

    results, alert, dispatched = run(scenario())

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1 and isinstance(failures[0], Conflict)
    assert [u.id for u in dispatched] == [alert.ambulance_id]
