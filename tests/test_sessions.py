import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from flows import ProjectStep
from sessions import SessionStore


class Clock:
    def __init__(self):
        self.now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def test_get_creates_default_session_on_first_access():
    store = SessionStore()
    session = store.get(42)
    assert session.state is None
    assert session.data == {}
    assert 42 in store


def test_get_refreshes_last_activity():
    clock = Clock()
    store = SessionStore(clock=clock)
    store.get(1)
    clock.now += timedelta(minutes=5)
    assert store.get(1).last_activity == clock.now


def test_set_state_keeps_data():
    store = SessionStore()
    store.set_data(1, "project_name", "Alpha")
    store.set_state(1, ProjectStep.WAITING_DESCRIPTION)
    store.set_state(1, ProjectStep.WAITING_DESCRIPTION)
    session = store.get(1)
    assert session.state is ProjectStep.WAITING_DESCRIPTION
    assert session.data == {"project_name": "Alpha"}


def test_set_data_creates_missing_session():
    store = SessionStore()
    store.set_data(7, "username", "alice")
    assert store.get(7).data == {"username": "alice"}


def test_clear_resets_but_keeps_key():
    store = SessionStore()
    store.set_state(1, ProjectStep.WAITING_NAME)
    store.update_data(1, {"a": 1, "b": 2})
    store.clear(1)
    assert 1 in store
    assert store.get(1).state is None
    assert store.get(1).data == {}


def test_sweep_removes_only_idle_sessions():
    clock = Clock()
    store = SessionStore(clock=clock)
    store.get(1)
    clock.now += timedelta(hours=23)
    store.get(2)
    clock.now += timedelta(hours=2)

    assert store.sweep(timedelta(hours=24)) == 1
    assert 1 not in store
    assert 2 in store
    assert len(store) == 1


def test_lock_is_per_user():
    store = SessionStore()
    assert store.lock(1) is store.lock(1)
    assert store.lock(1) is not store.lock(2)


async def test_sweeper_runs_on_interval():
    clock = Clock()
    store = SessionStore(clock=clock)
    store.get(1)
    clock.now += timedelta(hours=30)
    intervals = []

    async def fake_sleep(seconds):
        intervals.append(seconds)
        if len(intervals) > 1:
            raise asyncio.CancelledError

    with pytest.raises(asyncio.CancelledError):
        await store.run_sweeper(interval=timedelta(minutes=60), sleep=fake_sleep)

    assert intervals == [3600.0, 3600.0]
    assert 1 not in store


async def test_sweep_drops_locks_of_users_without_sessions():
    clock = Clock()
    store = SessionStore(clock=clock)
    for user_id in range(50):
        async with store.lock(user_id):
            pass
    store.get(99)
    held = store.lock(99)
    await held.acquire()
    clock.now += timedelta(days=3)

    assert store.sweep(timedelta(hours=24)) == 1
    assert list(store._locks) == [99]

    held.release()
    store.sweep(timedelta(hours=24))
    assert store._locks == {}
