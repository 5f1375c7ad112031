# Per-key lock table and the Redis-backed property lock (fail-open, busy, off-loop I/O).
from __future__ import annotations

import asyncio
import threading

import pytest

import lodgely.locks as locks
from lodgely.errors import BusyError
from lodgely.locks import KeyedLocks, PropertyLocks


class FakeRedis:
    """Records which thread each command ran on; `held` makes SET NX fail."""

    def __init__(self, held: bool = False) -> None:
        self.held = held
        self.threads = []
        self.released = []

    def set(self, key, value, nx=False, px=None):
        self.threads.append(threading.get_ident())
        return not self.held

    def eval(self, script, numkeys, key, token):
        self.threads.append(threading.get_ident())
        self.released.append(key)
        return 1


@pytest.mark.asyncio
async def test_keyed_locks_serialize_and_prune():
    table = KeyedLocks()
    order = []

    async def worker(n):
        async with table.hold("p1"):
            order.append(("in", n))
            await asyncio.sleep(0)
            order.append(("out", n))

    await asyncio.gather(worker(1), worker(2))
    assert order == [("in", 1), ("out", 1), ("in", 2), ("out", 2)]
    assert len(table) == 0


@pytest.mark.asyncio
async def test_keyed_locks_prune_after_error():
    table = KeyedLocks()
    with pytest.raises(RuntimeError):
        async with table.hold(7):
            assert len(table) == 1
            raise RuntimeError("failed inside")
    assert len(table) == 0


@pytest.mark.asyncio
async def test_property_lock_talks_to_redis_off_the_loop(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(locks, "get_redis", lambda: fake)
    loop_thread = threading.get_ident()

    async with PropertyLocks().hold(42):
        pass

    assert fake.released == ["lock:booking:property:42"]
    assert len(fake.threads) == 2
    assert loop_thread not in fake.threads


@pytest.mark.asyncio
async def test_property_lock_held_elsewhere_is_busy(monkeypatch):
    monkeypatch.setattr(locks, "get_redis", lambda: FakeRedis(held=True))
    property_locks = PropertyLocks()
    with pytest.raises(BusyError):
        async with property_locks.hold(42):
            pass
    assert len(property_locks._locks) == 0


@pytest.mark.asyncio
async def test_property_lock_fails_open_without_redis(monkeypatch):
    monkeypatch.setattr(locks, "get_redis", lambda: None)
    async with PropertyLocks().hold(42):
        entered = True
    assert entered
