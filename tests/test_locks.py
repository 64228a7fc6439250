"""Tests for the per-connection lock registry."""

import asyncio

from fintrack.app.bank_integration.locks import KeyedLocks, SyncLocks


def test_hold_serializes_one_key_only():
    locks = KeyedLocks()
    order = []

    async def worker(key, name):
        async with locks.hold(key):
            order.append(f"{name} in")
            await asyncio.sleep(0)
            order.append(f"{name} out")

    async def run():
        await asyncio.gather(worker(1, "a"), worker(1, "b"), worker(2, "c"))

    asyncio.run(run())

    assert order.index("a out") < order.index("b in")
    assert order.index("c in") < order.index("a out")


def test_forget_drops_idle_locks():
    locks = SyncLocks()

    async def use():
        async with locks.connections.hold(5):
            pass
        async with locks.refreshes.hold(5):
            pass

    asyncio.run(use())
    locks.forget(5)

    assert 5 not in locks.connections._locks
    assert 5 not in locks.refreshes._locks
    assert not hasattr(locks.connections, "get")
