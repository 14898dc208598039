import asyncio
from unittest.mock import MagicMock

import redis

from nutrivault.domain.calendar_sync.trigger_gate import SyncTriggerGate
from nutrivault.rate_limiter import COOLDOWN_KEY_PREFIX, MemoryCooldownStore, RedisCooldownStore


class CountingRun:
    def __init__(self, delay: float = 0):
        self.count = 0
        self.delay = delay

    async def __call__(self):
        self.count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.count


async def test_second_trigger_within_cooldown_is_noop(gate):
    run = CountingRun()

    assert await gate.run_if_allowed(1, run) == 1
    assert await gate.run_if_allowed(1, run) is None
    assert run.count == 1


async def test_runs_again_after_cooldown(gate, timer):
    run = CountingRun()
    await gate.run_if_allowed(1, run)

    timer.advance(2.5)

    assert await gate.run_if_allowed(1, run) == 2


async def test_accounts_have_independent_cooldowns(gate):
    run = CountingRun()

    await gate.run_if_allowed(1, run)
    await gate.run_if_allowed(2, run)

    assert run.count == 2


async def test_concurrent_triggers_run_once(gate):
    run = CountingRun(delay=0.01)

    results = await asyncio.gather(*(gate.run_if_allowed(7, run) for _ in range(5)))

    assert run.count == 1
    assert sorted(results, key=lambda r: r is None) == [1, None, None, None, None]


async def test_stamp_blocks_automatic_runs(gate):
    run = CountingRun()

    gate.stamp(3)

    assert await gate.run_if_allowed(3, run) is None
    assert run.count == 0


async def test_failures_are_logged_not_raised(gate, caplog):
    async def boom():
        raise RuntimeError("calendar unavailable")

    assert await gate.run_if_allowed(4, boom) is None
    assert "calendar unavailable" in caplog.text


def test_memory_store_evicts_least_recent(timer):
    store = MemoryCooldownStore(max_entries=2, clock=timer)

    store.try_acquire("a", 60)
    store.try_acquire("b", 60)
    store.touch("a", 60)
    store.try_acquire("c", 60)

    assert len(store) == 2
    # "b" was evicted, so it can run immediately
    assert store.try_acquire("b", 60) is True
    assert store.try_acquire("c", 60) is False


def test_redis_store_uses_set_nx_px():
    client = MagicMock()
    client.set.return_value = True
    store = RedisCooldownStore(client)

    assert store.try_acquire("9", 2) is True

    args, kwargs = client.set.call_args
    assert args[0] == f"{COOLDOWN_KEY_PREFIX}9"
    assert kwargs == {"nx": True, "px": 2000}


def test_redis_store_reports_existing_key():
    client = MagicMock()
    client.set.return_value = None

    assert RedisCooldownStore(client).try_acquire("9", 2) is False


def test_redis_store_fails_open():
    client = MagicMock()
    client.set.side_effect = redis.ConnectionError("connection refused")
    store = RedisCooldownStore(client)

    assert store.try_acquire("9", 2) is True
    store.touch("9", 2)


async def test_gate_over_redis_store():
    client = MagicMock()
    client.set.side_effect = [True, None]
    gate = SyncTriggerGate(RedisCooldownStore(client), cooldown_seconds=2)
    run = CountingRun()

    await gate.run_if_allowed(1, run)
    await gate.run_if_allowed(1, run)

    assert run.count == 1
