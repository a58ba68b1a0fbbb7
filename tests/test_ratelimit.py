from types import SimpleNamespace

import pytest

from voucherpay.infra import ratelimit
from voucherpay.infra.ratelimit import (
    MemoryRateLimiter, RedisRateLimiter, RateLimitRule, RATE_LIMITS,
)

RULE = RateLimitRule(max_requests=2, window_seconds=60)


@pytest.fixture
def clock(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(ratelimit, "time", SimpleNamespace(time=lambda: now[0]))
    return now


def test_default_rules():
    assert RATE_LIMITS["create_payment"] == RateLimitRule(5, 60)
    assert RATE_LIMITS["voucher_use"] == RateLimitRule(3, 60)
    assert RATE_LIMITS["cleanup_expired"] == RateLimitRule(10, 60)
    assert RATE_LIMITS["default"] == RateLimitRule(20, 60)


async def test_memory_limiter_blocks_after_limit(clock):
    rl = MemoryRateLimiter()

    first = await rl.hit("s", "ip:1", RULE)
    second = await rl.hit("s", "ip:1", RULE)
    third = await rl.hit("s", "ip:1", RULE)

    assert (first.success, first.remaining) == (True, 1)
    assert (second.success, second.remaining) == (True, 0)
    assert third.success is False
    assert third.reset == 1060.0
    assert third.retry_after() == 60

    clock[0] = 1030.5
    assert (await rl.hit("s", "ip:1", RULE)).retry_after() == 30


async def test_memory_limiter_window_resets(clock):
    rl = MemoryRateLimiter()
    for _ in range(3):
        await rl.hit("s", "ip:1", RULE)

    clock[0] = 1060.0

    assert (await rl.hit("s", "ip:1", RULE)).success is True


async def test_memory_limiter_keys_by_scope_and_client(clock):
    rl = MemoryRateLimiter()
    for _ in range(3):
        await rl.hit("s", "ip:1", RULE)

    assert (await rl.hit("s", "ip:2", RULE)).success is True
    assert (await rl.hit("other", "ip:1", RULE)).success is True

    rl.reset()
    assert (await rl.hit("s", "ip:1", RULE)).success is True


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    async def execute(self):
        out = []
        for op in self.ops:
            if op[0] == "incr":
                self.store.counts[op[1]] = self.store.counts.get(op[1], 0) + 1
                out.append(self.store.counts[op[1]])
            else:
                self.store.ttls[op[1]] = op[2]
                out.append(True)
        return out


class FakeRedis:
    def __init__(self):
        self.counts = {}
        self.ttls = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)


async def test_redis_limiter_uses_fixed_windows(clock):
    clock[0] = 1010.0
    r = FakeRedis()
    rl = RedisRateLimiter(r)

    results = [await rl.hit("voucher_use", "ip:1", RULE) for _ in range(3)]

    assert [x.success for x in results] == [True, True, False]
    assert r.counts == {"rl:voucher_use:ip:1:960": 3}
    assert r.ttls["rl:voucher_use:ip:1:960"] == 61
    assert results[-1].reset == 1020.0
