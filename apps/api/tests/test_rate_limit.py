"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

from unittest.mock import MagicMock

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from sahara.services.rate_limit import (
    RATE_LIMIT_TIERS,
    SLIDING_WINDOW_LUA,
    MemoryRateLimitStore,
    RateLimitConfig,
    RedisRateLimitStore,
    check_rate_limit,
    rate_limit,
)


class TestCheckRateLimit:
    def test_blocks_after_limit(self):
        store = MemoryRateLimitStore()
        config = RateLimitConfig(limit=3, window_seconds=60)

        results = [check_rate_limit("ip:1.2.3.4", config, store=store, now=1000.0 + i) for i in range(4)]

        assert [r.success for r in results] == [True, True, True, False]
        assert [r.remaining for r in results[:3]] == [2, 1, 0]
        assert results[3].retry_after == 57
        assert results[3].reset == 1060

    def test_identifiers_are_isolated(self):
        store = MemoryRateLimitStore()
        config = RateLimitConfig(limit=1, window_seconds=60)

        assert check_rate_limit("user:a", config, store=store, now=1000.0).success is True
        assert check_rate_limit("user:a", config, store=store, now=1001.0).success is False
        assert check_rate_limit("user:b", config, store=store, now=1001.0).success is True

    def test_window_slides(self):
        store = MemoryRateLimitStore()
        config = RateLimitConfig(limit=2, window_seconds=10)

        check_rate_limit("k", config, store=store, now=100.0)
        check_rate_limit("k", config, store=store, now=105.0)
        assert check_rate_limit("k", config, store=store, now=108.0).success is False
        # First hit expires at 110
        assert check_rate_limit("k", config, store=store, now=110.5).success is True
        assert check_rate_limit("k", config, store=store, now=111.0).success is False

    def test_idle_keys_are_swept(self):
        store = MemoryRateLimitStore()
        config = RateLimitConfig(limit=5, window_seconds=60)
        for i in range(1000):
            check_rate_limit(f"ip:10.0.{i // 256}.{i % 256}", config, store=store, now=0.0)
        assert len(store._hits) == 1000

        check_rate_limit("ip:203.0.113.9", config, store=store, now=10000.0)

        assert list(store._hits) == ["ip:203.0.113.9"]

    def test_sweep_keeps_keys_still_in_window(self):
        store = MemoryRateLimitStore(sweep_interval_seconds=0)
        config = RateLimitConfig(limit=1, window_seconds=60)

        check_rate_limit("a", config, store=store, now=0.0)
        check_rate_limit("b", config, store=store, now=30.0)

        assert set(store._hits) == {"a", "b"}
        assert check_rate_limit("a", config, store=store, now=59.0).success is False

    def test_tier_presets(self):
        assert RATE_LIMIT_TIERS["free"].limit == 20
        assert RATE_LIMIT_TIERS["pro"].limit == 100
        assert RATE_LIMIT_TIERS["studio"].limit == 500
        assert RATE_LIMIT_TIERS["unlimited"].limit == 10000


class TestRedisStore:
    def _store(self, reply):
        client = MagicMock()
        script = MagicMock(return_value=reply)
        client.register_script.return_value = script
        return RedisRateLimitStore(client), client, script

    def test_blocks_when_sorted_set_full(self):
        store, client, script = self._store([0, 5, b"950"])

        allowed, count, oldest = store.hit("k", limit=5, window_seconds=60, now=1000.0)

        assert allowed is False
        assert count == 5
        assert oldest == 950.0
        client.register_script.assert_called_once_with(SLIDING_WINDOW_LUA)

    def test_records_hit_in_one_round_trip(self):
        store, client, script = self._store([1, 2, b"990.5"])

        allowed, count, oldest = store.hit("k", limit=5, window_seconds=60, now=1000.0)

        assert allowed is True
        assert count == 2
        assert oldest == 990.5
        script.assert_called_once()
        kwargs = script.call_args.kwargs
        assert kwargs["keys"] == ["k"]
        assert kwargs["args"][:3] == [1000.0, 60, 5]
        assert kwargs["args"][3].startswith("1000.0:")
        client.pipeline.assert_not_called()

    def test_check_and_add_happen_in_the_script(self):
        assert SLIDING_WINDOW_LUA.index("ZCARD") < SLIDING_WINDOW_LUA.index("ZADD")
        assert "if count < limit then" in SLIDING_WINDOW_LUA


class TestRateLimitDependency:
    def _app(self, limit: int) -> FastAPI:
        app = FastAPI()
        config = RateLimitConfig(limit=limit, window_seconds=60, key_prefix=f"test-{limit}")

        @app.get("/ping", dependencies=[Depends(rate_limit(config))])
        def ping():
            return {"ok": True}

        return app

    def test_headers_and_429(self):
        client = TestClient(self._app(limit=2))
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}

        first = client.get("/ping", headers=headers)
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"

        client.get("/ping", headers=headers)
        blocked = client.get("/ping", headers=headers)
        assert blocked.status_code == 429
        assert int(blocked.headers["Retry-After"]) >= 1
        assert blocked.json()["detail"]["error"] == "Too many requests"

        other_ip = client.get("/ping", headers={"x-forwarded-for": "198.51.100.1"})
        assert other_ip.status_code == 200
