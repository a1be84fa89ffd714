"""Tests for Prometheus metrics registration and recording."""

from unittest.mock import AsyncMock

from prometheus_client import REGISTRY

from conftest import listing_page
from r2broker import metrics
from r2broker.ratelimit import FixedWindowRateLimiter, MemoryCounterStore


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestInitMetrics:
    """init_metrics()."""

    def test_idempotent(self):
        """Calling init twice does not re-register collectors."""
        metrics.init_metrics()
        metrics.init_metrics()
        assert metrics.store_operations_total is not None

    def test_prefix(self):
        metrics.init_metrics()
        names = {m.name for m in REGISTRY.collect()}
        assert "r2broker_store_operations" in names
        assert "r2broker_listing_cache_requests" in names
        assert "r2broker_rate_limit_rejections" in names
        assert "r2broker_snapshot_objects" in names


class TestRecording:
    """record_* helpers feed the registered collectors."""

    def test_store_operation(self):
        metrics.init_metrics()
        labels = {"operation": "presign", "status": "success"}
        before = _sample("r2broker_store_operations_total", labels)
        metrics.record_store_operation("presign", "success")
        assert _sample("r2broker_store_operations_total", labels) == before + 1

    def test_snapshot_gauge(self):
        metrics.init_metrics()
        metrics.set_snapshot_objects(42)
        assert _sample("r2broker_snapshot_objects") == 42

    async def test_listing_cache_hit_and_miss(self, store_client):
        metrics.init_metrics()
        store_client._client.list_objects_v2 = AsyncMock(return_value=listing_page(["a"]))
        hits = _sample("r2broker_listing_cache_requests_total", {"result": "hit"})
        misses = _sample("r2broker_listing_cache_requests_total", {"result": "miss"})

        await store_client.list_objects("metrics/")
        await store_client.list_objects("metrics/")

        assert _sample("r2broker_listing_cache_requests_total", {"result": "miss"}) == misses + 1
        assert _sample("r2broker_listing_cache_requests_total", {"result": "hit"}) == hits + 1

    async def test_rate_limit_rejection(self, clock):
        metrics.init_metrics()
        labels = {"operation": "metrics-test"}
        before = _sample("r2broker_rate_limit_rejections_total", labels)
        limiter = FixedWindowRateLimiter(MemoryCounterStore(), clock=clock)
        await limiter.check_and_increment("u1", "metrics-test", 1, 60)
        await limiter.check_and_increment("u1", "metrics-test", 1, 60)
        assert _sample("r2broker_rate_limit_rejections_total", labels) == before + 1
