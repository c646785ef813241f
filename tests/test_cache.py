import pytest

from assessment_engine.core.cache import RedisStore


class BrokenRedis:
    async def get(self, key):
        raise ConnectionError("redis unavailable")

    async def set(self, key, value, ex=None):
        raise ConnectionError("redis unavailable")


async def test_redis_read_errors_propagate():
    store = RedisStore("redis://unused")
    store.redis = BrokenRedis()

    with pytest.raises(ConnectionError):
        await store.get("exam-session:s1")


async def test_redis_write_errors_report_not_saved():
    store = RedisStore("redis://unused")
    store.redis = BrokenRedis()

    assert await store.set("exam-session:s1", {"state": "in_progress"}) is False
