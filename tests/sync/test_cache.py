# -*- coding: utf-8 -*-
"""
test_cache - PostgreSQL kv 兜底缓存测试
"""

from unittest.mock import MagicMock

import pytest

from odoosync.sync.cache import PgCache, RedisCache, get_cache
from odoosync.sync.config import SyncConfig
from odoosync.sync.db import get_connection


@pytest.fixture
def pg_cache(sync_db):
    return PgCache(lambda: get_connection(dsn=sync_db))


def expire(db_conn, key):
    with db_conn.cursor() as cur:
        cur.execute(
            "UPDATE odoosync.kv SET expires_at = now() - interval '1 second' WHERE key = %s",
            (key,),
        )


@pytest.mark.pg
class TestPgCache:
    def test_set_get_delete(self, pg_cache):
        pg_cache.set("k", {"a": 1}, ttl=60)
        assert pg_cache.get("k") == {"a": 1}

        pg_cache.delete("k")
        assert pg_cache.get("k") is None

    def test_add_only_when_absent(self, pg_cache):
        assert pg_cache.add("k", 1, ttl=60) is True
        assert pg_cache.add("k", 2, ttl=60) is False
        assert pg_cache.get("k") == 1

    def test_add_replaces_expired_key(self, pg_cache, db_conn):
        pg_cache.add("k", 1, ttl=60)
        expire(db_conn, "k")

        assert pg_cache.get("k") is None
        assert pg_cache.add("k", 2, ttl=60) is True
        assert pg_cache.get("k") == 2

    def test_incr(self, pg_cache, db_conn):
        assert pg_cache.incr("counter") is None

        pg_cache.set("counter", 1, ttl=60)
        assert pg_cache.incr("counter") == 2
        assert pg_cache.incr("counter") == 3

        expire(db_conn, "counter")
        assert pg_cache.incr("counter") is None

    def test_not_atomic(self, pg_cache):
        assert pg_cache.atomic is False


class TestRedisCache:
    def test_incr_on_missing_key_returns_none(self):
        client = MagicMock()
        client.incr.return_value = 1
        cache = RedisCache(client)

        assert cache.incr("k") is None
        client.delete.assert_called_once_with("k")

    def test_add_uses_set_nx(self):
        client = MagicMock()
        client.set.return_value = None
        cache = RedisCache(client)

        assert cache.add("k", 5, ttl=30) is False
        client.set.assert_called_once_with("k", "5", nx=True, ex=30)

    def test_get_decodes_json(self):
        client = MagicMock()
        client.get.return_value = '{"x": 2}'
        assert RedisCache(client).get("k") == {"x": 2}

    def test_get_cache_prefers_redis(self):
        cache = get_cache(SyncConfig(postgres_dsn="", redis_url="redis://localhost:6379/0"))
        assert isinstance(cache, RedisCache)
        assert get_cache() is cache
