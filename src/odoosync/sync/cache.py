# -*- coding: utf-8 -*-
"""
odoosync.sync.cache - 共享过期缓存

为限流器、webhook 去重、熔断器提供统一的带 TTL 键值接口。两种实现:

- RedisCache: atomic=True，add 使用 SET NX EX，incr 使用 INCR
- PgCache:    atomic=False，基于 odoosync.kv 表的 expires_at 列（无 Redis 时的兜底）

接口:
    get(key) -> Any | None
    set(key, value, ttl) -> None
    add(key, value, ttl) -> bool         仅 key 不存在时写入
    incr(key) -> int | None              key 已失效时返回 None，由调用方重新初始化
    delete(key) -> None

值统一按 JSON 序列化，调用方只放入 int/str/dict 等可 JSON 化的值。
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import psycopg
import redis

from .config import SyncConfig, get_config
from .db import ConnectionFactory, get_connection
from .errors import DatabaseError
from .kv import kv_add_json, kv_delete, kv_get_json, kv_set_json

logger = logging.getLogger(__name__)

CACHE_NAMESPACE = "cache"


class RedisCache:
    """Redis 实现（原子）"""

    atomic = True

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._client.set(key, json.dumps(value), ex=ttl)

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return bool(self._client.set(key, json.dumps(value), nx=True, ex=ttl))

    def incr(self, key: str) -> Optional[int]:
        value = int(self._client.incr(key))
        if value == 1:
            # INCR 在 key 不存在时会创建一个没有 TTL 的新 key：视为已过期
            self._client.delete(key)
            return None
        return value

    def delete(self, key: str) -> None:
        self._client.delete(key)


class PgCache:
    """
    PostgreSQL kv 表实现（非原子读改写，作为兜底）

    每个操作使用独立连接并立即提交。
    """

    atomic = False

    def __init__(self, connection_factory: ConnectionFactory, namespace: str = CACHE_NAMESPACE):
        self._connection_factory = connection_factory
        self._namespace = namespace

    def _run(self, op_name: str, func, *args):
        conn = self._connection_factory()
        try:
            result = func(conn, self._namespace, *args)
            conn.commit()
            return result
        except psycopg.Error as e:
            conn.rollback()
            raise DatabaseError(
                f"缓存操作 {op_name} 失败: {e}",
                {"namespace": self._namespace, "error": str(e)},
            )
        finally:
            conn.close()

    def get(self, key: str) -> Optional[Any]:
        return self._run("get", kv_get_json, key)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._run("set", kv_set_json, key, value, ttl)

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return self._run("add", kv_add_json, key, value, ttl)

    def incr(self, key: str) -> Optional[int]:
        current = self.get(key)
        if current is None:
            return None
        value = int(current) + 1
        # 保留原 TTL 需要额外查询，兜底实现只按计数语义写回
        conn = self._connection_factory()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE odoosync.kv
                    SET value_json = %s, updated_at = now()
                    WHERE namespace = %s AND key = %s
                      AND (expires_at IS NULL OR expires_at > now())
                    RETURNING key
                    """,
                    (json.dumps(value), self._namespace, key),
                )
                updated = cur.fetchone() is not None
            conn.commit()
        except psycopg.Error as e:
            conn.rollback()
            raise DatabaseError(
                f"缓存操作 incr 失败: {e}",
                {"namespace": self._namespace, "error": str(e)},
            )
        finally:
            conn.close()
        return value if updated else None

    def delete(self, key: str) -> None:
        self._run("delete", kv_delete, key)


# 全局缓存实例（延迟创建）
_cache = None


def get_cache(config: Optional[SyncConfig] = None):
    """
    获取进程级共享缓存

    REDIS_URL 已配置时使用 RedisCache，否则回退到 PgCache。
    """
    global _cache
    if _cache is None:
        if config is None:
            config = get_config()
        if config.redis_url:
            logger.debug("使用 Redis 缓存")
            _cache = RedisCache.from_url(config.redis_url)
        else:
            logger.debug("未配置 REDIS_URL，使用 PostgreSQL kv 缓存")
            _cache = PgCache(lambda: get_connection(config=config))
    return _cache


def reset_cache() -> None:
    """重置全局缓存实例（用于测试）"""
    global _cache
    _cache = None
