# -*- coding: utf-8 -*-
"""
kv - odoosync.kv 轻量 KV 工具

本模块提供面向"已有 psycopg 连接"的 KV 读写能力（不负责建立连接/提交事务）。

expires_at 非空且早于 now() 的行视为不存在，读取时不返回；
purge_expired() 负责物理删除。
"""

from __future__ import annotations

import json
from typing import Any, Optional

import psycopg


def _check_key(namespace: str, key: str) -> None:
    if not namespace:
        raise ValueError("namespace 不能为空")
    if not key:
        raise ValueError("key 不能为空")


def kv_set_json(
    conn: psycopg.Connection[Any],
    namespace: str,
    key: str,
    value: Any,
    ttl_seconds: Optional[int] = None,
) -> None:
    """写入 JSON 到 odoosync.kv（存在则覆盖，ttl_seconds 为 None 表示永不过期）。"""
    _check_key(namespace, key)

    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO odoosync.kv (namespace, key, value_json, expires_at)
            VALUES (%s, %s, %s,
                    CASE WHEN %s::int IS NULL THEN NULL
                         ELSE now() + make_interval(secs => %s::int) END)
            ON CONFLICT (namespace, key) DO UPDATE
            SET value_json = EXCLUDED.value_json,
                expires_at = EXCLUDED.expires_at,
                updated_at = now()
            """,
            (namespace, key, json.dumps(value), ttl_seconds, ttl_seconds),
        )


def kv_add_json(
    conn: psycopg.Connection[Any],
    namespace: str,
    key: str,
    value: Any,
    ttl_seconds: Optional[int] = None,
) -> bool:
    """
    仅当 key 不存在（或已过期）时写入。

    Returns:
        True 表示写入成功，False 表示 key 已存在
    """
    _check_key(namespace, key)

    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO odoosync.kv (namespace, key, value_json, expires_at)
            VALUES (%s, %s, %s,
                    CASE WHEN %s::int IS NULL THEN NULL
                         ELSE now() + make_interval(secs => %s::int) END)
            ON CONFLICT (namespace, key) DO UPDATE
            SET value_json = EXCLUDED.value_json,
                expires_at = EXCLUDED.expires_at,
                updated_at = now()
            WHERE odoosync.kv.expires_at IS NOT NULL AND odoosync.kv.expires_at <= now()
            RETURNING key
            """,
            (namespace, key, json.dumps(value), ttl_seconds, ttl_seconds),
        )
        return cur.fetchone() is not None


def kv_get_json(
    conn: psycopg.Connection[Any],
    namespace: str,
    key: str,
) -> Optional[Any]:
    """从 odoosync.kv 读取 JSON 值，不存在或已过期返回 None。"""
    _check_key(namespace, key)

    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT value_json
            FROM odoosync.kv
            WHERE namespace = %s AND key = %s
              AND (expires_at IS NULL OR expires_at > now())
            """,
            (namespace, key),
        )
        row = cur.fetchone()
        if not row:
            return None

        value_json = row[0]
        if isinstance(value_json, str):
            return json.loads(value_json)
        return value_json


def kv_delete(
    conn: psycopg.Connection[Any],
    namespace: str,
    key: str,
) -> bool:
    """删除 key，返回是否删除了行。"""
    _check_key(namespace, key)

    with conn.cursor() as cur:
        cur.execute(
            "DELETE FROM odoosync.kv WHERE namespace = %s AND key = %s",
            (namespace, key),
        )
        return cur.rowcount > 0


def kv_purge_expired(conn: psycopg.Connection[Any]) -> int:
    """删除所有已过期的行，返回删除数量。"""
    with conn.cursor() as cur:
        cur.execute(
            "DELETE FROM odoosync.kv WHERE expires_at IS NOT NULL AND expires_at <= now()"
        )
        return cur.rowcount


__all__ = [
    "kv_set_json",
    "kv_add_json",
    "kv_get_json",
    "kv_delete",
    "kv_purge_expired",
]
