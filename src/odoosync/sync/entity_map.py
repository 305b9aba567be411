# -*- coding: utf-8 -*-
"""
odoosync.sync.entity_map - 本地 ID <-> Odoo ID 映射

odoosync.entity_map 表的唯一读写入口。适配器只通过 EntityMap 读写映射，不直接访问表。

- save():   幂等 upsert（按 (module, entity_type, local_id, remote_id) 四元组），
            同一 local_id 或 remote_id 的旧映射在同一事务内被替换
- remove(): 按 (module, entity_type, local_id) 删除
- 查找结果进入进程级 LRU 缓存（上限 5000 条），缓存未命中时回源数据库
"""

import hashlib
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg

from .db import ConnectionFactory, get_connection
from .errors import DatabaseError

logger = logging.getLogger(__name__)

LOOKUP_CACHE_MAX_SIZE = 5000
BATCH_CHUNK_SIZE = 500
MAPPINGS_SAFETY_LIMIT = 50000

_LOCAL = "local"
_REMOTE = "remote"


@dataclass
class EntityMapping:
    module: str
    entity_type: str
    local_id: int
    remote_id: int
    remote_model: str
    sync_hash: Optional[str] = None
    last_synced_at: Optional[datetime] = None


def compute_sync_hash(values: Dict[str, Any]) -> str:
    """对字段值计算 sha256 指纹（键排序的规范 JSON），用于变更检测。"""
    canonical = json.dumps(values, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class LookupCache:
    """
    进程级 LRU 查找缓存

    键: (module, entity_type, "local"|"remote", id)，值: 另一侧的 id。
    """

    def __init__(self, max_size: int = LOOKUP_CACHE_MAX_SIZE):
        self.max_size = max_size
        self._data: "OrderedDict[Tuple[str, str, str, int], int]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Tuple[str, str, str, int]) -> Optional[int]:
        with self._lock:
            value = self._data.get(key)
            if value is not None:
                self._data.move_to_end(key)
            return value

    def put(self, key: Tuple[str, str, str, int], value: int) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def discard(self, key: Tuple[str, str, str, int]) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


_lookup_cache = LookupCache()


def flush_cache() -> None:
    """清空进程级查找缓存"""
    _lookup_cache.clear()


class EntityMap:
    """
    实体映射仓库

    Args:
        connection_factory: 返回新连接的可调用对象，None 时使用 get_connection()
        cache: 查找缓存，默认使用进程级共享实例
    """

    def __init__(
        self,
        connection_factory: Optional[ConnectionFactory] = None,
        cache: Optional[LookupCache] = None,
    ):
        self._connection_factory = connection_factory or get_connection
        self._cache = cache if cache is not None else _lookup_cache

    # ------------------------------------------------------------------
    # 缓存
    # ------------------------------------------------------------------

    def _remember(self, module: str, entity_type: str, local_id: int, remote_id: int) -> None:
        self._cache.put((module, entity_type, _LOCAL, local_id), remote_id)
        self._cache.put((module, entity_type, _REMOTE, remote_id), local_id)

    def _forget(self, module: str, entity_type: str, local_id: int, remote_id: int) -> None:
        self._cache.discard((module, entity_type, _LOCAL, local_id))
        self._cache.discard((module, entity_type, _REMOTE, remote_id))

    def invalidate_key(self, module: str, entity_type: str, local_id: int) -> None:
        """使某个 local_id 的缓存失效（反向键同时失效）"""
        key = (module, entity_type, _LOCAL, local_id)
        remote_id = self._cache.get(key)
        self._cache.discard(key)
        if remote_id is not None:
            self._cache.discard((module, entity_type, _REMOTE, remote_id))

    def flush_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # 查找
    # ------------------------------------------------------------------

    def _query_one(self, sql: str, params: tuple, op_name: str) -> Optional[int]:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                return row[0] if row else None
        except psycopg.Error as e:
            raise DatabaseError(f"{op_name} 失败: {e}", {"error": str(e)})
        finally:
            conn.close()

    def get_remote_id(self, module: str, entity_type: str, local_id: int) -> Optional[int]:
        cached = self._cache.get((module, entity_type, _LOCAL, local_id))
        if cached is not None:
            return cached

        remote_id = self._query_one(
            """
            SELECT remote_id FROM odoosync.entity_map
            WHERE module = %s AND entity_type = %s AND local_id = %s
            ORDER BY id DESC
            LIMIT 1
            """,
            (module, entity_type, local_id),
            "查询 remote_id",
        )
        if remote_id is not None:
            self._remember(module, entity_type, local_id, remote_id)
        return remote_id

    def get_local_id(self, module: str, entity_type: str, remote_id: int) -> Optional[int]:
        cached = self._cache.get((module, entity_type, _REMOTE, remote_id))
        if cached is not None:
            return cached

        local_id = self._query_one(
            """
            SELECT local_id FROM odoosync.entity_map
            WHERE module = %s AND entity_type = %s AND remote_id = %s
            ORDER BY id DESC
            LIMIT 1
            """,
            (module, entity_type, remote_id),
            "查询 local_id",
        )
        if local_id is not None:
            self._remember(module, entity_type, local_id, remote_id)
        return local_id

    def _batch_lookup(
        self,
        module: str,
        entity_type: str,
        ids: Iterable[int],
        side: str,
    ) -> Dict[int, int]:
        """按 500 一批查询映射，side 为输入 id 所在的一侧。"""
        other = _REMOTE if side == _LOCAL else _LOCAL
        result: Dict[int, int] = {}
        missing: List[int] = []

        for id_ in dict.fromkeys(ids):
            cached = self._cache.get((module, entity_type, side, id_))
            if cached is not None:
                result[id_] = cached
            else:
                missing.append(id_)

        if not missing:
            return result

        conn = self._connection_factory()
        try:
            with conn.cursor() as cur:
                for start in range(0, len(missing), BATCH_CHUNK_SIZE):
                    chunk = missing[start:start + BATCH_CHUNK_SIZE]
                    cur.execute(
                        f"""
                        SELECT {side}_id, {other}_id FROM odoosync.entity_map
                        WHERE module = %s AND entity_type = %s AND {side}_id = ANY(%s)
                        ORDER BY id ASC
                        """,
                        (module, entity_type, chunk),
                    )
                    # 同一 id 多行时以最新一行为准
                    for key_id, value_id in cur.fetchall():
                        result[key_id] = value_id
        except psycopg.Error as e:
            raise DatabaseError(
                f"批量查询映射失败: {e}",
                {"module": module, "entity_type": entity_type, "error": str(e)},
            )
        finally:
            conn.close()

        for key_id in missing:
            if key_id in result:
                if side == _LOCAL:
                    self._remember(module, entity_type, key_id, result[key_id])
                else:
                    self._remember(module, entity_type, result[key_id], key_id)
        return result

    def get_remote_ids_batch(self, module: str, entity_type: str, local_ids: Iterable[int]) -> Dict[int, int]:
        """批量查询 {local_id: remote_id}，未映射的 id 不出现在结果中。"""
        return self._batch_lookup(module, entity_type, local_ids, _LOCAL)

    def get_local_ids_batch(self, module: str, entity_type: str, remote_ids: Iterable[int]) -> Dict[int, int]:
        """批量查询 {remote_id: local_id}"""
        return self._batch_lookup(module, entity_type, remote_ids, _REMOTE)

    def get_sync_hash(self, module: str, entity_type: str, local_id: int) -> Optional[str]:
        conn = self._connection_factory()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT sync_hash FROM odoosync.entity_map
                    WHERE module = %s AND entity_type = %s AND local_id = %s
                    ORDER BY id DESC
                    LIMIT 1
                    """,
                    (module, entity_type, local_id),
                )
                row = cur.fetchone()
                return row[0] if row else None
        except psycopg.Error as e:
            raise DatabaseError(f"查询 sync_hash 失败: {e}", {"error": str(e)})
        finally:
            conn.close()

    def get_module_entity_mappings(self, module: str, entity_type: str) -> List[EntityMapping]:
        """
        列出某模块某实体类型的全部映射（按 local_id 排序）。

        结果上限 50000 行，达到上限时记录 warning。
        """
        conn = self._connection_factory()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT module, entity_type, local_id, remote_id, remote_model,
                           sync_hash, last_synced_at
                    FROM odoosync.entity_map
                    WHERE module = %s AND entity_type = %s
                    ORDER BY local_id ASC
                    LIMIT %s
                    """,
                    (module, entity_type, MAPPINGS_SAFETY_LIMIT),
                )
                rows = cur.fetchall()
        except psycopg.Error as e:
            raise DatabaseError(
                f"列出映射失败: {e}",
                {"module": module, "entity_type": entity_type, "error": str(e)},
            )
        finally:
            conn.close()

        if len(rows) >= MAPPINGS_SAFETY_LIMIT:
            logger.warning(
                f"映射数量达到上限 {MAPPINGS_SAFETY_LIMIT}，结果被截断: "
                f"module={module}, entity_type={entity_type}"
            )
        return [EntityMapping(*row) for row in rows]

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    def save(
        self,
        module: str,
        entity_type: str,
        local_id: int,
        remote_id: int,
        remote_model: str,
        sync_hash: Optional[str] = None,
    ) -> bool:
        """
        保存映射（幂等）。

        同一 (module, entity_type) 下，与本次 local_id 或 remote_id 冲突的旧映射
        会被删除，然后按四元组 upsert 并刷新 last_synced_at。

        Returns:
            True 表示写入成功
        """
        conn = self._connection_factory()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM odoosync.entity_map
                    WHERE module = %s AND entity_type = %s
                      AND ((local_id = %s AND remote_id <> %s)
                           OR (remote_id = %s AND local_id <> %s))
                    RETURNING local_id, remote_id
                    """,
                    (module, entity_type, local_id, remote_id, remote_id, local_id),
                )
                replaced = cur.fetchall()

                cur.execute(
                    """
                    INSERT INTO odoosync.entity_map (
                        module, entity_type, local_id, remote_id, remote_model,
                        sync_hash, last_synced_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (module, entity_type, local_id, remote_id) DO UPDATE
                    SET remote_model = EXCLUDED.remote_model,
                        sync_hash = EXCLUDED.sync_hash,
                        last_synced_at = EXCLUDED.last_synced_at
                    """,
                    (module, entity_type, local_id, remote_id, remote_model, sync_hash),
                )
            conn.commit()
        except psycopg.Error as e:
            conn.rollback()
            raise DatabaseError(
                f"保存映射失败: {e}",
                {
                    "module": module,
                    "entity_type": entity_type,
                    "local_id": local_id,
                    "remote_id": remote_id,
                    "error": str(e),
                },
            )
        finally:
            conn.close()

        for old_local, old_remote in replaced:
            self._forget(module, entity_type, old_local, old_remote)
            logger.info(
                f"替换旧映射: module={module}, entity_type={entity_type}, "
                f"{old_local}->{old_remote} => {local_id}->{remote_id}"
            )
        self._remember(module, entity_type, local_id, remote_id)
        return True

    def remove(self, module: str, entity_type: str, local_id: int) -> bool:
        """
        删除映射。

        Returns:
            True 表示删除了至少一行
        """
        conn = self._connection_factory()
        try:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM odoosync.entity_map
                    WHERE module = %s AND entity_type = %s AND local_id = %s
                    RETURNING remote_id
                    """,
                    (module, entity_type, local_id),
                )
                removed = [row[0] for row in cur.fetchall()]
            conn.commit()
        except psycopg.Error as e:
            conn.rollback()
            raise DatabaseError(
                f"删除映射失败: {e}",
                {"module": module, "entity_type": entity_type, "local_id": local_id, "error": str(e)},
            )
        finally:
            conn.close()

        self._cache.discard((module, entity_type, _LOCAL, local_id))
        for remote_id in removed:
            self._cache.discard((module, entity_type, _REMOTE, remote_id))
        return bool(removed)
