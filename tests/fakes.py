# -*- coding: utf-8 -*-
"""
测试用 Fake 依赖

- FakeClock: 可手动推进的时钟
- FakeCache: 带 TTL 的内存缓存，atomic 控制限流/熔断走原子或兜底分支
- FakeStore: 不过期的内存 kv（FailureNotifier / CircuitBreaker 的持久化存储）
- FakeOdooClient: 内存版 Odoo 模型存储，可配置失败
- FakeLock / FakeLockFactory: 可配置获取结果的锁
- RecordingSender: 记录告警
"""

from typing import Any, Dict, List, Optional, Set, Tuple

from odoosync.sync.errors import RemoteConnectionError


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCache:
    def __init__(self, atomic: bool = True, clock: Optional[FakeClock] = None):
        self.atomic = atomic
        self._clock = clock or FakeClock()
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _entry(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str) -> Optional[Any]:
        entry = self._entry(key)
        return None if entry is None else entry[0]

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._data[key] = (value, self._expiry(ttl))

    def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if self._entry(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl))
        return True

    def incr(self, key: str) -> Optional[int]:
        entry = self._entry(key)
        if entry is None:
            return None
        value = int(entry[0]) + 1
        self._data[key] = (value, entry[1])
        return value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return [key for key in list(self._data) if self._entry(key) is not None]


class FakeStore(FakeCache):
    def __init__(self):
        super().__init__(atomic=False)


class BrokenStore:
    """所有操作都抛异常"""

    def get(self, key):
        raise RuntimeError("store unavailable")

    def set(self, key, value, ttl=None):
        raise RuntimeError("store unavailable")

    def delete(self, key):
        raise RuntimeError("store unavailable")


class RecordingSender:
    def __init__(self, result: Optional[bool] = True, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.sent: List[Tuple[str, str]] = []

    def send(self, subject: str, body: str) -> bool:
        self.sent.append((subject, body))
        if self.error is not None:
            raise self.error
        return self.result


class FakeLock:
    def __init__(self, name: str, acquired: bool = True):
        self.name = name
        self.acquired = acquired
        self.held = False
        self.released = 0

    def acquire(self) -> bool:
        self.held = self.acquired
        return self.acquired

    def release(self) -> None:
        if self.held:
            self.released += 1
        self.held = False


class FakeLockFactory:
    def __init__(self, acquired: bool = True):
        self.acquired = acquired
        self.locks: List[FakeLock] = []

    def __call__(self, name: str) -> FakeLock:
        lock = FakeLock(name, self.acquired)
        self.locks.append(lock)
        return lock

    @property
    def names(self) -> List[str]:
        return [lock.name for lock in self.locks]


class FakeOdooClient:
    """
    内存版 Odoo: {model: {id: values}}

    search 支持 [["id", "in", [...]]] 与 [[field, "=", value], ...] 两种 domain。
    fail_create_batch 为 True 时 create_batch 抛出 RemoteConnectionError。
    failing_search_ids 中任一 id 出现在 "id in" 查询里时抛出 RemoteConnectionError。
    """

    def __init__(self):
        self.records: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self.failing_search_ids: Set[int] = set()
        self.fail_create_batch = False
        self._next_id = 100

    def add_record(self, model: str, record_id: int, **values: Any) -> None:
        self.records.setdefault(model, {})[record_id] = dict(values, id=record_id)

    def _matches(self, record: Dict[str, Any], domain: List[Any]) -> bool:
        for field_name, op, value in domain:
            if op == "in" and record.get(field_name) not in value:
                return False
            if op == "=" and record.get(field_name) != value:
                return False
        return True

    def search(self, model, domain, offset=0, limit=None, context=None) -> List[int]:
        self.calls.append(("search", model, domain))
        for field_name, op, value in domain:
            if field_name == "id" and op == "in" and self.failing_search_ids.intersection(value):
                raise RemoteConnectionError("Odoo 请求超时: simulated")
        found = sorted(
            rid for rid, rec in self.records.get(model, {}).items() if self._matches(rec, domain)
        )
        found = found[offset:]
        return found[:limit] if limit is not None else found

    def read(self, model, ids, fields=None) -> List[Dict[str, Any]]:
        self.calls.append(("read", model, list(ids)))
        table = self.records.get(model, {})
        return [dict(table[rid]) for rid in ids if rid in table]

    def create(self, model, values) -> int:
        self._next_id += 1
        self.calls.append(("create", model, dict(values)))
        self.add_record(model, self._next_id, **values)
        return self._next_id

    def create_batch(self, model, values_list) -> List[int]:
        self.calls.append(("create_batch", model, [dict(v) for v in values_list]))
        if self.fail_create_batch:
            raise RemoteConnectionError("Odoo 请求超时: simulated")
        ids = []
        for values in values_list:
            self._next_id += 1
            self.add_record(model, self._next_id, **values)
            ids.append(self._next_id)
        return ids

    def write(self, model, ids, values) -> bool:
        self.calls.append(("write", model, (list(ids), dict(values))))
        for rid in ids:
            self.records.setdefault(model, {}).setdefault(rid, {"id": rid}).update(values)
        return True

    def unlink(self, model, ids) -> bool:
        self.calls.append(("unlink", model, list(ids)))
        for rid in ids:
            self.records.get(model, {}).pop(rid, None)
        return True

    def calls_of(self, method: str) -> List[Tuple[str, str, Any]]:
        return [call for call in self.calls if call[0] == method]


class FakeEntityMap:
    """内存版 EntityMap，接口与 odoosync.sync.entity_map.EntityMap 一致"""

    def __init__(self):
        self.rows: Dict[Tuple[str, str, int], Tuple[int, str, Optional[str]]] = {}

    def get_remote_id(self, module, entity_type, local_id) -> Optional[int]:
        row = self.rows.get((module, entity_type, local_id))
        return row[0] if row else None

    def get_remote_ids_batch(self, module, entity_type, local_ids) -> Dict[int, int]:
        result = {}
        for local_id in local_ids:
            remote_id = self.get_remote_id(module, entity_type, local_id)
            if remote_id is not None:
                result[local_id] = remote_id
        return result

    def get_local_id(self, module, entity_type, remote_id) -> Optional[int]:
        for (m, et, local_id), (rid, _, _) in self.rows.items():
            if m == module and et == entity_type and rid == remote_id:
                return local_id
        return None

    def save(self, module, entity_type, local_id, remote_id, remote_model, sync_hash=None) -> bool:
        for key in [k for k, v in self.rows.items() if k[:2] == (module, entity_type) and v[0] == remote_id]:
            del self.rows[key]
        self.rows[(module, entity_type, local_id)] = (remote_id, remote_model, sync_hash)
        return True

    def remove(self, module, entity_type, local_id) -> bool:
        return self.rows.pop((module, entity_type, local_id), None) is not None

    def invalidate_key(self, module, entity_type, local_id) -> None:
        pass

    def get_module_entity_mappings(self, module, entity_type):
        from odoosync.sync.entity_map import EntityMapping

        return [
            EntityMapping(m, et, local_id, rid, model, sync_hash)
            for (m, et, local_id), (rid, model, sync_hash) in sorted(self.rows.items())
            if m == module and et == entity_type
        ]
