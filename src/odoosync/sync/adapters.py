# -*- coding: utf-8 -*-
"""
odoosync.sync.adapters - 实体适配器契约与基类

SyncAdapter 是引擎看到的接口: 一个模块（module）负责若干实体类型的 push/pull。
BaseAdapter 提供通用实现:

- 分发表 {(Direction, Action): handler}，可按实体类型覆盖
- push 的"先查映射再创建"在 AdvisoryLock 内完成，避免并发 push 在 Odoo 重复建档
- 锁工厂、partner 服务、翻译服务作为显式字段注入（未注入时按需构造一次）

子类必须实现 get_odoo_models()。本地数据钩子是可选的，只在用到的处理函数里才会被调用:

- load_local_data:   push create/update 且任务没有携带 payload 时
- save_local_data:   pull create/update
- delete_local_data: pull delete

只做单向同步的模块可以不实现对应钩子；被调用而未实现时抛出 NotImplementedError，
任务按 TERMINAL 失败。
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .advisory_lock import DEFAULT_LOCK_TIMEOUT, AdvisoryLock
from .entity_map import EntityMap, compute_sync_hash
from .errors import SyncError, UnknownModuleError
from .sync_errors import ErrorType, classify_exception

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    PUSH = "push"
    PULL = "pull"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class SyncResult:
    """单个任务的处理结果"""

    success: bool
    message: str = ""
    error_type: Optional[ErrorType] = None
    entity_id: Optional[int] = None

    @classmethod
    def ok(cls, entity_id: Optional[int] = None, message: str = "") -> "SyncResult":
        return cls(success=True, message=message, entity_id=entity_id)

    @classmethod
    def failure(
        cls,
        message: str,
        error_type: ErrorType = ErrorType.TERMINAL,
        entity_id: Optional[int] = None,
    ) -> "SyncResult":
        return cls(success=False, message=message, error_type=error_type, entity_id=entity_id)

    @classmethod
    def from_exception(cls, exc: BaseException, entity_id: Optional[int] = None) -> "SyncResult":
        error_type, message = classify_exception(exc)
        return cls.failure(message, error_type, entity_id)


class SyncAdapter(ABC):
    """引擎调用的适配器接口"""

    id: str

    @abstractmethod
    def get_odoo_models(self) -> Dict[str, str]:
        """返回 {entity_type: odoo 模型名}"""

    @abstractmethod
    def get_client(self):
        """返回 Odoo RPC 客户端"""

    @abstractmethod
    def push(
        self,
        entity_type: str,
        action: Action,
        local_id: Optional[int],
        remote_id: Optional[int],
        payload: Dict[str, Any],
    ) -> SyncResult:
        """本地 -> Odoo"""

    @abstractmethod
    def pull(
        self,
        entity_type: str,
        action: Action,
        remote_id: Optional[int],
        local_id: Optional[int],
        payload: Dict[str, Any],
    ) -> SyncResult:
        """Odoo -> 本地"""


Handler = Callable[[str, Optional[int], Optional[int], Dict[str, Any]], SyncResult]


class BaseAdapter(SyncAdapter):
    """
    通用适配器基类

    Args:
        module_id: 模块标识（队列中的 module 字段）
        client_provider: 返回 OdooClient 的可调用对象（首次使用时调用）
        entity_map: 实体映射仓库
        lock_factory: name -> AdvisoryLock，默认 AdvisoryLock(name, timeout=lock_timeout)
        partner_service_factory / translation_service_factory: 服务构造器（只调用一次）
    """

    def __init__(
        self,
        module_id: str,
        client_provider: Callable[[], Any],
        entity_map: Optional[EntityMap] = None,
        lock_factory: Optional[Callable[[str], AdvisoryLock]] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        partner_service_factory: Optional[Callable[["BaseAdapter"], Any]] = None,
        translation_service_factory: Optional[Callable[["BaseAdapter"], Any]] = None,
    ):
        self.id = module_id
        self._client_provider = client_provider
        self._client = None
        self.entity_map = entity_map if entity_map is not None else EntityMap()
        self.lock_helper = lock_factory or (lambda name: AdvisoryLock(name, timeout=lock_timeout))
        self._partner_service_factory = partner_service_factory
        self._translation_service_factory = translation_service_factory
        self._partner_service = None
        self._translation_service = None
        self._overrides: Dict[Tuple[str, Direction, Action], Handler] = {}
        self._dispatch: Dict[Tuple[Direction, Action], Handler] = {
            (Direction.PUSH, Action.CREATE): self._push_upsert,
            (Direction.PUSH, Action.UPDATE): self._push_upsert,
            (Direction.PUSH, Action.DELETE): self._push_delete,
            (Direction.PULL, Action.CREATE): self._pull_upsert,
            (Direction.PULL, Action.UPDATE): self._pull_upsert,
            (Direction.PULL, Action.DELETE): self._pull_delete,
        }

    # ------------------------------------------------------------------
    # 协作者
    # ------------------------------------------------------------------

    def get_client(self):
        if self._client is None:
            self._client = self._client_provider()
        return self._client

    @property
    def partner_service(self):
        if self._partner_service is None and self._partner_service_factory is not None:
            self._partner_service = self._partner_service_factory(self)
        return self._partner_service

    @property
    def translation_service(self):
        if self._translation_service is None and self._translation_service_factory is not None:
            self._translation_service = self._translation_service_factory(self)
        return self._translation_service

    def get_odoo_model(self, entity_type: str) -> str:
        models = self.get_odoo_models()
        if entity_type not in models:
            raise UnknownModuleError(
                f"模块 {self.id} 不支持实体类型: {entity_type}",
                {"module": self.id, "entity_type": entity_type, "known": sorted(models)},
            )
        return models[entity_type]

    def register_handler(
        self,
        entity_type: str,
        direction: Direction,
        action: Action,
        handler: Handler,
    ) -> None:
        """为某个实体类型覆盖默认处理函数"""
        self._overrides[(entity_type, Direction(direction), Action(action))] = handler

    # ------------------------------------------------------------------
    # 子类钩子
    # ------------------------------------------------------------------

    def load_local_data(self, entity_type: str, local_id: int) -> Dict[str, Any]:
        """可选: 读取本地记录，push 任务没有 payload 时使用"""
        raise NotImplementedError(f"模块 {self.id} 未实现 load_local_data")

    def save_local_data(self, entity_type: str, data: Dict[str, Any], local_id: Optional[int]) -> int:
        """可选: 写入本地记录，返回本地 ID。pull create/update 使用"""
        raise NotImplementedError(f"模块 {self.id} 未实现 save_local_data")

    def delete_local_data(self, entity_type: str, local_id: int) -> bool:
        """可选: 删除本地记录。pull delete 使用"""
        raise NotImplementedError(f"模块 {self.id} 未实现 delete_local_data")

    def map_to_odoo(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return dict(data)

    def map_from_odoo(self, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        return dict(record)

    def get_dedup_domain(self, entity_type: str, values: Dict[str, Any]) -> List[Any]:
        """创建前在 Odoo 中查找已有记录的 domain，空列表表示不查找"""
        return []

    # ------------------------------------------------------------------
    # 分发
    # ------------------------------------------------------------------

    def _handle(
        self,
        direction: Direction,
        entity_type: str,
        action: Action,
        first_id: Optional[int],
        second_id: Optional[int],
        payload: Dict[str, Any],
    ) -> SyncResult:
        action = Action(action)
        handler = self._overrides.get((entity_type, direction, action)) or self._dispatch[(direction, action)]
        try:
            return handler(entity_type, first_id, second_id, payload or {})
        except (SyncError, ValueError) as e:
            logger.warning(
                f"{direction.value} 失败: module={self.id}, entity_type={entity_type}, "
                f"action={action.value}, error={e}"
            )
            return SyncResult.from_exception(e)

    def push(self, entity_type, action, local_id, remote_id, payload) -> SyncResult:
        return self._handle(Direction.PUSH, entity_type, action, local_id, remote_id, payload)

    def pull(self, entity_type, action, remote_id, local_id, payload) -> SyncResult:
        return self._handle(Direction.PULL, entity_type, action, remote_id, local_id, payload)

    # ------------------------------------------------------------------
    # 默认 push
    # ------------------------------------------------------------------

    def _push_delete(self, entity_type, local_id, remote_id, payload) -> SyncResult:
        if not remote_id and local_id:
            remote_id = self.entity_map.get_remote_id(self.id, entity_type, local_id)
        if remote_id:
            self.get_client().unlink(self.get_odoo_model(entity_type), [remote_id])
            if local_id:
                self.entity_map.remove(self.id, entity_type, local_id)
            logger.info(f"已删除 Odoo 记录: {self.id}/{entity_type} local={local_id} remote={remote_id}")
        return SyncResult.ok(remote_id)

    def _push_upsert(self, entity_type, local_id, remote_id, payload) -> SyncResult:
        model = self.get_odoo_model(entity_type)
        data = dict(payload) if payload else self.load_local_data(entity_type, local_id)
        values = self.map_to_odoo(entity_type, data)
        if not values:
            return SyncResult.failure("没有需要推送的数据", ErrorType.TERMINAL)

        sync_hash = compute_sync_hash(values)
        if not remote_id:
            remote_id = self.entity_map.get_remote_id(self.id, entity_type, local_id)

        if remote_id:
            self.get_client().write(model, [remote_id], values)
            self.entity_map.save(self.id, entity_type, local_id, remote_id, model, sync_hash)
            logger.info(f"已更新 Odoo 记录: {self.id}/{entity_type} local={local_id} remote={remote_id}")
            return SyncResult.ok(remote_id)

        return self.push_with_lock(entity_type, local_id, values, sync_hash)

    def push_with_lock(
        self,
        entity_type: str,
        local_id: int,
        values: Dict[str, Any],
        sync_hash: Optional[str] = None,
    ) -> SyncResult:
        """
        在咨询锁内完成"查映射 -> 查重 -> 创建 -> 保存映射"。

        获取锁超时返回 TRANSIENT 失败，由队列按退避重试。
        """
        model = self.get_odoo_model(entity_type)
        lock = self.lock_helper(f"odoosync_push_{self.id}_{entity_type}_{local_id}")
        if not lock.acquire():
            return SyncResult.failure("push 锁获取超时，稍后重试", ErrorType.TRANSIENT)

        try:
            # 锁内重新检查，另一个进程可能刚刚完成创建
            self.entity_map.invalidate_key(self.id, entity_type, local_id)
            existing = self.entity_map.get_remote_id(self.id, entity_type, local_id)
            if existing:
                self.get_client().write(model, [existing], values)
                self.entity_map.save(self.id, entity_type, local_id, existing, model, sync_hash)
                return SyncResult.ok(existing)

            domain = self.get_dedup_domain(entity_type, values)
            if domain:
                found = self.get_client().search(model, domain, limit=1)
                if found:
                    remote_id = found[0]
                    self.get_client().write(model, [remote_id], values)
                    self.entity_map.save(self.id, entity_type, local_id, remote_id, model, sync_hash)
                    logger.info(f"Odoo 中已存在记录，改为更新: {self.id}/{entity_type} remote={remote_id}")
                    return SyncResult.ok(remote_id)

            remote_id = self.get_client().create(model, values)
            self.entity_map.save(self.id, entity_type, local_id, remote_id, model, sync_hash)
            logger.info(f"已创建 Odoo 记录: {self.id}/{entity_type} local={local_id} remote={remote_id}")
            return SyncResult.ok(remote_id)
        finally:
            lock.release()

    def push_batch_creates(
        self,
        entity_type: str,
        items: List[Tuple[int, Dict[str, Any]]],
    ) -> Dict[int, SyncResult]:
        """
        一次 RPC 创建多条记录。

        Args:
            entity_type: 实体类型
            items: [(local_id, payload), ...]，local_id 不重复

        Returns:
            {local_id: SyncResult}

        已有映射的条目直接返回成功；需要查重（get_dedup_domain 非空）的条目走 push_with_lock。
        批量锁 odoosync_batch_{module}_{model} 获取失败，或批量创建报错时，逐条回退到 push_with_lock。
        """
        model = self.get_odoo_model(entity_type)
        results: Dict[int, SyncResult] = {}
        existing = self.entity_map.get_remote_ids_batch(
            self.id, entity_type, [local_id for local_id, _ in items]
        )

        pending: List[Tuple[int, Dict[str, Any], str]] = []
        individual: List[Tuple[int, Dict[str, Any], str]] = []
        for local_id, payload in items:
            if local_id in existing:
                results[local_id] = SyncResult.ok(existing[local_id])
                continue
            try:
                data = dict(payload) if payload else self.load_local_data(entity_type, local_id)
                values = self.map_to_odoo(entity_type, data)
            except (SyncError, ValueError, NotImplementedError) as e:
                results[local_id] = SyncResult.from_exception(e)
                continue
            if not values:
                results[local_id] = SyncResult.failure("没有需要推送的数据", ErrorType.TERMINAL)
                continue
            entry = (local_id, values, compute_sync_hash(values))
            if self.get_dedup_domain(entity_type, values):
                individual.append(entry)
            else:
                pending.append(entry)

        self._push_individually(entity_type, individual, results)
        if not pending:
            return results

        lock = self.lock_helper(f"odoosync_batch_{self.id}_{model}")
        if not lock.acquire():
            logger.warning(f"批量创建锁获取超时，逐条创建: {self.id}/{entity_type} count={len(pending)}")
            self._push_individually(entity_type, pending, results)
            return results

        try:
            try:
                remote_ids = self.get_client().create_batch(model, [values for _, values, _ in pending])
            except SyncError as e:
                logger.warning(f"批量创建失败，逐条创建: {self.id}/{entity_type} error={e}")
                self._push_individually(entity_type, pending, results)
                return results

            for (local_id, _, sync_hash), remote_id in zip(pending, remote_ids):
                self.entity_map.save(self.id, entity_type, local_id, remote_id, model, sync_hash)
                results[local_id] = SyncResult.ok(remote_id)
            logger.info(f"已批量创建 Odoo 记录: {self.id}/{entity_type} count={len(remote_ids)}")
            return results
        finally:
            lock.release()

    def _push_individually(
        self,
        entity_type: str,
        entries: List[Tuple[int, Dict[str, Any], str]],
        results: Dict[int, SyncResult],
    ) -> None:
        for local_id, values, sync_hash in entries:
            try:
                results[local_id] = self.push_with_lock(entity_type, local_id, values, sync_hash)
            except (SyncError, ValueError) as e:
                results[local_id] = SyncResult.from_exception(e)

    # ------------------------------------------------------------------
    # 默认 pull
    # ------------------------------------------------------------------

    def _pull_delete(self, entity_type, remote_id, local_id, payload) -> SyncResult:
        if not local_id and remote_id:
            local_id = self.entity_map.get_local_id(self.id, entity_type, remote_id)
        if local_id:
            self.delete_local_data(entity_type, local_id)
            self.entity_map.remove(self.id, entity_type, local_id)
            logger.info(f"已按 Odoo 删除本地记录: {self.id}/{entity_type} local={local_id}")
        return SyncResult.ok(local_id)

    def _pull_upsert(self, entity_type, remote_id, local_id, payload) -> SyncResult:
        model = self.get_odoo_model(entity_type)
        records = self.get_client().read(model, [remote_id])
        if not records:
            return SyncResult.failure(f"Odoo 记录不存在: {model}#{remote_id}", ErrorType.TERMINAL)

        record = records[0]
        data = self.map_from_odoo(entity_type, record)
        if not local_id:
            local_id = self.entity_map.get_local_id(self.id, entity_type, remote_id)

        local_id = self.save_local_data(entity_type, data, local_id)
        if not local_id:
            return SyncResult.failure(f"保存本地记录失败: {entity_type} remote={remote_id}", ErrorType.TRANSIENT)

        self.entity_map.save(self.id, entity_type, local_id, remote_id, model, compute_sync_hash(record))
        return SyncResult.ok(local_id)
