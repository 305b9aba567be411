# -*- coding: utf-8 -*-
"""
odoosync.sync.reconciler - 映射对账

把 entity_map 中某模块某实体类型的所有映射与 Odoo 当前状态比对，
映射到的 Odoo 记录已不存在的行视为孤儿（orphaned）。

- remote_id 按 200 个一批查询 Odoo（active_test=False，归档记录不算孤儿）
- 某一批查询失败（任何异常）时，该批全部记为 unknown，绝不判定为孤儿
- fix=True 时删除孤儿映射并计入 fixed
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .entity_map import EntityMap
from .errors import SyncError

logger = logging.getLogger(__name__)

RECONCILE_BATCH_SIZE = 200


@dataclass
class ReconcileResult:
    """对账结果"""

    module: str
    entity_type: str
    checked: int = 0
    orphaned: List[Dict[str, int]] = field(default_factory=list)
    fixed: int = 0
    unknown: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module": self.module,
            "entity_type": self.entity_type,
            "checked": self.checked,
            "orphaned": list(self.orphaned),
            "fixed": self.fixed,
            "unknown": list(self.unknown),
            "errors": list(self.errors),
        }


class Reconciler:
    """
    Args:
        entity_map: 实体映射仓库
        client_provider: 返回 Odoo 客户端的可调用对象（需提供 search）
        batch_size: 每批查询的 remote_id 数
    """

    def __init__(
        self,
        entity_map: EntityMap,
        client_provider: Callable[[], Any],
        batch_size: int = RECONCILE_BATCH_SIZE,
    ):
        self.entity_map = entity_map
        self.client_provider = client_provider
        self.batch_size = batch_size if batch_size > 0 else RECONCILE_BATCH_SIZE

    def reconcile(
        self,
        module: str,
        entity_type: str,
        remote_model: str,
        fix: bool = False,
    ) -> ReconcileResult:
        mappings = self.entity_map.get_module_entity_mappings(module, entity_type)
        result = ReconcileResult(module=module, entity_type=entity_type, checked=len(mappings))
        if not mappings:
            return result

        remote_ids = list(dict.fromkeys(m.remote_id for m in mappings))
        existing: set = set()
        unknown: set = set()

        try:
            client = self.client_provider()
        except SyncError as e:
            logger.error(f"对账中止: 无法创建 Odoo 客户端: {e}")
            result.errors.append(str(e))
            result.unknown = remote_ids
            return result

        for start in range(0, len(remote_ids), self.batch_size):
            chunk = remote_ids[start:start + self.batch_size]
            try:
                found = client.search(
                    remote_model,
                    [["id", "in", chunk]],
                    context={"active_test": False},
                )
                found_ids = {int(id_) for id_ in found}
            except Exception as e:
                logger.error(
                    f"对账批次查询失败，标记为 unknown: module={module}, "
                    f"entity_type={entity_type}, batch={start // self.batch_size}, error={e}"
                )
                result.errors.append(str(e))
                unknown.update(chunk)
                continue
            existing.update(found_ids)

        result.unknown = [rid for rid in remote_ids if rid in unknown]
        result.orphaned = [
            {"local_id": m.local_id, "remote_id": m.remote_id}
            for m in mappings
            if m.remote_id not in existing and m.remote_id not in unknown
        ]

        if fix and result.orphaned:
            for orphan in result.orphaned:
                if self.entity_map.remove(module, entity_type, orphan["local_id"]):
                    result.fixed += 1
            logger.info(
                f"对账完成，已删除孤儿映射: module={module}, entity_type={entity_type}, "
                f"orphaned={len(result.orphaned)}, fixed={result.fixed}"
            )
        else:
            logger.info(
                f"对账完成: module={module}, entity_type={entity_type}, "
                f"checked={result.checked}, orphaned={len(result.orphaned)}, "
                f"unknown={len(result.unknown)}"
            )
        return result
