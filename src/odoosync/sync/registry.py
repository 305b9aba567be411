# -*- coding: utf-8 -*-
"""
odoosync.sync.registry - 模块（适配器）注册表
"""

import importlib
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .adapters import SyncAdapter
from .errors import ConfigError, UnknownModuleError

logger = logging.getLogger(__name__)


class ModuleRegistry:
    """module id -> SyncAdapter"""

    def __init__(self):
        self._modules: Dict[str, SyncAdapter] = {}

    def register(self, adapter: SyncAdapter) -> None:
        if not getattr(adapter, "id", None):
            raise ValueError("适配器缺少 id")
        if adapter.id in self._modules:
            logger.warning(f"模块重复注册，覆盖旧实例: {adapter.id}")
        self._modules[adapter.id] = adapter

    def get(self, module_id: str) -> Optional[SyncAdapter]:
        return self._modules.get(module_id)

    def require(self, module_id: str) -> SyncAdapter:
        adapter = self._modules.get(module_id)
        if adapter is None:
            raise UnknownModuleError(
                f"模块未注册: {module_id}",
                {"module": module_id, "registered": self.ids()},
            )
        return adapter

    def ids(self) -> List[str]:
        return sorted(self._modules)

    def __contains__(self, module_id: str) -> bool:
        return module_id in self._modules

    def __len__(self) -> int:
        return len(self._modules)


def load_adapter_factory(spec: str) -> Callable[..., Any]:
    """
    解析 "package.module:factory" 形式的适配器工厂。

    Raises:
        ConfigError: 格式错误或无法导入
    """
    module_path, sep, attr = spec.partition(":")
    if not sep or not module_path or not attr:
        raise ConfigError(f"适配器格式应为 package.module:factory，当前值: {spec}", {"spec": spec})
    try:
        module = importlib.import_module(module_path)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"无法加载适配器 {spec}: {e}", {"spec": spec})


def build_registry(specs: Iterable[str], **deps: Any) -> ModuleRegistry:
    """
    按工厂列表构建注册表。

    每个工厂以关键字参数 deps（client_provider、entity_map 等）调用，
    返回一个适配器或适配器列表。
    """
    registry = ModuleRegistry()
    for spec in specs:
        created = load_adapter_factory(spec)(**deps)
        adapters = created if isinstance(created, (list, tuple)) else [created]
        for adapter in adapters:
            registry.register(adapter)
            logger.debug(f"注册模块: {adapter.id} ({spec})")
    return registry
