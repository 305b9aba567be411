"""
Gateway 依赖容器

集中管理 webhook 端点需要的依赖：
- config: GatewayConfig
- queue: QueueManager（入队 pull 任务、/health 统计）
- cache: 共享过期缓存（限流计数与去重键）
- rate_limiter / dedup_gate: 入站准入控制
- module_ids: 已注册模块 id 集合

所有依赖在首次访问时构造；测试通过 create_for_testing() 注入替身。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, Optional

from odoosync.sync.cache import get_cache
from odoosync.sync.config import get_config as get_sync_config
from odoosync.sync.entity_map import EntityMap
from odoosync.sync.rate_limiter import RateLimiter
from odoosync.sync.registry import build_registry
from odoosync.sync.runtime import LazyOdooClient
from odoosync.sync.sync_queue import QueueManager
from odoosync.sync.webhook_dedup import WebhookDedupGate

from .config import GatewayConfig, get_config, reset_config

WEBHOOK_RATE_PREFIX = "odoosync_wh_rl_"


@dataclass
class GatewayContainer:
    """Gateway 依赖容器"""

    config: GatewayConfig = field(default_factory=get_config)
    _queue: Optional[QueueManager] = field(default=None, repr=False)
    _cache: Optional[Any] = field(default=None, repr=False)
    _rate_limiter: Optional[RateLimiter] = field(default=None, repr=False)
    _dedup_gate: Optional[WebhookDedupGate] = field(default=None, repr=False)
    _module_ids: Optional[FrozenSet[str]] = field(default=None, repr=False)

    @classmethod
    def create(cls, config: Optional[GatewayConfig] = None) -> "GatewayContainer":
        if config is None:
            config = get_config()
        return cls(config=config)

    @classmethod
    def create_for_testing(
        cls,
        config: Optional[GatewayConfig] = None,
        queue: Optional[Any] = None,
        cache: Optional[Any] = None,
        module_ids: Optional[Iterable[str]] = None,
    ) -> "GatewayContainer":
        """
        创建用于测试的容器，允许注入 mock 依赖

        Args:
            config: 配置对象
            queue: 队列（需提供 enqueue_pull / stats）
            cache: 缓存（需提供 get/set/add/incr/delete）
            module_ids: 已注册模块 id
        """
        container = cls(config=config or get_config())
        container._queue = queue
        container._cache = cache
        if module_ids is not None:
            container._module_ids = frozenset(module_ids)
        return container

    @property
    def queue(self) -> QueueManager:
        if self._queue is None:
            sync_config = get_sync_config()
            self._queue = QueueManager(
                max_attempts=sync_config.max_attempts,
                backoff_base=sync_config.backoff_base,
                max_backoff=sync_config.max_backoff,
            )
        return self._queue

    @property
    def cache(self) -> Any:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    @property
    def rate_limiter(self) -> RateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = RateLimiter(
                self.cache,
                max_requests=self.config.rate_limit,
                window=self.config.rate_window,
                prefix=WEBHOOK_RATE_PREFIX,
            )
        return self._rate_limiter

    @property
    def dedup_gate(self) -> WebhookDedupGate:
        if self._dedup_gate is None:
            self._dedup_gate = WebhookDedupGate(self.cache, ttl=self.config.dedup_ttl)
        return self._dedup_gate

    @property
    def module_ids(self) -> FrozenSet[str]:
        if self._module_ids is None:
            sync_config = get_sync_config()
            registry = build_registry(
                sync_config.adapters,
                client_provider=LazyOdooClient(sync_config),
                entity_map=EntityMap(),
            )
            self._module_ids = frozenset(registry.ids())
        return self._module_ids

    def reset(self) -> None:
        self._queue = None
        self._cache = None
        self._rate_limiter = None
        self._dedup_gate = None
        self._module_ids = None


# ======================== 全局容器实例管理 ========================

_container: Optional[GatewayContainer] = None


def get_container() -> GatewayContainer:
    """获取全局 GatewayContainer 实例（单例模式）"""
    global _container
    if _container is None:
        _container = GatewayContainer.create()
    return _container


def set_container(container: GatewayContainer) -> None:
    """设置全局 GatewayContainer 实例（测试或自定义初始化）"""
    global _container
    _container = container


def reset_container() -> None:
    """重置全局 GatewayContainer 实例（测试清理）"""
    global _container
    if _container is not None:
        _container.reset()
    _container = None
    reset_config()
