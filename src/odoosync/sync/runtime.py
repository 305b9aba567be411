# -*- coding: utf-8 -*-
"""
odoosync.sync.runtime - 按配置组装引擎及其协作者

CLI 与 gateway 共用同一套组装逻辑。
"""

from dataclasses import dataclass
from typing import Optional

from .cache import get_cache
from .circuit_breaker import CircuitBreaker, ModuleCircuitBreaker
from .config import SyncConfig, get_config
from .entity_map import EntityMap
from .failure_notifier import EmailAlertSender, FailureNotifier
from .odoo_client import OdooClient
from .reconciler import Reconciler
from .registry import ModuleRegistry, build_registry
from .sync_engine import SyncEngine
from .sync_queue import QueueManager


class LazyOdooClient:
    """首次调用时按配置创建 OdooClient，之后复用同一实例"""

    def __init__(self, config: SyncConfig):
        self._config = config
        self._client: Optional[OdooClient] = None

    def __call__(self) -> OdooClient:
        if self._client is None:
            self._client = OdooClient.from_config(self._config)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


@dataclass
class Runtime:
    config: SyncConfig
    cache: object
    queue: QueueManager
    entity_map: EntityMap
    client_provider: LazyOdooClient
    registry: ModuleRegistry
    notifier: FailureNotifier
    breaker: CircuitBreaker
    module_breaker: ModuleCircuitBreaker

    def engine(self, dry_run: bool = False) -> SyncEngine:
        return SyncEngine(
            registry=self.registry,
            queue=self.queue,
            notifier=self.notifier,
            breaker=self.breaker,
            module_breaker=self.module_breaker,
            cache=self.cache,
            config=self.config,
            dry_run=dry_run,
        )

    def reconciler(self) -> Reconciler:
        return Reconciler(self.entity_map, self.client_provider)

    def close(self) -> None:
        self.client_provider.close()


def build_runtime(config: Optional[SyncConfig] = None) -> Runtime:
    if config is None:
        config = get_config()

    cache = get_cache(config)
    entity_map = EntityMap()
    client_provider = LazyOdooClient(config)
    registry = build_registry(
        config.adapters,
        client_provider=client_provider,
        entity_map=entity_map,
    )
    notifier = FailureNotifier(sender=EmailAlertSender.from_config(config))
    return Runtime(
        config=config,
        cache=cache,
        queue=QueueManager(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            max_backoff=config.max_backoff,
        ),
        entity_map=entity_map,
        client_provider=client_provider,
        registry=registry,
        notifier=notifier,
        breaker=CircuitBreaker(cache, notifier=notifier),
        module_breaker=ModuleCircuitBreaker(cache, notifier=notifier),
    )
