# -*- coding: utf-8 -*-
"""
odoosync.sync.circuit_breaker - Odoo 不可用时暂停队列处理

状态:
- closed:    正常处理
- open:      连续 3 个批次失败率 >= 0.8，暂停处理
- half-open: 打开 300 秒后允许一个探测批次（cache.add 保证只有一个进程拿到探测权）

探测批次健康则关闭熔断；失败则重新打开。
打开状态同时写入缓存与 kv 表，缓存被清空时从 kv 恢复；超过 1 小时的 kv 状态直接丢弃。

ModuleCircuitBreaker 按模块独立计数: 某个模块连续 5 个批次失败率 >= 0.8 时只暂停该模块，
600 秒后进入半开，其他模块照常处理。
"""

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from .cache import PgCache
from .db import get_connection

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 3
FAILURE_RATIO = 0.8
RECOVERY_DELAY = 300
TRIAL_TTL = 360
STATE_TTL = 3600

BREAKER_NAMESPACE = "circuit_breaker"
KEY_FAILURES = "odoosync_cb_failures"
KEY_OPENED_AT = "odoosync_cb_opened_at"
KEY_TRIAL = "odoosync_cb_trial"
KEY_STATE = "state"

MODULE_FAILURE_THRESHOLD = 5
MODULE_RECOVERY_DELAY = 600
MODULE_STATE_TTL = 7200
MODULE_BREAKER_NAMESPACE = "module_circuit_breaker"


def _increment(cache, key: str, ttl: int) -> int:
    if getattr(cache, "atomic", False):
        if cache.add(key, 1, ttl=ttl):
            return 1
        count: Optional[int] = cache.incr(key)
        if count is None:
            cache.set(key, 1, ttl=ttl)
            return 1
        return count

    # 并发下可能丢失一次计数，最坏情况是晚一个批次打开
    count = int(cache.get(key) or 0) + 1
    cache.set(key, count, ttl=ttl)
    return count


class CircuitBreaker:
    """
    Args:
        cache: 共享过期缓存（计数、打开时间、探测标记）
        store: 持久化存储（打开状态），默认 PgCache(namespace="circuit_breaker")
        notifier: 可选的 FailureNotifier，熔断打开时告警
        clock: 返回当前 Unix 时间戳
    """

    def __init__(
        self,
        cache,
        store=None,
        notifier=None,
        failure_threshold: int = FAILURE_THRESHOLD,
        failure_ratio: float = FAILURE_RATIO,
        recovery_delay: int = RECOVERY_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        if store is None:
            store = PgCache(get_connection, namespace=BREAKER_NAMESPACE)
        self.cache = cache
        self.store = store
        self.notifier = notifier
        self.failure_threshold = failure_threshold
        self.failure_ratio = failure_ratio
        self.recovery_delay = recovery_delay
        self._clock = clock

    def _opened_at(self) -> float:
        opened_at = float(self.cache.get(KEY_OPENED_AT) or 0)
        if opened_at:
            return opened_at

        state = self.store.get(KEY_STATE) or {}
        opened_at = float(state.get("opened_at") or 0)
        if not opened_at:
            return 0

        if self._clock() - opened_at > STATE_TTL:
            logger.info("丢弃过期的熔断状态")
            self.store.delete(KEY_STATE)
            return 0

        self.cache.set(KEY_OPENED_AT, opened_at, ttl=STATE_TTL)
        self.cache.set(KEY_FAILURES, int(state.get("failures") or self.failure_threshold), ttl=STATE_TTL)
        return opened_at

    def is_open(self) -> bool:
        """熔断是否处于打开状态（不消耗探测权）"""
        return self._opened_at() > 0

    def is_available(self) -> bool:
        """
        是否允许处理队列。

        打开后超过 recovery_delay 时，只有拿到探测权的调用方返回 True。
        """
        opened_at = self._opened_at()
        if not opened_at:
            return True

        if self._clock() - opened_at >= self.recovery_delay:
            if not self.cache.add(KEY_TRIAL, 1, ttl=TRIAL_TTL):
                return False
            logger.info("熔断器半开: 允许一个探测批次")
            return True

        return False

    def record_batch(self, successes: int, failures: int) -> None:
        total = successes + failures
        if total == 0:
            return

        if failures / total >= self.failure_ratio:
            self.record_failure(successes, failures)
        else:
            self.record_success()

    def record_success(self) -> None:
        if self.cache.get(KEY_OPENED_AT):
            logger.info("熔断器关闭: Odoo 连接已恢复")
        for key in (KEY_FAILURES, KEY_OPENED_AT, KEY_TRIAL):
            self.cache.delete(key)
        self.store.delete(KEY_STATE)

    def record_failure(self, successes: int = 0, failures: int = 0) -> None:
        count = self._increment_failures()
        if count < self.failure_threshold:
            return

        now = self._clock()
        self.cache.set(KEY_OPENED_AT, now, ttl=STATE_TTL)
        self.cache.delete(KEY_TRIAL)
        self.store.set(KEY_STATE, {"opened_at": now, "failures": count})

        logger.warning(
            f"熔断器打开: Odoo 疑似不可用 (consecutive_batch_failures={count}, "
            f"last_batch_successes={successes}, last_batch_failures={failures}, "
            f"recovery_delay={self.recovery_delay}s)"
        )
        if self.notifier is not None:
            self.notifier.notify_circuit_breaker_open(count)

    def _increment_failures(self) -> int:
        return _increment(self.cache, KEY_FAILURES, STATE_TTL)


class ModuleCircuitBreaker:
    """
    按模块隔离的熔断器

    与 CircuitBreaker 互补: 全局熔断针对 Odoo 整体不可用，
    这里针对单个模块的持续失败（模型被卸载、权限变更等）。
    只有该模块的任务被跳过，其他模块继续处理。

    半开状态不抢占探测权: 恢复延迟过后该模块的任务整轮放行，
    本轮仍然失败则重新打开。

    Args:
        cache: 共享过期缓存（每个模块的计数与打开时间）
        store: 持久化存储，默认 PgCache(namespace="module_circuit_breaker")
        notifier: 可选的 FailureNotifier，模块熔断打开时告警
        clock: 返回当前 Unix 时间戳
    """

    def __init__(
        self,
        cache,
        store=None,
        notifier=None,
        failure_threshold: int = MODULE_FAILURE_THRESHOLD,
        failure_ratio: float = FAILURE_RATIO,
        recovery_delay: int = MODULE_RECOVERY_DELAY,
        clock: Callable[[], float] = time.time,
    ):
        if store is None:
            store = PgCache(get_connection, namespace=MODULE_BREAKER_NAMESPACE)
        self.cache = cache
        self.store = store
        self.notifier = notifier
        self.failure_threshold = failure_threshold
        self.failure_ratio = failure_ratio
        self.recovery_delay = recovery_delay
        self._clock = clock

    @staticmethod
    def _failures_key(module: str) -> str:
        return f"odoosync_mcb_failures_{module}"

    @staticmethod
    def _opened_at_key(module: str) -> str:
        return f"odoosync_mcb_opened_at_{module}"

    @staticmethod
    def _state_key(module: str) -> str:
        return f"state_{module}"

    def _opened_at(self, module: str) -> float:
        opened_at = float(self.cache.get(self._opened_at_key(module)) or 0)
        if not opened_at:
            state = self.store.get(self._state_key(module)) or {}
            opened_at = float(state.get("opened_at") or 0)
            if not opened_at:
                return 0
            self.cache.set(self._opened_at_key(module), opened_at, ttl=MODULE_STATE_TTL)
            self.cache.set(
                self._failures_key(module),
                int(state.get("failures") or self.failure_threshold),
                ttl=MODULE_STATE_TTL,
            )

        if self._clock() - opened_at > MODULE_STATE_TTL:
            logger.info(f"丢弃过期的模块熔断状态: module={module}")
            self.reset_module(module)
            return 0
        return opened_at

    def is_open(self, module: str) -> bool:
        return self._opened_at(module) > 0

    def is_module_available(self, module: str) -> bool:
        """模块熔断关闭，或已过恢复延迟（半开）时返回 True"""
        opened_at = self._opened_at(module)
        if not opened_at:
            return True
        return self._clock() - opened_at >= self.recovery_delay

    def blocked_modules(self, module_ids: Iterable[str]) -> List[str]:
        """返回当前应跳过的模块"""
        return [module for module in module_ids if not self.is_module_available(module)]

    def open_modules(self, module_ids: Iterable[str]) -> Dict[str, float]:
        """返回 {module: opened_at}，包括半开中的模块"""
        result: Dict[str, float] = {}
        for module in module_ids:
            opened_at = self._opened_at(module)
            if opened_at:
                result[module] = opened_at
        return result

    def record_module_batch(self, module: str, successes: int, failures: int) -> None:
        total = successes + failures
        if total == 0:
            return

        if failures / total >= self.failure_ratio:
            self.record_module_failure(module)
        else:
            self.record_module_success(module)

    def record_module_success(self, module: str) -> None:
        if self.cache.get(self._opened_at_key(module)):
            logger.info(f"模块熔断关闭: module={module} 已恢复")
        self.cache.delete(self._failures_key(module))
        self.cache.delete(self._opened_at_key(module))
        self.store.delete(self._state_key(module))

    def record_module_failure(self, module: str) -> None:
        count = _increment(self.cache, self._failures_key(module), MODULE_STATE_TTL)
        if count < self.failure_threshold:
            return

        previous = self._opened_at(module)
        now = self._clock()
        if previous and now - previous < self.recovery_delay:
            return

        self.cache.set(self._opened_at_key(module), now, ttl=MODULE_STATE_TTL)
        self.store.set(self._state_key(module), {"opened_at": now, "failures": count})

        if previous:
            logger.warning(f"模块熔断探测失败，重新打开: module={module}, failures={count}")
            return

        logger.warning(
            f"模块熔断打开: module={module}, consecutive_batch_failures={count}, "
            f"recovery_delay={self.recovery_delay}s"
        )
        if self.notifier is not None:
            self.notifier.notify_module_circuit_breaker_open(module, count)

    def reset_module(self, module: str) -> None:
        """手动恢复模块（CLI reset-module）"""
        self.cache.delete(self._failures_key(module))
        self.cache.delete(self._opened_at_key(module))
        self.store.delete(self._state_key(module))
        logger.info(f"模块熔断已重置: module={module}")
