# -*- coding: utf-8 -*-
"""
odoosync.sync.sync_engine - 队列处理引擎

一次运行:
1. 熔断器打开时跳过（返回 0）
2. 获取引擎级咨询锁 odoosync_sync / odoosync_sync_{module}，已有其他进程在跑则跳过
3. 回收卡死任务（每 60 秒最多一次）
4. 循环 claim_batch -> 按 direction 分发给模块适配器 -> complete / fail，
   直到队列为空、达到时间上限（55 秒）或批次数上限（20）
5. 把本次 (successes, failures) 报告给 FailureNotifier、CircuitBreaker，
   并按模块报告给 ModuleCircuitBreaker

模块熔断打开的模块在 claim 时直接排除。
同一批次中同模块同实体类型的 push create 任务（>= 2 个）合并为一次批量创建，
需要适配器提供 push_batch_creates()。

单个任务失败不会中断批处理；complete / fail 写库失败只记录日志，该任务留给卡死回收。
批处理中途停止（时间上限或异常）时，已 claim 但未执行的任务放回 pending。

dry-run 模式只统计可执行任务数，不调用适配器，也不修改队列状态。
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .adapters import Action, Direction, SyncResult
from .advisory_lock import AdvisoryLock
from .config import SyncConfig, get_config
from .errors import InvalidJobError, UnknownModuleError
from .registry import ModuleRegistry
from .sync_errors import ErrorType, classify_exception
from .sync_queue import Job, QueueManager

logger = logging.getLogger(__name__)

LOCK_PREFIX = "odoosync_sync"
ENGINE_LOCK_TIMEOUT = 5
STALE_RECOVERY_INTERVAL = 60
STALE_RECOVERY_KEY = "odoosync_last_stale_recovery"


@dataclass
class RunStats:
    processed: int = 0
    failures: int = 0
    released: int = 0
    bookkeeping_errors: int = 0
    iterations: int = 0
    # {module: [successes, failures]}
    modules: Dict[str, List[int]] = field(default_factory=dict)


class SyncEngine:
    """
    Args:
        registry: 模块注册表
        queue: 队列门面，默认 QueueManager()
        notifier: FailureNotifier（可选）
        breaker: CircuitBreaker（可选）
        module_breaker: ModuleCircuitBreaker（可选）
        cache: 共享过期缓存，用于卡死回收节流（可选）
        config: SyncConfig，默认 get_config()
        lock_factory: name -> AdvisoryLock
        dry_run: 是否为 dry-run 模式
        clock: 单调时钟（秒）
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        queue: Optional[QueueManager] = None,
        notifier=None,
        breaker=None,
        cache=None,
        config: Optional[SyncConfig] = None,
        lock_factory: Optional[Callable[[str], AdvisoryLock]] = None,
        dry_run: bool = False,
        clock: Callable[[], float] = time.monotonic,
        module_breaker=None,
    ):
        if config is None:
            config = get_config()
        self.registry = registry
        self.config = config
        self.queue = queue or QueueManager(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            max_backoff=config.max_backoff,
        )
        self.notifier = notifier
        self.breaker = breaker
        self.module_breaker = module_breaker
        self.cache = cache
        self.lock_factory = lock_factory or (
            lambda name: AdvisoryLock(name, timeout=ENGINE_LOCK_TIMEOUT)
        )
        self.dry_run = dry_run
        self._clock = clock
        self._dispatch: Dict[Direction, Callable[[Any, Job, Dict[str, Any]], SyncResult]] = {
            Direction.PUSH: self._dispatch_push,
            Direction.PULL: self._dispatch_pull,
        }
        self.last_run: Dict[str, Any] = {}

    def set_dry_run(self, enabled: bool) -> None:
        self.dry_run = enabled

    def process_queue(self) -> int:
        """处理所有模块的任务，返回成功处理的任务数（dry-run 时为可处理数）"""
        return self._run_with_lock(LOCK_PREFIX, None)

    def process_module_queue(self, module: str) -> int:
        """只处理指定模块的任务"""
        return self._run_with_lock(f"{LOCK_PREFIX}_{module}", module)

    # ------------------------------------------------------------------
    # 主流程
    # ------------------------------------------------------------------

    def _blocked_modules(self, module: Optional[str]) -> List[str]:
        if self.module_breaker is None:
            return []
        candidates = [module] if module is not None else self.registry.ids()
        return self.module_breaker.blocked_modules(candidates)

    def _run_with_lock(self, lock_name: str, module: Optional[str]) -> int:
        blocked = self._blocked_modules(module)
        if module is not None and module in blocked:
            logger.info(f"跳过队列处理: 模块熔断打开 ({module})")
            self.last_run = {"skipped": "module_circuit_open", "module": module}
            return 0

        if self.dry_run:
            count = self.queue.count_claimable(
                self.config.batch_size, module=module, exclude_modules=blocked
            )
            logger.info(f"[dry-run] 可处理任务数: {count} (module={module or '*'})")
            self.last_run = {"dry_run": True, "would_process": count, "module": module}
            return count

        if self.breaker is not None and not self.breaker.is_available():
            logger.info("跳过队列处理: 熔断器打开（Odoo 不可用）")
            self.last_run = {"skipped": "circuit_open", "module": module}
            return 0

        lock = self.lock_factory(lock_name)
        if not lock.acquire():
            logger.info(f"跳过队列处理: 其他进程正在运行 ({lock_name})")
            self.last_run = {"skipped": "locked", "module": module}
            return 0

        if blocked:
            logger.info(f"模块熔断中，本轮跳过: {blocked}")

        stats = RunStats()
        try:
            self._maybe_recover_stale()

            start = self._clock()
            while stats.iterations < self.config.max_batch_iterations:
                stats.iterations += 1
                if not self._should_continue(start, stats.processed, stats.iterations):
                    break

                jobs = self.queue.claim_batch(
                    self.config.batch_size, module=module, exclude_modules=blocked
                )
                if not jobs:
                    break

                if self._process_batch(jobs, start, stats):
                    break
        finally:
            try:
                self._report(stats)
            finally:
                lock.release()

        self.last_run = {
            "processed": stats.processed,
            "failed": stats.failures,
            "released": stats.released,
            "bookkeeping_errors": stats.bookkeeping_errors,
            "iterations": stats.iterations,
            "module": module,
            "blocked_modules": blocked,
        }
        if stats.processed or stats.failures:
            logger.info(
                f"队列处理完成: processed={stats.processed}, failed={stats.failures}, "
                f"iterations={stats.iterations}, module={module or '*'}"
            )
        return stats.processed

    def _report(self, stats: RunStats) -> None:
        if self.notifier is not None:
            self.notifier.check(stats.processed, stats.failures)
        if self.breaker is not None and (stats.processed or stats.failures):
            self.breaker.record_batch(stats.processed, stats.failures)
        if self.module_breaker is not None:
            for module, (successes, failures) in stats.modules.items():
                self.module_breaker.record_module_batch(module, successes, failures)

    def _should_continue(self, start: float, processed: int, iteration: int) -> bool:
        elapsed = self._clock() - start
        if elapsed >= self.config.batch_time_limit:
            logger.info(
                f"达到时间上限，停止拉取新批次: elapsed={elapsed:.2f}s, "
                f"processed={processed}, iterations={iteration - 1}"
            )
            return False
        # 半开状态下只处理一个探测批次
        if iteration > 1 and self.breaker is not None and self.breaker.is_open():
            logger.info("熔断器处于打开状态，停止拉取新批次")
            return False
        return True

    def _maybe_recover_stale(self) -> None:
        """卡死任务回收，通过缓存 add 节流为每 60 秒最多一次"""
        if self.cache is not None and not self.cache.add(
            STALE_RECOVERY_KEY, int(time.time()), ttl=STALE_RECOVERY_INTERVAL
        ):
            return
        stats = self.queue.recover_stale_processing(self.config.stale_timeout)
        if stats.get("to_pending") or stats.get("to_failed"):
            logger.warning(f"回收卡死任务: {stats}")

    def _process_batch(self, jobs: List[Job], start: float, stats: RunStats) -> bool:
        """
        处理一批已 claim 的任务，返回是否停止拉取新批次。

        无论正常结束还是中途抛出异常，未开始执行的任务都会放回 pending。
        """
        handled: Set[int] = set()
        stop = False
        try:
            self._process_batch_creates(jobs, handled, stats)

            for job in jobs:
                if job.id in handled:
                    continue
                if self._clock() - start >= self.config.batch_time_limit:
                    stop = True
                    break

                handled.add(job.id)
                self._record_result(job, self._run_job(job), stats)
        finally:
            remaining = [job.id for job in jobs if job.id not in handled]
            if remaining:
                released = self.queue.release_claimed(remaining)
                stats.released += released
                logger.info(f"批处理提前结束，{released} 个任务放回队列")
        return stop

    def _run_job(self, job: Job) -> SyncResult:
        try:
            return self.process_job(job)
        except Exception as e:
            error_type, message = classify_exception(e)
            logger.warning(
                f"任务处理异常: job_id={job.id}, module={job.module}, "
                f"entity_type={job.entity_type}, error_type={error_type.value}, error={message}"
            )
            return SyncResult.failure(message, error_type)

    def _record_result(self, job: Job, result: SyncResult, stats: RunStats) -> None:
        try:
            if result.success:
                self.queue.complete(job.id)
            else:
                self.queue.fail(
                    job.id,
                    result.message or "未知错误",
                    error_type=result.error_type or ErrorType.TRANSIENT,
                )
        except Exception as e:
            stats.bookkeeping_errors += 1
            logger.error(f"记录任务结果失败，任务留待卡死回收: job_id={job.id}, error={e}")
            return

        counts = stats.modules.setdefault(job.module, [0, 0])
        if result.success:
            stats.processed += 1
            counts[0] += 1
        else:
            stats.failures += 1
            counts[1] += 1

    # ------------------------------------------------------------------
    # 批量创建
    # ------------------------------------------------------------------

    def _process_batch_creates(self, jobs: List[Job], handled: Set[int], stats: RunStats) -> None:
        groups: Dict[Tuple[str, str], List[Job]] = {}
        for job in jobs:
            if job.direction == Direction.PUSH.value and job.action == Action.CREATE.value and job.local_id:
                groups.setdefault((job.module, job.entity_type), []).append(job)

        for (module, entity_type), group in groups.items():
            if len(group) < 2:
                continue
            adapter = self.registry.get(module)
            if adapter is None or not hasattr(adapter, "push_batch_creates"):
                continue

            # 同一 local_id 只创建一次，以最后一个任务的 payload 为准
            items: Dict[int, Dict[str, Any]] = {}
            batch_jobs: List[Job] = []
            for job in group:
                try:
                    items[job.local_id] = self._decode_payload(job)
                except InvalidJobError:
                    # 留给逐条处理，按 TERMINAL 失败
                    continue
                batch_jobs.append(job)
            if len(batch_jobs) < 2:
                continue

            handled.update(job.id for job in batch_jobs)
            missing = SyncResult.failure("批量创建未返回结果", ErrorType.TRANSIENT)
            try:
                results = adapter.push_batch_creates(entity_type, list(items.items()))
            except Exception as e:
                error_type, message = classify_exception(e)
                logger.warning(
                    f"批量创建异常: module={module}, entity_type={entity_type}, "
                    f"jobs={len(batch_jobs)}, error={message}"
                )
                results = {}
                missing = SyncResult.failure(message, error_type)

            for job in batch_jobs:
                self._record_result(job, results.get(job.local_id, missing), stats)
            logger.info(f"批量创建完成: module={module}, entity_type={entity_type}, jobs={len(batch_jobs)}")

    # ------------------------------------------------------------------
    # 单任务分发
    # ------------------------------------------------------------------

    def _decode_payload(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except ValueError:
                raise InvalidJobError(f"任务 #{job.id} 的 payload 不是合法 JSON", {"job_id": job.id})
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidJobError(f"任务 #{job.id} 的 payload 必须是对象", {"job_id": job.id})
        return payload

    def process_job(self, job: Job) -> SyncResult:
        adapter = self.registry.get(job.module)
        if adapter is None:
            raise UnknownModuleError(
                f"模块未注册: {job.module}",
                {"job_id": job.id, "module": job.module},
            )

        payload = self._decode_payload(job)

        try:
            direction = Direction(job.direction)
        except ValueError:
            raise InvalidJobError(
                f"任务 #{job.id} 的 direction 无效: {job.direction}",
                {"job_id": job.id, "direction": job.direction},
            )
        return self._dispatch[direction](adapter, job, payload)

    def _dispatch_push(self, adapter, job: Job, payload: Dict[str, Any]) -> SyncResult:
        return adapter.push(job.entity_type, Action(job.action), job.local_id, job.remote_id, payload)

    def _dispatch_pull(self, adapter, job: Job, payload: Dict[str, Any]) -> SyncResult:
        return adapter.pull(job.entity_type, Action(job.action), job.remote_id, job.local_id, payload)
