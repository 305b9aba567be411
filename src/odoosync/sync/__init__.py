"""
odoosync.sync - 同步队列子系统

子模块：
- sync_queue: 任务队列（enqueue / claim / complete / fail / retry / cancel / stats）
- entity_map: 本地 ID <-> Odoo ID 映射
- advisory_lock: PostgreSQL 咨询锁
- rate_limiter / webhook_dedup: 入站准入控制
- failure_notifier / circuit_breaker: 失败告警与熔断
- sync_engine / reconciler / sync_reaper: 队列处理、对账、卡死回收
"""

from .advisory_lock import AdvisoryLock
from .adapters import Action, BaseAdapter, Direction, SyncAdapter, SyncResult
from .circuit_breaker import CircuitBreaker
from .entity_map import EntityMap, EntityMapping, compute_sync_hash
from .errors import (
    ConfigError,
    DatabaseError,
    InvalidJobError,
    LockTimeoutError,
    RateLimitedError,
    SyncError,
    SyntheticIdOverflowError,
    UnknownModuleError,
    ValidationError,
)
from .failure_notifier import EmailAlertSender, FailureNotifier
from .rate_limiter import RateLimiter
from .reconciler import ReconcileResult, Reconciler
from .registry import ModuleRegistry
from .sync_engine import SyncEngine
from .sync_errors import ErrorType
from .sync_queue import Job, QueueManager
from .synthetic_id import decode_synthetic_id, encode_synthetic_id
from .webhook_dedup import WebhookDedupGate, dedup_key

__all__ = [
    "Action",
    "AdvisoryLock",
    "BaseAdapter",
    "CircuitBreaker",
    "ConfigError",
    "DatabaseError",
    "Direction",
    "EmailAlertSender",
    "EntityMap",
    "EntityMapping",
    "ErrorType",
    "FailureNotifier",
    "InvalidJobError",
    "Job",
    "LockTimeoutError",
    "ModuleRegistry",
    "QueueManager",
    "RateLimitedError",
    "RateLimiter",
    "ReconcileResult",
    "Reconciler",
    "SyncAdapter",
    "SyncEngine",
    "SyncError",
    "SyncResult",
    "SyntheticIdOverflowError",
    "UnknownModuleError",
    "ValidationError",
    "WebhookDedupGate",
    "compute_sync_hash",
    "decode_synthetic_id",
    "dedup_key",
    "encode_synthetic_id",
]
