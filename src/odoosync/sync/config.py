"""
同步子系统配置模块

从环境变量读取配置，并进行类型校验。

可测试替换:
   - override_config(config) 临时替换全局单例，测试结束后 reset_config()
   - 或直接构造 SyncConfig 实例传给各组件

环境变量:
   数据库:
   - POSTGRES_DSN: PostgreSQL 连接字符串（TEST_PG_DSN 兜底）
   - ODOOSYNC_PG_STATEMENT_TIMEOUT_MS: 语句超时（毫秒，可选）

   缓存:
   - REDIS_URL: 设置后使用 Redis 原子计数，否则回退到 PostgreSQL kv 表

   队列处理:
   - ODOOSYNC_BATCH_SIZE: 每批 claim 数量（默认 50）
   - ODOOSYNC_MAX_ATTEMPTS: 默认最大尝试次数（默认 3）
   - ODOOSYNC_STALE_TIMEOUT: processing 任务判定为卡死的秒数（默认 600，范围 60-3600）
   - ODOOSYNC_BATCH_TIME_LIMIT: 单次运行时间上限秒数（默认 55）
   - ODOOSYNC_MAX_BATCH_ITERATIONS: 单次运行最多批次数（默认 20）
   - ODOOSYNC_BACKOFF_BASE / ODOOSYNC_MAX_BACKOFF: 重试退避（默认 60 / 3600）

   告警:
   - ODOOSYNC_ALERT_EMAIL: 告警收件人（为空则不发送）
   - ODOOSYNC_SMTP_HOST / ODOOSYNC_SMTP_PORT / ODOOSYNC_SMTP_FROM

   Odoo:
   - ODOO_URL / ODOO_DB / ODOO_USERNAME / ODOO_API_KEY / ODOO_TIMEOUT_SECONDS
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import ConfigError

DEFAULT_BATCH_SIZE = 50
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_STALE_TIMEOUT = 600
MIN_STALE_TIMEOUT = 60
MAX_STALE_TIMEOUT = 3600
DEFAULT_BATCH_TIME_LIMIT = 55
DEFAULT_MAX_BATCH_ITERATIONS = 20


@dataclass
class SyncConfig:
    """
    同步子系统配置

    构造完成后视为只读，可跨线程共享。
    """

    postgres_dsn: str = field(
        default_factory=lambda: os.environ.get("POSTGRES_DSN")
        or os.environ.get("TEST_PG_DSN", "")
    )
    statement_timeout_ms: Optional[int] = None

    redis_url: Optional[str] = None

    batch_size: int = DEFAULT_BATCH_SIZE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    stale_timeout: int = DEFAULT_STALE_TIMEOUT
    batch_time_limit: float = DEFAULT_BATCH_TIME_LIMIT
    max_batch_iterations: int = DEFAULT_MAX_BATCH_ITERATIONS
    backoff_base: int = 60
    max_backoff: int = 3600

    alert_email: Optional[str] = None
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_from: str = "odoosync@localhost"

    odoo_url: Optional[str] = None
    odoo_db: Optional[str] = None
    odoo_username: Optional[str] = None
    odoo_api_key: Optional[str] = None
    odoo_timeout_seconds: float = 30.0

    # "package.module:factory" 形式的适配器工厂列表
    adapters: List[str] = field(default_factory=list)

    def __post_init__(self):
        """初始化后处理"""
        self.stale_timeout = clamp_stale_timeout(self.stale_timeout)
        if self.odoo_url:
            self.odoo_url = self.odoo_url.rstrip("/")


def clamp_stale_timeout(seconds: int) -> int:
    """将卡死判定阈值限制在 [60, 3600] 秒"""
    return max(MIN_STALE_TIMEOUT, min(MAX_STALE_TIMEOUT, int(seconds)))


def _get_optional_env(name: str, default: str = "") -> str:
    """获取可选环境变量"""
    return os.environ.get(name, default)


def _get_int_env(name: str, default: int) -> int:
    """获取整数环境变量，格式错误时抛出 ConfigError"""
    raw = _get_optional_env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} 必须是整数，当前值: {raw}", {"name": name, "value": raw})


def _get_float_env(name: str, default: float) -> float:
    raw = _get_optional_env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} 必须是数字，当前值: {raw}", {"name": name, "value": raw})


def load_config() -> SyncConfig:
    """
    从环境变量加载配置

    POSTGRES_DSN 缺失时不在此处报错，由 db.get_dsn() 在真正连接时报告，
    以便只使用 Redis/HTTP 部分的进程也能加载配置。

    Returns:
        SyncConfig 配置对象

    Raises:
        ConfigError: 数值型环境变量格式错误
    """
    timeout_raw = _get_optional_env("ODOOSYNC_PG_STATEMENT_TIMEOUT_MS")
    statement_timeout_ms: Optional[int] = None
    if timeout_raw:
        try:
            statement_timeout_ms = int(timeout_raw)
        except ValueError:
            raise ConfigError(
                f"ODOOSYNC_PG_STATEMENT_TIMEOUT_MS 必须是整数，当前值: {timeout_raw}"
            )

    batch_size = _get_int_env("ODOOSYNC_BATCH_SIZE", DEFAULT_BATCH_SIZE)
    if batch_size <= 0:
        raise ConfigError(f"ODOOSYNC_BATCH_SIZE 必须为正数，当前值: {batch_size}")

    return SyncConfig(
        postgres_dsn=_get_optional_env("POSTGRES_DSN") or _get_optional_env("TEST_PG_DSN"),
        statement_timeout_ms=statement_timeout_ms,
        redis_url=_get_optional_env("REDIS_URL") or None,
        batch_size=batch_size,
        max_attempts=_get_int_env("ODOOSYNC_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
        stale_timeout=_get_int_env("ODOOSYNC_STALE_TIMEOUT", DEFAULT_STALE_TIMEOUT),
        batch_time_limit=_get_float_env("ODOOSYNC_BATCH_TIME_LIMIT", DEFAULT_BATCH_TIME_LIMIT),
        max_batch_iterations=_get_int_env(
            "ODOOSYNC_MAX_BATCH_ITERATIONS", DEFAULT_MAX_BATCH_ITERATIONS
        ),
        backoff_base=_get_int_env("ODOOSYNC_BACKOFF_BASE", 60),
        max_backoff=_get_int_env("ODOOSYNC_MAX_BACKOFF", 3600),
        alert_email=_get_optional_env("ODOOSYNC_ALERT_EMAIL") or None,
        smtp_host=_get_optional_env("ODOOSYNC_SMTP_HOST", "localhost"),
        smtp_port=_get_int_env("ODOOSYNC_SMTP_PORT", 25),
        smtp_from=_get_optional_env("ODOOSYNC_SMTP_FROM", "odoosync@localhost"),
        odoo_url=_get_optional_env("ODOO_URL") or None,
        odoo_db=_get_optional_env("ODOO_DB") or None,
        odoo_username=_get_optional_env("ODOO_USERNAME") or None,
        odoo_api_key=_get_optional_env("ODOO_API_KEY") or None,
        odoo_timeout_seconds=_get_float_env("ODOO_TIMEOUT_SECONDS", 30.0),
        adapters=[
            s.strip() for s in _get_optional_env("ODOOSYNC_ADAPTERS").split(",") if s.strip()
        ],
    )


# 全局配置实例（延迟加载）
_config: Optional[SyncConfig] = None


def get_config() -> SyncConfig:
    """
    获取全局配置实例（单例模式）

    首次调用时从环境变量加载配置，后续调用返回缓存的实例。
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """重置全局配置实例（用于测试）"""
    global _config
    _config = None


def override_config(config: SyncConfig) -> None:
    """
    覆盖全局配置实例（测试专用）

    测试完成后应调用 reset_config() 恢复默认行为。
    """
    global _config
    _config = config
