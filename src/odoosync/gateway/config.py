"""
Gateway 配置管理模块

从环境变量读取配置。

可测试替换:
   - override_config(mock_config) 临时替换全局单例
   - 测试完成后调用 reset_config() 恢复默认行为

环境变量:
   - POSTGRES_DSN: PostgreSQL 连接字符串（队列落库）
   - ODOOSYNC_WEBHOOK_TOKEN: webhook 认证 token（未配置时端点返回 503）
   - ODOOSYNC_WEBHOOK_MAX_PAYLOAD_SIZE: 最大请求体字节数（默认 1MB）
   - ODOOSYNC_WEBHOOK_RATE_LIMIT: 每个客户端 IP 在窗口内允许的请求数（默认 100）
   - ODOOSYNC_WEBHOOK_RATE_WINDOW: 限流窗口秒数（默认 60）
   - ODOOSYNC_WEBHOOK_DEDUP_TTL: 重复 payload 的抑制时长秒数（默认 300）
   - GATEWAY_PORT: 服务端口（默认 8790）
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from odoosync.sync.errors import ConfigError

DEFAULT_GATEWAY_PORT = 8790
DEFAULT_MAX_PAYLOAD_SIZE = 1024 * 1024


@dataclass
class GatewayConfig:
    """
    Gateway 配置

    线程安全: 是（初始化后不修改）
    """

    postgres_dsn: str = field(default_factory=lambda: os.environ.get("POSTGRES_DSN", ""))

    webhook_token: Optional[str] = None
    max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE
    rate_limit: int = 100
    rate_window: int = 60
    dedup_ttl: int = 300
    gateway_port: int = DEFAULT_GATEWAY_PORT


def _get_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} 必须是整数，当前值: {raw}", {"name": name, "value": raw})


def load_config() -> GatewayConfig:
    """
    从环境变量加载配置

    Raises:
        ConfigError: 数值型环境变量格式错误
    """
    return GatewayConfig(
        postgres_dsn=os.environ.get("POSTGRES_DSN", ""),
        webhook_token=os.environ.get("ODOOSYNC_WEBHOOK_TOKEN") or None,
        max_payload_size=_get_int_env("ODOOSYNC_WEBHOOK_MAX_PAYLOAD_SIZE", DEFAULT_MAX_PAYLOAD_SIZE),
        rate_limit=_get_int_env("ODOOSYNC_WEBHOOK_RATE_LIMIT", 100),
        rate_window=_get_int_env("ODOOSYNC_WEBHOOK_RATE_WINDOW", 60),
        dedup_ttl=_get_int_env("ODOOSYNC_WEBHOOK_DEDUP_TTL", 300),
        gateway_port=_get_int_env("GATEWAY_PORT", DEFAULT_GATEWAY_PORT),
    )


# 全局配置实例（延迟加载）
_config: Optional[GatewayConfig] = None


def get_config() -> GatewayConfig:
    """获取全局配置实例（单例模式）"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """重置全局配置实例（用于测试）"""
    global _config
    _config = None


def override_config(config: GatewayConfig) -> None:
    """覆盖全局配置实例（测试专用）"""
    global _config
    _config = config
