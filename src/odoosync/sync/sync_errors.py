# -*- coding: utf-8 -*-
"""
sync_errors.py - 同步错误分类与退避计算模块

统一定义错误类别枚举与分类函数，供 queue/engine/reaper 复用。

错误分类策略：
- 临时性错误（TRANSIENT）：远端超时、锁获取超时、限流；按 attempts/退避重试
- 校验错误（VALIDATION）：必填字段缺失、未知模块/实体类型；入队时即拒绝
- 终止性错误（TERMINAL）：重试次数耗尽或明确不可重试；任务标记为 failed
- 系统性错误（SYSTEMIC）：计数器持久化、告警发送失败；只记录日志，不向上抛出
"""

import random
from enum import Enum
from typing import Optional, Tuple, Union

from .errors import (
    CircuitOpenError,
    LockTimeoutError,
    RateLimitedError,
    RemoteConnectionError,
    RemoteRpcError,
    ValidationError,
)


class ErrorType(str, Enum):
    """错误类别枚举"""

    TRANSIENT = "transient"
    VALIDATION = "validation"
    TERMINAL = "terminal"
    SYSTEMIC = "systemic"


# 可重试的错误类别
RETRYABLE_ERROR_TYPES = {ErrorType.TRANSIENT.value}

# 临时性错误关键词匹配（用于从错误消息推断分类）
TRANSIENT_ERROR_KEYWORDS = [
    "429",
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "connection",
    "network",
    "502",
    "503",
    "504",
    "bad gateway",
    "service unavailable",
    "temporar",
    "lock",
]

# 统一的退避计算参数
DEFAULT_BACKOFF_BASE = 60  # 基础退避时间（秒）
DEFAULT_MAX_BACKOFF = 3600  # 默认最大退避时间（秒）= 1 小时

# 错误消息最大长度（写入 error_message 列前截断）
MAX_ERROR_LENGTH = 65535


def calculate_backoff_seconds(
    attempts: int,
    base_seconds: int = DEFAULT_BACKOFF_BASE,
    max_seconds: int = DEFAULT_MAX_BACKOFF,
) -> int:
    """
    统一的退避时间计算函数（供 queue/reaper 复用）。

    指数退避：base * 2^(attempts-1)，attempts 最小按 1 计算，结果不超过 max_seconds。
    对 attempts 单调不减。

    Args:
        attempts: 当前已失败次数（从 1 开始）
        base_seconds: 基础退避时间（秒）
        max_seconds: 最大退避时间（秒）

    Returns:
        退避秒数
    """
    effective_attempts = max(1, attempts)
    # 避免超大指数
    if effective_attempts > 32:
        return max_seconds
    backoff = base_seconds * (2 ** (effective_attempts - 1))
    return min(backoff, max_seconds)


def calculate_backoff_with_jitter(
    attempts: int,
    base_seconds: int = DEFAULT_BACKOFF_BASE,
    max_seconds: int = DEFAULT_MAX_BACKOFF,
    jitter_seconds: int = 0,
) -> int:
    """
    指数退避 + 0..jitter_seconds 的随机抖动，结果仍不超过 max_seconds。
    """
    backoff = calculate_backoff_seconds(attempts, base_seconds, max_seconds)
    if jitter_seconds > 0:
        backoff += random.randint(0, jitter_seconds)
    return min(backoff, max_seconds)


def is_transient_message(error_message: str) -> bool:
    """根据错误消息关键词判断是否为临时性错误。"""
    error_lower = (error_message or "").lower()
    for keyword in TRANSIENT_ERROR_KEYWORDS:
        if keyword in error_lower:
            return True
    return False


def classify_exception(exc: BaseException) -> Tuple[ErrorType, str]:
    """
    对异常进行分类，返回 (error_type, error_message)。

    - LockTimeoutError / RateLimitedError / RemoteConnectionError /
      CircuitOpenError / 内置 TimeoutError、ConnectionError -> TRANSIENT
    - ValidationError / ValueError / KeyError / TypeError / NotImplementedError -> TERMINAL
      （任务内容本身有问题，重试不会成功）
    - RemoteRpcError 按消息关键词推断：命中临时性关键词为 TRANSIENT，否则 TERMINAL
    - 其他异常按 TRANSIENT 处理（受 max_attempts 约束）
    """
    error_message = str(exc) or type(exc).__name__

    if isinstance(
        exc,
        (LockTimeoutError, RateLimitedError, RemoteConnectionError, CircuitOpenError),
    ):
        return ErrorType.TRANSIENT, error_message

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorType.TRANSIENT, error_message

    if isinstance(exc, (ValidationError, ValueError, KeyError, TypeError, NotImplementedError)):
        return ErrorType.TERMINAL, error_message

    if isinstance(exc, RemoteRpcError):
        if is_transient_message(error_message):
            return ErrorType.TRANSIENT, error_message
        return ErrorType.TERMINAL, error_message

    return ErrorType.TRANSIENT, error_message


def is_retryable(error_type: Optional[Union[ErrorType, str]]) -> bool:
    """判断错误类别是否允许重试（None 视为 TRANSIENT）。"""
    if error_type is None:
        return True
    value = error_type.value if isinstance(error_type, ErrorType) else str(error_type).lower()
    return value in RETRYABLE_ERROR_TYPES


def last_error_text(error: Optional[Union[BaseException, str]], max_length: int = MAX_ERROR_LENGTH) -> str:
    """
    获取可安全写入数据库的错误文本（已截断）。
    """
    if error is None:
        return ""

    error_text = str(error)
    if len(error_text) > max_length:
        error_text = error_text[: max_length - 3] + "..."
    return error_text
