"""
odoosync.sync.errors - 错误定义模块

定义同步子系统可能抛出的异常类型，统一错误码和错误消息格式。

退出码约定:
    0   - 成功
    1   - 通用错误 (SYNC_ERROR)
    2   - 配置错误 (CONFIG_ERROR)
    3   - 数据库错误 (DATABASE_ERROR)
    6   - 校验错误 (VALIDATION_ERROR)
    8   - 锁获取超时 (LOCK_TIMEOUT)
    9   - 限流拒绝 (RATE_LIMITED)
    10  - 远端 (Odoo) 调用错误 (REMOTE_ERROR)
"""

from typing import Any, Dict, Optional


class ExitCode:
    """退出码常量"""

    SUCCESS = 0
    SYNC_ERROR = 1
    CONFIG_ERROR = 2
    DATABASE_ERROR = 3
    VALIDATION_ERROR = 6
    LOCK_TIMEOUT = 8
    RATE_LIMITED = 9
    REMOTE_ERROR = 10


# =============================================================================
# 基础异常类
# =============================================================================


class SyncError(Exception):
    """odoosync 基础异常类"""

    exit_code: int = ExitCode.SYNC_ERROR
    error_type: str = "SYNC_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        转换为可序列化的字典格式

        格式: {ok: false, code: str, message: str, detail: dict}
        """
        return {
            "ok": False,
            "code": self.error_type,
            "message": self.message,
            "detail": self.details,
        }


# =============================================================================
# 配置相关错误 (exit_code = 2)
# =============================================================================


class ConfigError(SyncError):
    """配置相关错误"""

    exit_code = ExitCode.CONFIG_ERROR
    error_type = "CONFIG_ERROR"


# =============================================================================
# 数据库相关错误 (exit_code = 3)
# =============================================================================


class DatabaseError(SyncError):
    """数据库相关错误"""

    exit_code = ExitCode.DATABASE_ERROR
    error_type = "DATABASE_ERROR"


class DbConnectionError(DatabaseError):
    """数据库连接错误"""

    error_type = "CONNECTION_ERROR"


class QueryError(DatabaseError):
    """数据库查询错误"""

    error_type = "QUERY_ERROR"


# =============================================================================
# 校验错误 (exit_code = 6)
# =============================================================================


class ValidationError(SyncError):
    """输入验证错误（入队被拒绝，不创建任务）"""

    exit_code = ExitCode.VALIDATION_ERROR
    error_type = "VALIDATION_ERROR"


class UnknownModuleError(ValidationError):
    """模块未注册"""

    error_type = "UNKNOWN_MODULE"


class InvalidJobError(ValidationError):
    """任务字段不合法"""

    error_type = "INVALID_JOB"


class SyntheticIdOverflowError(ValidationError, OverflowError):
    """合成 ID 的次级 ID 超出编码范围"""

    error_type = "SYNTHETIC_ID_OVERFLOW"


# =============================================================================
# 并发控制错误
# =============================================================================


class LockTimeoutError(SyncError):
    """咨询锁在超时时间内未获取到"""

    exit_code = ExitCode.LOCK_TIMEOUT
    error_type = "LOCK_TIMEOUT"


class RateLimitedError(SyncError):
    """请求被限流拒绝"""

    exit_code = ExitCode.RATE_LIMITED
    error_type = "RATE_LIMITED"
    status_code = 429

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: int = 0,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["status"] = self.status_code
        result["retry_after"] = self.retry_after
        return result


class CircuitOpenError(SyncError):
    """熔断器处于打开状态，远端被判定为不可用"""

    error_type = "CIRCUIT_OPEN"


# =============================================================================
# 远端调用错误 (exit_code = 10)
# =============================================================================


class RemoteError(SyncError):
    """远端调用错误"""

    exit_code = ExitCode.REMOTE_ERROR
    error_type = "REMOTE_ERROR"


class RemoteConnectionError(RemoteError):
    """远端连接失败或超时"""

    error_type = "REMOTE_CONNECTION_ERROR"


class RemoteRpcError(RemoteError):
    """远端返回 RPC 错误"""

    error_type = "REMOTE_RPC_ERROR"


# =============================================================================
# 工具函数
# =============================================================================


def make_success_result(**kwargs) -> Dict[str, Any]:
    """
    构造成功结果

    Returns:
        {ok: true, ...kwargs}
    """
    return {"ok": True, **kwargs}
