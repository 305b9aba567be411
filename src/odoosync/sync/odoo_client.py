# -*- coding: utf-8 -*-
"""
odoosync.sync.odoo_client - Odoo JSON-RPC 客户端

基于 httpx 的同步客户端，调用 /jsonrpc 的 common.authenticate 与 object.execute_kw。

错误映射:
- 网络错误 / 超时 / HTTP 5xx -> RemoteConnectionError（TRANSIENT）
- JSON-RPC error 响应        -> RemoteRpcError（按消息关键词分类）
"""

import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import SyncConfig, get_config
from .errors import ConfigError, RemoteConnectionError, RemoteRpcError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class OdooClient:
    """
    Args:
        url: Odoo 根地址（例如 https://erp.example.com）
        db: 数据库名
        username: 登录名
        api_key: API key 或密码
        timeout: 请求超时（秒）
        transport: 可选的 httpx 传输层（测试注入 httpx.MockTransport）
    """

    def __init__(
        self,
        url: str,
        db: str,
        username: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.db = db
        self.username = username
        self._api_key = api_key
        self._uid: Optional[int] = None
        self._ids = itertools.count(1)
        self._http = httpx.Client(base_url=self.url, timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config: Optional[SyncConfig] = None) -> "OdooClient":
        if config is None:
            config = get_config()
        missing = [
            name
            for name, value in (
                ("ODOO_URL", config.odoo_url),
                ("ODOO_DB", config.odoo_db),
                ("ODOO_USERNAME", config.odoo_username),
                ("ODOO_API_KEY", config.odoo_api_key),
            )
            if not value
        ]
        if missing:
            raise ConfigError(f"缺少 Odoo 连接配置: {', '.join(missing)}", {"missing": missing})
        return cls(
            url=config.odoo_url,
            db=config.odoo_db,
            username=config.odoo_username,
            api_key=config.odoo_api_key,
            timeout=config.odoo_timeout_seconds,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "OdooClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # 传输
    # ------------------------------------------------------------------

    def _call(self, service: str, method: str, args: List[Any]) -> Any:
        request_id = next(self._ids)
        body = {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"service": service, "method": method, "args": args},
            "id": request_id,
        }
        try:
            response = self._http.post("/jsonrpc", json=body)
        except httpx.TimeoutException as e:
            raise RemoteConnectionError(
                f"Odoo 请求超时: {e}", {"service": service, "method": method}
            )
        except httpx.HTTPError as e:
            raise RemoteConnectionError(
                f"Odoo 连接失败: {e}", {"service": service, "method": method}
            )

        if response.status_code >= 500:
            raise RemoteConnectionError(
                f"Odoo 服务端错误: HTTP {response.status_code}",
                {"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise RemoteRpcError(
                f"Odoo 请求被拒绝: HTTP {response.status_code}",
                {"status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteRpcError(f"Odoo 响应不是合法 JSON: {e}", {"method": method})

        if data.get("error"):
            error = data["error"]
            message = (error.get("data") or {}).get("message") or error.get("message") or str(error)
            raise RemoteRpcError(
                f"Odoo RPC 错误: {message}",
                {"service": service, "method": method, "code": error.get("code")},
            )
        return data.get("result")

    def authenticate(self) -> int:
        uid = self._call("common", "authenticate", [self.db, self.username, self._api_key, {}])
        if not uid:
            raise RemoteRpcError("Odoo 认证失败", {"db": self.db, "username": self.username})
        self._uid = int(uid)
        logger.debug(f"Odoo 认证成功: uid={self._uid}")
        return self._uid

    @property
    def uid(self) -> int:
        if self._uid is None:
            self.authenticate()
        return self._uid

    def execute_kw(
        self,
        model: str,
        method: str,
        args: List[Any],
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return self._call(
            "object",
            "execute_kw",
            [self.db, self.uid, self._api_key, model, method, args, kwargs or {}],
        )

    # ------------------------------------------------------------------
    # ORM 便捷方法
    # ------------------------------------------------------------------

    def search(
        self,
        model: str,
        domain: List[Any],
        offset: int = 0,
        limit: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[int]:
        kwargs: Dict[str, Any] = {"offset": offset}
        if limit is not None:
            kwargs["limit"] = limit
        if context:
            kwargs["context"] = context
        return list(self.execute_kw(model, "search", [domain], kwargs) or [])

    def read(
        self,
        model: str,
        ids: List[int],
        fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        kwargs = {"fields": fields} if fields else {}
        return list(self.execute_kw(model, "read", [ids], kwargs) or [])

    def search_read(
        self,
        model: str,
        domain: List[Any],
        fields: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {}
        if fields:
            kwargs["fields"] = fields
        if limit is not None:
            kwargs["limit"] = limit
        return list(self.execute_kw(model, "search_read", [domain], kwargs) or [])

    def create(self, model: str, values: Dict[str, Any]) -> int:
        return int(self.execute_kw(model, "create", [values]))

    def create_batch(self, model: str, values_list: List[Dict[str, Any]]) -> List[int]:
        """一次 RPC 创建多条记录，返回的 ID 与 values_list 顺序一致"""
        if not values_list:
            return []
        result = self.execute_kw(model, "create", [values_list])
        if isinstance(result, int):
            return [result]
        return [int(rid) for rid in result]

    def write(self, model: str, ids: List[int], values: Dict[str, Any]) -> bool:
        return bool(self.execute_kw(model, "write", [ids, values]))

    def unlink(self, model: str, ids: List[int]) -> bool:
        return bool(self.execute_kw(model, "unlink", [ids]))
