"""
Odoo Webhook 处理模块

提供 POST /webhook/odoo 端点，把 Odoo 侧的记录变更通知转成 pull 任务入队。

处理顺序:
1. Token 认证 (ODOOSYNC_WEBHOOK_TOKEN)
2. 按客户端 IP 限流
3. 请求体大小限制
4. JSON 解析与字段校验
5. 模块必须已注册
6. 重复 payload 抑制
7. enqueue_pull 入队

使用方式:
    from odoosync.gateway.webhook import router as webhook_router
    app.include_router(webhook_router)
"""

import hmac
import json
import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadValidationError

from odoosync.sync.errors import RateLimitedError, SyncError

from .container import get_container

logger = logging.getLogger("gateway.webhook")

router = APIRouter(tags=["webhook"])

TOKEN_HEADER = "X-Odoo-Token"


class WebhookError(Exception):
    """Webhook 处理错误"""

    def __init__(self, message: str, status_code: int = 500, headers: Optional[Dict[str, str]] = None):
        self.message = message
        self.status_code = status_code
        self.headers = headers or {}
        super().__init__(message)


class OdooWebhookPayload(BaseModel):
    """Odoo 推送的变更通知"""

    module: str = Field(..., min_length=1, description="模块 id")
    entity_type: str = Field(..., min_length=1, description="实体类型")
    remote_id: int = Field(..., gt=0, description="Odoo 记录 ID")
    action: Literal["create", "update", "delete"] = Field(..., description="变更类型")


def _client_ip(request: Request) -> str:
    if request.client is None:
        return "unknown"
    return request.client.host


def _verify_auth_token(request: Request) -> bool:
    """
    验证请求的认证 token

    支持两种方式:
    1. Authorization: Bearer <token>
    2. X-Odoo-Token: <token>

    Raises:
        WebhookError:
            - 503: webhook 未配置 (ODOOSYNC_WEBHOOK_TOKEN 为空)
            - 401: token 缺失
            - 403: token 无效
    """
    expected_token = get_container().config.webhook_token
    if not expected_token:
        raise WebhookError("Odoo webhook 未配置，请设置 ODOOSYNC_WEBHOOK_TOKEN", status_code=503)

    token = request.headers.get(TOKEN_HEADER)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if not token:
        raise WebhookError("缺少认证 token", status_code=401)

    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        raise WebhookError("认证 token 无效", status_code=403)
    return True


def _check_rate_limit(request: Request) -> None:
    try:
        get_container().rate_limiter.check(_client_ip(request))
    except RateLimitedError as e:
        raise WebhookError(
            e.message,
            status_code=429,
            headers={"Retry-After": str(e.retry_after)},
        )


async def _read_body_with_limit(request: Request) -> bytes:
    """
    读取请求体并检查大小限制

    Raises:
        WebhookError: 请求体过大 (413)
    """
    max_size = get_container().config.max_payload_size

    content_length = request.headers.get("Content-Length")
    if content_length:
        try:
            length = int(content_length)
        except ValueError:
            length = 0
        if length > max_size:
            raise WebhookError(f"请求体过大: {length} 字节 (最大 {max_size})", status_code=413)

    body = b""
    async for chunk in request.stream():
        body += chunk
        if len(body) > max_size:
            raise WebhookError(f"请求体过大: 超过 {max_size} 字节限制", status_code=413)

    return body


def _parse_body(body: bytes) -> Dict[str, Any]:
    """
    Raises:
        WebhookError: 请求体为空、编码错误、JSON 解析失败或不是对象 (400)
    """
    if not body:
        raise WebhookError("请求体为空", status_code=400)

    try:
        data = json.loads(body.decode("utf-8"))
    except json.JSONDecodeError as e:
        raise WebhookError(f"JSON 解析失败: {e}", status_code=400)
    except UnicodeDecodeError as e:
        raise WebhookError(f"编码错误: {e}", status_code=400)

    if not isinstance(data, dict):
        raise WebhookError("JSON 必须是对象类型", status_code=400)
    return data


def _validate_payload(data: Dict[str, Any]) -> OdooWebhookPayload:
    try:
        payload = OdooWebhookPayload.model_validate(data)
    except PayloadValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise WebhookError(f"payload 校验失败: {problems}", status_code=400)

    if payload.module not in get_container().module_ids:
        raise WebhookError(f"未知模块: {payload.module}", status_code=400)
    return payload


def _log_rejection(e: WebhookError) -> None:
    # 503 未配置: info；客户端错误: debug；限流与服务端错误: warning
    if e.status_code == 503:
        logger.info(f"Odoo webhook 未配置: {e.message}")
    elif e.status_code in (400, 401, 403, 413):
        logger.debug(f"Odoo webhook 请求被拒绝: {e.message} (status={e.status_code})")
    else:
        logger.warning(f"Odoo webhook 错误: {e.message} (status={e.status_code})")


@router.post("/webhook/odoo")
async def odoo_webhook(request: Request) -> JSONResponse:
    """
    Odoo Webhook 端点

    请求体:
        {"module": "crm", "entity_type": "contact", "remote_id": 42, "action": "update", ...}

    必填四个字段之外的内容原样保留，整个请求体作为任务 payload 入队。

    响应:
    - 202: 已入队 {"ok": true, "job_id": ...}
    - 200: 重复通知已抑制 {"ok": true, "deduplicated": true}
    - 400: 请求体解析/校验失败或模块未注册
    - 401: 缺少认证 token
    - 403: 认证 token 无效
    - 413: 请求体过大
    - 429: 限流（带 Retry-After）
    - 500: 内部错误
    - 503: webhook 未配置
    """
    try:
        _verify_auth_token(request)
        _check_rate_limit(request)

        body = await _read_body_with_limit(request)
        data = _parse_body(body)
        payload = _validate_payload(data)

        container = get_container()
        if container.dedup_gate.seen(data):
            logger.debug(
                f"重复的 Odoo 通知已抑制: module={payload.module}, "
                f"entity_type={payload.entity_type}, remote_id={payload.remote_id}"
            )
            return JSONResponse(content={"ok": True, "deduplicated": True}, status_code=200)

        try:
            job_id = container.queue.enqueue_pull(
                payload.module,
                payload.entity_type,
                payload.action,
                payload.remote_id,
                payload=data,
            )
        except SyncError as e:
            # 未入队，撤销去重 key 让 Odoo 的重发可以再次入队
            container.dedup_gate.forget(data)
            raise WebhookError(f"入队失败: {e.message}", status_code=500)
        except Exception:
            container.dedup_gate.forget(data)
            raise

        logger.info(
            f"Odoo 通知已入队: job_id={job_id}, module={payload.module}, "
            f"entity_type={payload.entity_type}, remote_id={payload.remote_id}, "
            f"action={payload.action}"
        )
        return JSONResponse(content={"ok": True, "job_id": job_id}, status_code=202)

    except WebhookError as e:
        _log_rejection(e)
        return JSONResponse(
            content={"ok": False, "error": e.message},
            status_code=e.status_code,
            headers=e.headers,
        )
    except Exception as e:
        logger.exception(f"Odoo webhook 未预期错误: {e}")
        return JSONResponse(
            content={"ok": False, "error": f"内部错误: {str(e)}"},
            status_code=500,
        )


@router.get("/health")
async def health() -> JSONResponse:
    """健康检查，附带队列统计"""
    try:
        stats = get_container().queue.stats()
    except SyncError as e:
        logger.warning(f"健康检查读取队列统计失败: {e.message}")
        return JSONResponse(content={"ok": False, "error": e.message}, status_code=503)
    return JSONResponse(content={"ok": True, "queue": jsonable_encoder(stats)})
