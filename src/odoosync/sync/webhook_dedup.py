# -*- coding: utf-8 -*-
"""
odoosync.sync.webhook_dedup - webhook 短窗口去重

Odoo 在超时后会重发 webhook。对完整 payload 计算内容哈希，窗口内的重复投递
直接视为成功（不入队）。
"""

import hashlib
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

DEDUP_PREFIX = "wh_"
DEDUP_DIGEST_LENGTH = 32
DEFAULT_DEDUP_TTL = 300


def dedup_key(payload: Any) -> str:
    """
    计算去重 key: "wh_" + sha256(规范 JSON)[:32]

    payload 为 bytes/str 时按原始内容计算，其余按键排序的 JSON 计算。
    """
    if isinstance(payload, bytes):
        raw = payload
    elif isinstance(payload, str):
        raw = payload.encode("utf-8")
    else:
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return DEDUP_PREFIX + hashlib.sha256(raw).hexdigest()[:DEDUP_DIGEST_LENGTH]


class WebhookDedupGate:
    """
    Args:
        cache: 共享过期缓存
        ttl: 去重窗口（秒）
    """

    def __init__(self, cache, ttl: int = DEFAULT_DEDUP_TTL):
        self.cache = cache
        self.ttl = ttl

    def seen(self, payload: Any) -> bool:
        """
        重复投递返回 True；首次出现时记录 key 并返回 False。
        """
        key = dedup_key(payload)
        if self.cache.add(key, 1, ttl=self.ttl):
            return False
        logger.info(f"重复的 webhook 投递已忽略: key={key}")
        return True

    def forget(self, payload: Any) -> None:
        """入队失败时撤销去重 key，使 Odoo 的重发能够再次入队"""
        self.cache.delete(dedup_key(payload))
