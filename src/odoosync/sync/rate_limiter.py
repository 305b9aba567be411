# -*- coding: utf-8 -*-
"""
odoosync.sync.rate_limiter - 按标识符的固定窗口限流

两种策略，由 cache.atomic 决定:

- 原子策略（Redis）: add(key, 1, ttl) 初始化；已存在则 incr；
  incr 发现 key 在两步之间过期时重新 add 并放行；计数 > max_requests 拒绝
- 兜底策略（无原子原语）: get -> 比较 -> set(count+1, ttl)，突发时允许少量超额

计数器 key = prefix + md5(identifier)，窗口从第一次请求开始计时。
"""

import hashlib
import logging
from typing import Optional

from .errors import RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "odoosync_rl_"
DEFAULT_MAX_REQUESTS = 100
DEFAULT_WINDOW = 60


class RateLimiter:
    """
    Args:
        cache: 共享过期缓存（见 odoosync.sync.cache）
        max_requests: 窗口内允许的最大请求数
        window: 窗口长度（秒）
        prefix: 计数器 key 前缀
    """

    def __init__(
        self,
        cache,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window: int = DEFAULT_WINDOW,
        prefix: str = DEFAULT_PREFIX,
    ):
        if max_requests < 1:
            raise ValueError(f"max_requests 必须 >= 1: {max_requests}")
        if window < 1:
            raise ValueError(f"window 必须 >= 1: {window}")
        self.cache = cache
        self.max_requests = max_requests
        self.window = window
        self.prefix = prefix

    def key_for(self, identifier: str) -> str:
        digest = hashlib.md5(identifier.encode("utf-8")).hexdigest()
        return f"{self.prefix}{digest}"

    def check(self, identifier: str) -> None:
        """
        检查并计数。

        Raises:
            RateLimitedError: 超出限额（status_code=429, retry_after=window）
        """
        key = self.key_for(identifier)
        if getattr(self.cache, "atomic", False):
            count = self._hit_atomic(key)
            rejected = count > self.max_requests
        else:
            count = self._hit_fallback(key)
            rejected = count is None

        if rejected:
            observed = self.max_requests if count is None else count
            logger.warning(
                f"请求被限流: identifier={identifier}, count={observed}, "
                f"limit={self.max_requests}/{self.window}s"
            )
            raise RateLimitedError(
                f"请求过多，请 {self.window} 秒后重试",
                {"key": key, "count": observed, "limit": self.max_requests},
                retry_after=self.window,
            )

    def allow(self, identifier: str) -> bool:
        """check() 的布尔版本"""
        try:
            self.check(identifier)
        except RateLimitedError:
            return False
        return True

    def _hit_atomic(self, key: str) -> int:
        if self.cache.add(key, 1, ttl=self.window):
            return 1
        count = self.cache.incr(key)
        if count is None:
            # add 与 incr 之间 key 过期，开启新窗口
            self.cache.add(key, 1, ttl=self.window)
            return 1
        return count

    def _hit_fallback(self, key: str) -> Optional[int]:
        """返回写回后的计数；已达上限时返回 None。"""
        current = self.cache.get(key)
        count = int(current) if current is not None else 0
        if count >= self.max_requests:
            return None
        self.cache.set(key, count + 1, ttl=self.window)
        return count + 1
