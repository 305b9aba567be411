# -*- coding: utf-8 -*-
"""
odoosync.sync.advisory_lock - 基于 PostgreSQL 咨询锁的命名互斥锁

咨询锁是会话级的，因此每个 AdvisoryLock 持有一条独立的 autocommit 连接，
锁 key 为 hashtext(name)。

用法:
    with AdvisoryLock("odoosync_push_crm_contact_42", timeout=5):
        ...  # 获取失败抛出 LockTimeoutError，退出时（含异常）总是释放

    lock = AdvisoryLock("odoosync_sync")
    if lock.acquire():
        try:
            ...
        finally:
            lock.release()
"""

import logging
import time
from typing import Callable, Optional

import psycopg

from .db import get_connection
from .errors import DatabaseError, LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 5
POLL_INTERVAL = 0.1


class AdvisoryLock:
    """
    命名的、带超时的分布式互斥锁

    Args:
        name: 锁名称
        timeout: 获取超时（秒），0 表示只尝试一次
        dsn: 数据库 DSN，None 时由 get_connection() 解析
        conn: 可选的外部连接（调用方负责生命周期，必须是 autocommit 连接）
        poll_interval: 轮询间隔（秒）
    """

    def __init__(
        self,
        name: str,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        dsn: Optional[str] = None,
        conn: Optional[psycopg.Connection] = None,
        poll_interval: float = POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not name:
            raise ValueError("锁名称不能为空")
        self.name = name
        self.timeout = max(0.0, float(timeout))
        self._dsn = dsn
        self._conn = conn
        self._owns_conn = conn is None
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._held = False

    def _connection(self) -> psycopg.Connection:
        if self._conn is None:
            self._conn = get_connection(dsn=self._dsn, autocommit=True)
        return self._conn

    def _try_lock(self) -> bool:
        with self._connection().cursor() as cur:
            cur.execute("SELECT pg_try_advisory_lock(hashtext(%s))", (self.name,))
            return bool(cur.fetchone()[0])

    def acquire(self) -> bool:
        """
        获取锁，在 timeout 内轮询。

        已持有时直接返回 True，不会在服务端重复加锁。

        Returns:
            True 表示获取成功
        """
        if self._held:
            return True

        deadline = time.monotonic() + self.timeout
        try:
            while True:
                if self._try_lock():
                    self._held = True
                    logger.debug(f"获取咨询锁: {self.name}")
                    return True
                if time.monotonic() >= deadline:
                    break
                self._sleep(self._poll_interval)
        except psycopg.Error as e:
            self._close_connection()
            raise DatabaseError(
                f"获取咨询锁失败: {e}",
                {"lock": self.name, "error": str(e)},
            )

        logger.debug(f"获取咨询锁超时: {self.name} ({self.timeout}s)")
        self._close_connection()
        return False

    def release(self) -> None:
        """释放锁；未持有时为 no-op。"""
        if not self._held:
            return

        self._held = False
        try:
            with self._connection().cursor() as cur:
                cur.execute("SELECT pg_advisory_unlock(hashtext(%s))", (self.name,))
                released = bool(cur.fetchone()[0])
            if not released:
                logger.warning(f"咨询锁未被当前会话持有: {self.name}")
            else:
                logger.debug(f"释放咨询锁: {self.name}")
        except psycopg.Error as e:
            # 会话关闭时服务端会自动释放会话级咨询锁
            logger.warning(f"释放咨询锁失败，关闭会话: {self.name}: {e}")
        finally:
            self._close_connection()

    def is_held(self) -> bool:
        return self._held

    def _close_connection(self) -> None:
        if self._owns_conn and self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "AdvisoryLock":
        if not self.acquire():
            raise LockTimeoutError(
                f"获取锁超时: {self.name}",
                {"lock": self.name, "timeout": self.timeout},
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"AdvisoryLock(name={self.name!r}, held={self._held})"
