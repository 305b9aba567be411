# -*- coding: utf-8 -*-
"""
odoosync.sync.sync_reaper - 卡死任务回收器

进程在批处理中途崩溃时，已 claim 的任务会永远停留在 processing。
reaper 把 claimed_at 超过 stale_seconds 的任务视为一次失败执行:
- attempts + 1 < max_attempts -> pending（立即可重新 claim）
- 否则 -> failed（终止）

同时清理 odoosync.kv 中已过期的行。
"""

import logging
from typing import Optional, TypedDict

import psycopg

from .config import DEFAULT_STALE_TIMEOUT, clamp_stale_timeout
from .db import get_connection
from .errors import DatabaseError
from .kv import kv_purge_expired
from .sync_queue import list_stale_processing, recover_stale_processing

module_logger = logging.getLogger(__name__)


class ReaperResult(TypedDict):
    """Reaper 执行结果"""

    found: int
    to_pending: int
    to_failed: int
    kv_purged: int
    dry_run: bool


def run_reaper(
    dsn: Optional[str] = None,
    *,
    stale_seconds: int = DEFAULT_STALE_TIMEOUT,
    dry_run: bool = False,
    purge_kv: bool = True,
    logger: Optional[logging.Logger] = None,
    conn: Optional[psycopg.Connection] = None,
) -> ReaperResult:
    """
    执行 reaper 主流程

    Args:
        dsn: 数据库连接字符串（None 时从配置解析）
        stale_seconds: processing 超时阈值（秒），限制在 60-3600
        dry_run: 只统计，不修改数据库
        purge_kv: 是否清理过期 kv 行
        logger: 日志记录器
        conn: 可选的数据库连接（测试注入）

    Returns:
        统计信息
    """
    logger = logger or module_logger
    stale_seconds = clamp_stale_timeout(stale_seconds)

    should_close = conn is None
    if conn is None:
        conn = get_connection(dsn=dsn)

    result: ReaperResult = {
        "found": 0,
        "to_pending": 0,
        "to_failed": 0,
        "kv_purged": 0,
        "dry_run": dry_run,
    }

    try:
        stale_jobs = list_stale_processing(stale_seconds, conn=conn)
        result["found"] = len(stale_jobs)
        if stale_jobs:
            logger.info(f"发现 {len(stale_jobs)} 个超过 {stale_seconds}s 的 processing 任务")

        if dry_run:
            logger.info("Dry-run 模式：不实际修改数据库")
            return result

        if stale_jobs:
            stats = recover_stale_processing(stale_seconds, conn=conn)
            result["to_pending"] = stats["to_pending"]
            result["to_failed"] = stats["to_failed"]
            logger.info(f"卡死任务回收完成: {stats}")

        if purge_kv:
            try:
                result["kv_purged"] = kv_purge_expired(conn)
                conn.commit()
            except psycopg.Error as e:
                conn.rollback()
                raise DatabaseError(f"清理过期 kv 失败: {e}", {"error": str(e)})

        return result
    finally:
        if should_close:
            conn.close()
