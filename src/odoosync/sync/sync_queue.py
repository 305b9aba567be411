# -*- coding: utf-8 -*-
"""
odoosync.sync.sync_queue - 同步任务队列模块

提供基于 PostgreSQL 的可靠任务队列（至少一次语义），实现 enqueue/claim/complete/fail 模式。

功能:
- enqueue / enqueue_push / enqueue_pull: 入队（同键 pending 任务合并）
- claim_batch: 原子地获取一批待执行任务并标记为 processing
- complete: 确认任务完成
- fail: 任务失败，按退避重试或标记为终止失败
- cancel: 取消 pending/failed 任务
- retry_failed: 将终止失败的任务重置为 pending（管理员操作）
- release_claimed: 把已 claim 但未开始执行的任务放回 pending（不计 attempts）
- recover_stale_processing: 回收长时间停留在 processing 的任务
- get_stats / list_jobs / get_job / cleanup

设计原则:
- claim 使用单条 UPDATE ... FROM (SELECT ... FOR UPDATE SKIP LOCKED)，不做先读后写
- priority 越小越优先，同优先级按 id 升序（先入先出）
- scheduled_at 为空或 <= now() 的任务才可被 claim（延迟执行与退避重试）

状态转换矩阵:
=========================================

| 源状态      | 目标状态    | 操作                     | 条件                                         |
|-------------|-------------|--------------------------|----------------------------------------------|
| (新建)      | pending     | enqueue                  | 无同键 pending 任务（有则合并）              |
| pending     | processing  | claim_batch              | scheduled_at IS NULL OR scheduled_at <= now()|
| processing  | completed   | complete                 |                                              |
| processing  | pending     | fail                     | transient 且 attempts+1 < max_attempts       |
| processing  | failed      | fail                     | attempts+1 >= max_attempts 或不可重试        |
| processing  | pending     | release_claimed          | attempts 不变                                |
| processing  | pending     | recover_stale_processing | claimed_at 超时且 attempts+1 < max_attempts  |
| processing  | failed      | recover_stale_processing | claimed_at 超时且 attempts+1 >= max_attempts |
| pending     | (删除)      | cancel                   |                                              |
| failed      | (删除)      | cancel                   |                                              |
| failed      | pending     | retry_failed             | (管理员操作，attempts 重置为 0)              |

字段语义:
- attempts: 已失败次数（fail 时 +1），永远不超过 max_attempts
- scheduled_at: 任务在此时间之前不会被 claim
- claimed_at: 最近一次 claim 的时间（用于卡死判定）
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import psycopg

from .db import get_connection
from .errors import DatabaseError, InvalidJobError
from .sync_errors import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_MAX_BACKOFF,
    ErrorType,
    calculate_backoff_seconds,
    is_retryable,
    last_error_text,
)

logger = logging.getLogger(__name__)

# 任务状态常量
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
ALL_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)

DIRECTION_PUSH = "push"
DIRECTION_PULL = "pull"
DIRECTIONS = (DIRECTION_PUSH, DIRECTION_PULL)

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTIONS = (ACTION_CREATE, ACTION_UPDATE, ACTION_DELETE)

# 默认配置
DEFAULT_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PER_PAGE = 30
MAX_PER_PAGE = 100

JOB_COLUMNS = """
    id, module, direction, entity_type, local_id, remote_id, action, payload,
    priority, status, attempts, max_attempts, error_message,
    scheduled_at, claimed_at, processed_at, created_at
"""


@dataclass
class Job:
    """队列中的一条同步任务"""

    id: int
    module: str
    direction: str
    entity_type: str
    local_id: Optional[int]
    remote_id: Optional[int]
    action: str
    payload: Optional[Dict[str, Any]]
    priority: int
    status: str
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        payload = row[7]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls(
            id=row[0],
            module=row[1],
            direction=row[2],
            entity_type=row[3],
            local_id=row[4],
            remote_id=row[5],
            action=row[6],
            payload=payload,
            priority=row[8],
            status=row[9],
            attempts=row[10],
            max_attempts=row[11],
            error_message=row[12],
            scheduled_at=row[13],
            claimed_at=row[14],
            processed_at=row[15],
            created_at=row[16],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status == STATUS_COMPLETED or (
            self.status == STATUS_FAILED and self.attempts >= self.max_attempts
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _validate_job(
    module: str,
    direction: str,
    entity_type: str,
    action: str,
    local_id: Optional[int],
    remote_id: Optional[int],
    priority: int,
    max_attempts: int,
) -> None:
    """入队参数校验，失败抛出 InvalidJobError（不创建任务）。"""
    errors = []
    if not module:
        errors.append("module 不能为空")
    if not entity_type:
        errors.append("entity_type 不能为空")
    if direction not in DIRECTIONS:
        errors.append(f"direction 无效: {direction}")
    if action not in ACTIONS:
        errors.append(f"action 无效: {action}")
    if local_id is None and remote_id is None:
        errors.append("local_id 与 remote_id 不能同时为空")
    for name, value in (("local_id", local_id), ("remote_id", remote_id)):
        if value is not None and value < 0:
            errors.append(f"{name} 不能为负数: {value}")
    if priority < 0:
        errors.append(f"priority 不能为负数: {priority}")
    if max_attempts < 1:
        errors.append(f"max_attempts 必须 >= 1: {max_attempts}")

    if errors:
        raise InvalidJobError(
            "任务参数无效: " + "; ".join(errors),
            {"module": module, "entity_type": entity_type, "errors": errors},
        )


def _merge_action(existing: str, incoming: str) -> str:
    """
    合并同键 pending 任务的 action。

    create 之后的 update 仍然是 create（远端记录还不存在）；delete 总是覆盖。
    """
    if existing == ACTION_CREATE and incoming == ACTION_UPDATE:
        return ACTION_CREATE
    return incoming


def enqueue(
    module: str,
    direction: str,
    entity_type: str,
    action: str,
    local_id: Optional[int] = None,
    remote_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    priority: int = DEFAULT_PRIORITY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay_seconds: int = 0,
    conn: Optional[psycopg.Connection] = None,
) -> int:
    """
    将任务入队。

    如果同一 (module, entity_type, direction) 且 local_id 相同（local_id 为空时按
    remote_id）的 pending 任务已存在，则合并到该任务（更新 action/payload，
    priority 取更紧急的一方）并返回其 id，不新建任务。

    Args:
        module: 模块标识
        direction: push | pull
        entity_type: 实体类型
        action: create | update | delete
        local_id: 本地 ID
        remote_id: 远端 (Odoo) ID
        payload: 任务附带数据
        priority: 优先级（数值越小越优先，默认 5）
        max_attempts: 最大尝试次数
        delay_seconds: 延迟执行秒数（0 表示立即可 claim）
        conn: 可选的数据库连接

    Returns:
        任务 id

    Raises:
        InvalidJobError: 参数无效（不创建任务）
        DatabaseError: 数据库错误
    """
    _validate_job(
        module, direction, entity_type, action, local_id, remote_id, priority, max_attempts
    )

    should_close = conn is None
    if conn is None:
        conn = get_connection()

    payload_json = json.dumps(payload) if payload is not None else None
    if local_id is not None:
        key_column, key_value = "local_id", local_id
    else:
        key_column, key_value = "remote_id", remote_id

    try:
        with conn.cursor() as cur:
            # 同键入队串行化，避免并发 enqueue 各自插入一条
            cur.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"odoosync_enqueue:{module}:{entity_type}:{direction}:{key_column}:{key_value}",),
            )
            cur.execute(
                f"""
                SELECT id, action, priority
                FROM odoosync.sync_queue
                WHERE module = %s AND entity_type = %s AND direction = %s
                  AND status = 'pending' AND {key_column} = %s
                ORDER BY id ASC
                LIMIT 1
                FOR UPDATE
                """,
                (module, entity_type, direction, key_value),
            )
            existing = cur.fetchone()

            if existing is not None:
                job_id, existing_action, existing_priority = existing
                cur.execute(
                    """
                    UPDATE odoosync.sync_queue
                    SET action = %s,
                        payload = %s,
                        priority = %s,
                        local_id = COALESCE(local_id, %s),
                        remote_id = COALESCE(remote_id, %s)
                    WHERE id = %s
                    """,
                    (
                        _merge_action(existing_action, action),
                        payload_json,
                        min(existing_priority, priority),
                        local_id,
                        remote_id,
                        job_id,
                    ),
                )
                conn.commit()
                logger.debug(
                    f"合并到已有 pending 任务: job_id={job_id}, module={module}, "
                    f"entity_type={entity_type}, action={action}"
                )
                return job_id

            cur.execute(
                """
                INSERT INTO odoosync.sync_queue (
                    module, direction, entity_type, local_id, remote_id,
                    action, payload, priority, max_attempts, status, scheduled_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending',
                        CASE WHEN %s > 0 THEN now() + make_interval(secs => %s) END)
                RETURNING id
                """,
                (
                    module,
                    direction,
                    entity_type,
                    local_id,
                    remote_id,
                    action,
                    payload_json,
                    priority,
                    max_attempts,
                    delay_seconds,
                    delay_seconds,
                ),
            )
            job_id = cur.fetchone()[0]
            conn.commit()
            return job_id

    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"任务入队失败: {e}",
            {"module": module, "entity_type": entity_type, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def enqueue_push(
    module: str,
    entity_type: str,
    action: str,
    local_id: int,
    remote_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    priority: int = DEFAULT_PRIORITY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay_seconds: int = 0,
    conn: Optional[psycopg.Connection] = None,
) -> int:
    """本地 -> Odoo 方向入队"""
    if local_id is None:
        raise InvalidJobError(
            "push 任务必须提供 local_id", {"module": module, "entity_type": entity_type}
        )
    return enqueue(
        module=module,
        direction=DIRECTION_PUSH,
        entity_type=entity_type,
        action=action,
        local_id=local_id,
        remote_id=remote_id,
        payload=payload,
        priority=priority,
        max_attempts=max_attempts,
        delay_seconds=delay_seconds,
        conn=conn,
    )


def enqueue_pull(
    module: str,
    entity_type: str,
    action: str,
    remote_id: int,
    local_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    priority: int = DEFAULT_PRIORITY,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay_seconds: int = 0,
    conn: Optional[psycopg.Connection] = None,
) -> int:
    """Odoo -> 本地方向入队"""
    if remote_id is None:
        raise InvalidJobError(
            "pull 任务必须提供 remote_id", {"module": module, "entity_type": entity_type}
        )
    return enqueue(
        module=module,
        direction=DIRECTION_PULL,
        entity_type=entity_type,
        action=action,
        local_id=local_id,
        remote_id=remote_id,
        payload=payload,
        priority=priority,
        max_attempts=max_attempts,
        delay_seconds=delay_seconds,
        conn=conn,
    )


def _claimable_filter(module: Optional[str], exclude_modules: Optional[List[str]] = None) -> tuple:
    conditions = "status = 'pending' AND (scheduled_at IS NULL OR scheduled_at <= now())"
    params: List[Any] = []
    if module is not None:
        conditions += " AND module = %s"
        params.append(module)
    if exclude_modules:
        conditions += " AND module <> ALL(%s)"
        params.append(list(exclude_modules))
    return conditions, params


def claim_batch(
    limit: int,
    module: Optional[str] = None,
    exclude_modules: Optional[List[str]] = None,
    conn: Optional[psycopg.Connection] = None,
) -> List[Job]:
    """
    原子地获取一批待执行任务，并标记为 processing。

    单条语句完成选择与状态转换，FOR UPDATE SKIP LOCKED 保证并发调用方
    不会拿到同一个任务。

    Args:
        limit: 最多获取的任务数
        module: 可选，仅获取指定模块的任务
        exclude_modules: 可选，跳过这些模块（模块熔断中）
        conn: 可选的数据库连接

    Returns:
        Job 列表，按 priority ASC, id ASC 排序
    """
    if limit <= 0:
        return []

    should_close = conn is None
    if conn is None:
        conn = get_connection()

    conditions, params = _claimable_filter(module, exclude_modules)

    try:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                WITH claimable AS (
                    SELECT id
                    FROM odoosync.sync_queue
                    WHERE {conditions}
                    ORDER BY priority ASC, id ASC
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE odoosync.sync_queue q
                SET status = 'processing',
                    claimed_at = now()
                FROM claimable c
                WHERE q.id = c.id
                RETURNING {", ".join("q." + col.strip() for col in JOB_COLUMNS.split(","))}
                """,
                (*params, limit),
            )
            rows = cur.fetchall()
            conn.commit()

        jobs = [Job.from_row(row) for row in rows]
        # RETURNING 不保证顺序
        jobs.sort(key=lambda j: (j.priority, j.id))
        return jobs

    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"claim 任务失败: {e}",
            {"limit": limit, "module": module, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def count_claimable(
    limit: int,
    module: Optional[str] = None,
    exclude_modules: Optional[List[str]] = None,
    conn: Optional[psycopg.Connection] = None,
) -> int:
    """
    统计当前可被 claim 的任务数（上限 limit），不修改任何状态。

    用于 dry-run。
    """
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    conditions, params = _claimable_filter(module, exclude_modules)

    try:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT COUNT(*) FROM (
                    SELECT id FROM odoosync.sync_queue
                    WHERE {conditions}
                    LIMIT %s
                ) AS claimable
                """,
                (*params, limit),
            )
            return cur.fetchone()[0]
    except psycopg.Error as e:
        raise DatabaseError(
            f"统计可执行任务失败: {e}",
            {"module": module, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def complete(
    job_id: int,
    conn: Optional[psycopg.Connection] = None,
) -> bool:
    """
    确认任务完成。

    Returns:
        True 表示成功，False 表示任务不存在或不在 processing 状态
    """
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE odoosync.sync_queue
                SET status = 'completed',
                    error_message = NULL,
                    processed_at = now()
                WHERE id = %s AND status = 'processing'
                RETURNING id
                """,
                (job_id,),
            )
            result = cur.fetchone()
            conn.commit()
            return result is not None

    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"complete 任务失败: {e}",
            {"job_id": job_id, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def fail(
    job_id: int,
    error_message: str,
    error_type: ErrorType = ErrorType.TRANSIENT,
    backoff_seconds: Optional[int] = None,
    base_seconds: int = DEFAULT_BACKOFF_BASE,
    max_seconds: int = DEFAULT_MAX_BACKOFF,
    conn: Optional[psycopg.Connection] = None,
) -> Optional[str]:
    """
    任务失败。

    attempts +1；可重试（TRANSIENT）且 attempts < max_attempts 时回到 pending，
    scheduled_at = now() + 退避时间；否则标记为 failed（终止）。

    Args:
        job_id: 任务 ID
        error_message: 错误信息
        error_type: 错误类别，非 TRANSIENT 直接终止
        backoff_seconds: 可选，自定义退避时间（秒），为 None 时使用指数退避
        base_seconds / max_seconds: 指数退避参数
        conn: 可选的数据库连接

    Returns:
        任务的新状态（pending / failed），任务不存在或不在 processing 状态时返回 None
    """
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    error_text = last_error_text(error_message)

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT attempts, max_attempts
                FROM odoosync.sync_queue
                WHERE id = %s AND status = 'processing'
                FOR UPDATE
                """,
                (job_id,),
            )
            row = cur.fetchone()
            if row is None:
                conn.rollback()
                return None

            attempts, max_attempts = row
            attempts = min(attempts + 1, max_attempts)

            if is_retryable(error_type) and attempts < max_attempts:
                if backoff_seconds is None:
                    backoff_seconds = calculate_backoff_seconds(
                        attempts=attempts,
                        base_seconds=base_seconds,
                        max_seconds=max_seconds,
                    )
                cur.execute(
                    """
                    UPDATE odoosync.sync_queue
                    SET status = 'pending',
                        attempts = %s,
                        error_message = %s,
                        claimed_at = NULL,
                        scheduled_at = now() + make_interval(secs => %s)
                    WHERE id = %s
                    """,
                    (attempts, error_text, backoff_seconds, job_id),
                )
                new_status = STATUS_PENDING
                logger.warning(
                    f"同步任务失败，将重试: job_id={job_id}, attempt={attempts}/{max_attempts}, "
                    f"backoff={backoff_seconds}s, error={error_text}"
                )
            else:
                # 不可重试的错误也把 attempts 记满，保证 failed 为终止状态
                cur.execute(
                    """
                    UPDATE odoosync.sync_queue
                    SET status = 'failed',
                        attempts = max_attempts,
                        error_message = %s,
                        claimed_at = NULL,
                        processed_at = now()
                    WHERE id = %s
                    """,
                    (error_text, job_id),
                )
                new_status = STATUS_FAILED
                logger.error(
                    f"同步任务永久失败: job_id={job_id}, attempts={attempts}, "
                    f"error_type={ErrorType(error_type).value}, error={error_text}"
                )

            conn.commit()
            return new_status

    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"fail 任务失败: {e}",
            {"job_id": job_id, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def release_claimed(
    job_ids: List[int],
    conn: Optional[psycopg.Connection] = None,
) -> int:
    """
    将已 claim 但尚未执行的任务放回 pending，不计入 attempts。

    Returns:
        放回的任务数
    """
    if not job_ids:
        return 0

    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE odoosync.sync_queue
                SET status = 'pending', claimed_at = NULL
                WHERE id = ANY(%s) AND status = 'processing'
                """,
                (list(job_ids),),
            )
            count = cur.rowcount
            conn.commit()
            return count
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"release_claimed 失败: {e}",
            {"job_ids": list(job_ids), "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def cancel(
    job_id: int,
    conn: Optional[psycopg.Connection] = None,
) -> bool:
    """
    取消任务（删除）。

    只对 pending/failed 任务生效，已被 claim 的任务不受影响。

    Returns:
        True 表示已取消，False 表示任务不存在或状态不允许
    """
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                DELETE FROM odoosync.sync_queue
                WHERE id = %s AND status IN ('pending', 'failed')
                RETURNING id
                """,
                (job_id,),
            )
            result = cur.fetchone()
            conn.commit()
            return result is not None
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"取消任务失败: {e}",
            {"job_id": job_id, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def retry_failed(
    conn: Optional[psycopg.Connection] = None,
) -> int:
    """
    将所有 failed 任务重置为 pending（管理员操作）。

    attempts 重置为 0，scheduled_at 清空。

    Returns:
        重置的任务数量
    """
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE odoosync.sync_queue
                SET status = 'pending',
                    attempts = 0,
                    error_message = NULL,
                    scheduled_at = NULL,
                    processed_at = NULL
                WHERE status = 'failed'
                """
            )
            count = cur.rowcount
            conn.commit()
            return count
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"重置失败任务出错: {e}",
            {"error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def recover_stale_processing(
    stale_seconds: int,
    conn: Optional[psycopg.Connection] = None,
) -> Dict[str, int]:
    """
    回收 claimed_at 超过 stale_seconds 仍处于 processing 的任务。

    被回收的那次执行计为一次失败：attempts +1 后仍小于 max_attempts 的回到 pending，
    否则标记为 failed。

    Returns:
        {"to_pending": n, "to_failed": m}
    """
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    message = f"Reaped: processing 超过 {stale_seconds} 秒未完成"

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE odoosync.sync_queue
                SET status = CASE WHEN attempts + 1 < max_attempts
                                  THEN 'pending' ELSE 'failed' END,
                    attempts = LEAST(attempts + 1, max_attempts),
                    error_message = %s,
                    claimed_at = NULL,
                    processed_at = CASE WHEN attempts + 1 < max_attempts
                                        THEN NULL ELSE now() END
                WHERE status = 'processing'
                  AND claimed_at < now() - make_interval(secs => %s)
                RETURNING status
                """,
                (message, stale_seconds),
            )
            rows = cur.fetchall()
            conn.commit()

        stats = {"to_pending": 0, "to_failed": 0}
        for (status,) in rows:
            if status == STATUS_PENDING:
                stats["to_pending"] += 1
            else:
                stats["to_failed"] += 1
        return stats

    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"回收卡死任务失败: {e}",
            {"stale_seconds": stale_seconds, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def list_stale_processing(
    stale_seconds: int,
    conn: Optional[psycopg.Connection] = None,
) -> List[Job]:
    """列出 claimed_at 超过 stale_seconds 的 processing 任务（只读）。"""
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {JOB_COLUMNS}
                FROM odoosync.sync_queue
                WHERE status = 'processing'
                  AND claimed_at < now() - make_interval(secs => %s)
                ORDER BY claimed_at ASC
                """,
                (stale_seconds,),
            )
            return [Job.from_row(row) for row in cur.fetchall()]
    except psycopg.Error as e:
        raise DatabaseError(
            f"列出卡死任务失败: {e}",
            {"stale_seconds": stale_seconds, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def get_job(
    job_id: int,
    conn: Optional[psycopg.Connection] = None,
) -> Optional[Job]:
    """获取任务详情，不存在返回 None。"""
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {JOB_COLUMNS} FROM odoosync.sync_queue WHERE id = %s",
                (job_id,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            return Job.from_row(row)
    except psycopg.Error as e:
        raise DatabaseError(
            f"获取任务详情失败: {e}",
            {"job_id": job_id, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def list_jobs(
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
    status: Optional[str] = None,
    conn: Optional[psycopg.Connection] = None,
) -> Dict[str, Any]:
    """
    分页列出任务（最新的在前）。

    Returns:
        {"items": [Job], "total": int, "page": int, "per_page": int, "pages": int}
    """
    if status is not None and status not in ALL_STATUSES:
        raise InvalidJobError(f"status 无效: {status}", {"status": status})

    page = max(1, int(page))
    per_page = max(1, min(MAX_PER_PAGE, int(per_page)))
    offset = (page - 1) * per_page

    where = ""
    params: List[Any] = []
    if status is not None:
        where = "WHERE status = %s"
        params.append(status)

    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM odoosync.sync_queue {where}", params)
            total = cur.fetchone()[0]

            cur.execute(
                f"""
                SELECT {JOB_COLUMNS}
                FROM odoosync.sync_queue
                {where}
                ORDER BY id DESC
                LIMIT %s OFFSET %s
                """,
                (*params, per_page, offset),
            )
            items = [Job.from_row(row) for row in cur.fetchall()]

        return {
            "items": items,
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": (total + per_page - 1) // per_page,
        }
    except psycopg.Error as e:
        raise DatabaseError(
            f"列出任务失败: {e}",
            {"status": status, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def get_stats(
    conn: Optional[psycopg.Connection] = None,
) -> Dict[str, Any]:
    """
    统计各状态的任务数量及最近完成时间。

    Returns:
        {"pending", "processing", "completed", "failed", "total", "last_completed_at"}
    """
    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT status, COUNT(*)
                FROM odoosync.sync_queue
                GROUP BY status
                """
            )
            rows = cur.fetchall()

            cur.execute(
                """
                SELECT MAX(processed_at)
                FROM odoosync.sync_queue
                WHERE status = 'completed'
                """
            )
            last_completed_at = cur.fetchone()[0]

        stats: Dict[str, Any] = {status: 0 for status in ALL_STATUSES}
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(stats[status] for status in ALL_STATUSES)
        stats["last_completed_at"] = last_completed_at
        return stats

    except psycopg.Error as e:
        raise DatabaseError(
            f"统计任务失败: {e}",
            {"error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


def cleanup(
    older_than_days: int = 7,
    conn: Optional[psycopg.Connection] = None,
) -> int:
    """
    清理终止状态（completed / 终止 failed）的旧任务。

    Args:
        older_than_days: 清理多少天前结束的任务

    Returns:
        删除的任务数量
    """
    if older_than_days < 0:
        raise InvalidJobError(
            f"older_than_days 不能为负数: {older_than_days}",
            {"older_than_days": older_than_days},
        )

    should_close = conn is None
    if conn is None:
        conn = get_connection()

    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                DELETE FROM odoosync.sync_queue
                WHERE (status = 'completed'
                       OR (status = 'failed' AND attempts >= max_attempts))
                  AND COALESCE(processed_at, created_at)
                      < now() - make_interval(days => %s)
                """,
                (older_than_days,),
            )
            count = cur.rowcount
            conn.commit()
            return count
    except psycopg.Error as e:
        conn.rollback()
        raise DatabaseError(
            f"清理旧任务失败: {e}",
            {"older_than_days": older_than_days, "error": str(e)},
        )
    finally:
        if should_close:
            conn.close()


class QueueManager:
    """
    队列操作门面

    持有连接工厂，把模块级函数包装为实例方法，供引擎与 webhook 注入使用。
    connection_factory 为 None 时每次调用由模块函数自行建立连接。
    """

    def __init__(
        self,
        connection_factory=None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: int = DEFAULT_BACKOFF_BASE,
        max_backoff: int = DEFAULT_MAX_BACKOFF,
    ):
        self._connection_factory = connection_factory
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff

    def _conn(self) -> Optional[psycopg.Connection]:
        if self._connection_factory is None:
            return None
        return self._connection_factory()

    def _call(self, func, *args, **kwargs):
        conn = self._conn()
        try:
            return func(*args, conn=conn, **kwargs)
        finally:
            if conn is not None:
                conn.close()

    def enqueue(self, module, direction, entity_type, action, **kwargs) -> int:
        kwargs.setdefault("max_attempts", self.max_attempts)
        return self._call(enqueue, module, direction, entity_type, action, **kwargs)

    def enqueue_push(self, module, entity_type, action, local_id, remote_id=None, **kwargs) -> int:
        kwargs.setdefault("max_attempts", self.max_attempts)
        return self._call(enqueue_push, module, entity_type, action, local_id, remote_id, **kwargs)

    def enqueue_pull(self, module, entity_type, action, remote_id, local_id=None, payload=None, **kwargs) -> int:
        kwargs.setdefault("max_attempts", self.max_attempts)
        return self._call(
            enqueue_pull, module, entity_type, action, remote_id, local_id, payload, **kwargs
        )

    def claim_batch(
        self, limit: int, module: Optional[str] = None, exclude_modules: Optional[List[str]] = None
    ) -> List[Job]:
        return self._call(claim_batch, limit, module=module, exclude_modules=exclude_modules)

    def count_claimable(
        self, limit: int, module: Optional[str] = None, exclude_modules: Optional[List[str]] = None
    ) -> int:
        return self._call(count_claimable, limit, module=module, exclude_modules=exclude_modules)

    def complete(self, job_id: int) -> bool:
        return self._call(complete, job_id)

    def fail(
        self,
        job_id: int,
        error_message: str,
        error_type: ErrorType = ErrorType.TRANSIENT,
        backoff_seconds: Optional[int] = None,
    ) -> Optional[str]:
        return self._call(
            fail,
            job_id,
            error_message,
            error_type=error_type,
            backoff_seconds=backoff_seconds,
            base_seconds=self.backoff_base,
            max_seconds=self.max_backoff,
        )

    def release_claimed(self, job_ids: List[int]) -> int:
        return self._call(release_claimed, job_ids)

    def cancel(self, job_id: int) -> bool:
        return self._call(cancel, job_id)

    def retry_failed(self) -> int:
        return self._call(retry_failed)

    def recover_stale_processing(self, stale_seconds: int) -> Dict[str, int]:
        return self._call(recover_stale_processing, stale_seconds)

    def get_job(self, job_id: int) -> Optional[Job]:
        return self._call(get_job, job_id)

    def stats(self) -> Dict[str, Any]:
        return self._call(get_stats)

    def list(self, page: int = 1, per_page: int = DEFAULT_PER_PAGE, status: Optional[str] = None):
        return self._call(list_jobs, page=page, per_page=per_page, status=status)

    def cleanup(self, older_than_days: int = 7) -> int:
        return self._call(cleanup, older_than_days)
