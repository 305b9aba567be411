# -*- coding: utf-8 -*-
"""
odoosync.sync.migrate - 数据库迁移

按数字前缀顺序执行 odoosync/sql/NN_*.sql。所有脚本使用 IF NOT EXISTS，可重复执行。
执行期间持有 pg_advisory_lock(hashtext('odoosync_migrate'))，并发迁移会串行化。
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .db import execute_sql_file, get_connection

logger = logging.getLogger(__name__)

SQL_DIR = Path(__file__).resolve().parent.parent / "sql"
MIGRATE_LOCK_KEY = "odoosync_migrate"


def scan_sql_files(sql_dir: Path = SQL_DIR) -> List[Tuple[str, Path]]:
    """
    扫描 SQL 目录，返回按前缀数字排序的 SQL 文件列表。

    Returns:
        [(prefix, path), ...]
    """
    pattern = re.compile(r"^(\d{2})_.*\.sql$")
    result = []

    for sql_file in sql_dir.glob("*.sql"):
        match = pattern.match(sql_file.name)
        if match:
            result.append((match.group(1), sql_file))

    result.sort(key=lambda x: (int(x[0]), x[1].name))
    return result


def run_migrate(
    dsn: Optional[str] = None,
    sql_dir: Path = SQL_DIR,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """
    执行迁移。

    Args:
        dsn: 数据库 DSN（None 时从配置解析）
        sql_dir: SQL 目录
        dry_run: 只列出将要执行的脚本

    Returns:
        {"ok": True, "files": [...], "dry_run": bool}
    """
    files = scan_sql_files(sql_dir)
    names = [path.name for _, path in files]

    if dry_run:
        return {"ok": True, "files": names, "dry_run": True}

    conn = get_connection(dsn=dsn, autocommit=True)
    try:
        with conn.cursor() as cur:
            logger.info(f"获取迁移锁: {MIGRATE_LOCK_KEY}...")
            cur.execute("SELECT pg_advisory_lock(hashtext(%s))", (MIGRATE_LOCK_KEY,))
        try:
            for _, path in files:
                logger.info(f"执行 SQL: {path.name}")
                execute_sql_file(conn, path)
        finally:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_unlock(hashtext(%s))", (MIGRATE_LOCK_KEY,))
            logger.info(f"释放迁移锁: {MIGRATE_LOCK_KEY}")
    finally:
        conn.close()

    return {"ok": True, "files": names, "dry_run": False}
