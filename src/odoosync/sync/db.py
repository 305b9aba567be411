"""
odoosync.sync.db - 数据库连接模块

提供数据库连接和 SQL 执行功能。

Schema 管理:
- 所有表位于 odoosync schema
- 连接时设置 search_path 为 odoosync, public
- SQL 统一写带 schema 前缀的表名
"""

import os
from pathlib import Path
from typing import Callable, List, Optional, Union

import psycopg

from .config import SyncConfig, get_config
from .errors import ConfigError, DatabaseError, DbConnectionError

DEFAULT_SEARCH_PATH = ["odoosync", "public"]

# 无参连接工厂，供需要"按需建立连接"的组件注入
ConnectionFactory = Callable[[], psycopg.Connection]


def get_dsn(config: Optional[SyncConfig] = None) -> str:
    """
    获取数据库 DSN

    优先级（高到低）：
    1. config.postgres_dsn
    2. 环境变量 POSTGRES_DSN
    3. 环境变量 TEST_PG_DSN（仅用于测试场景）

    Raises:
        ConfigError: 当 DSN 不存在时抛出
    """
    if config is None:
        config = get_config()

    if config.postgres_dsn:
        return config.postgres_dsn

    dsn = os.environ.get("POSTGRES_DSN")
    if dsn:
        return dsn

    dsn = os.environ.get("TEST_PG_DSN")
    if dsn:
        return dsn

    raise ConfigError(
        "未找到数据库 DSN 配置",
        {"checked": ["postgres_dsn", "POSTGRES_DSN", "TEST_PG_DSN"]},
    )


def get_connection(
    dsn: Optional[str] = None,
    config: Optional[SyncConfig] = None,
    autocommit: bool = False,
    search_path: Optional[Union[List[str], str]] = None,
    statement_timeout_ms: Optional[int] = None,
) -> psycopg.Connection:
    """
    获取数据库连接。

    连接后会设置 search_path（默认 odoosync, public），
    以及可选的 statement_timeout，优先级:
    1. 显式传入的 statement_timeout_ms 参数
    2. config.statement_timeout_ms（ODOOSYNC_PG_STATEMENT_TIMEOUT_MS）

    Raises:
        DbConnectionError: 连接失败时抛出
    """
    if config is None:
        config = get_config()

    if dsn is None:
        dsn = get_dsn(config)

    try:
        conn = psycopg.connect(dsn, autocommit=autocommit)
    except Exception as e:
        raise DbConnectionError(
            f"数据库连接失败: {e}",
            {"error": str(e)},
        )

    if search_path is None:
        schemas = DEFAULT_SEARCH_PATH.copy()
    elif isinstance(search_path, list):
        schemas = search_path
    else:
        schemas = [s.strip() for s in str(search_path).split(",") if s.strip()]

    if "public" not in schemas:
        schemas.append("public")
    search_path_value = ", ".join(schemas)

    try:
        with conn.cursor() as cur:
            cur.execute(f"SET search_path TO {search_path_value}")
    except Exception as e:
        conn.close()
        raise DbConnectionError(
            f"设置 search_path 失败: {e}",
            {"search_path": search_path_value, "error": str(e)},
        )

    timeout_ms = statement_timeout_ms
    if timeout_ms is None:
        timeout_ms = config.statement_timeout_ms

    if timeout_ms is not None and timeout_ms > 0:
        try:
            with conn.cursor() as cur:
                cur.execute(f"SET statement_timeout TO {int(timeout_ms)}")
        except Exception as e:
            conn.close()
            raise DbConnectionError(
                f"设置 statement_timeout 失败: {e}",
                {"statement_timeout_ms": timeout_ms, "error": str(e)},
            )

    if not autocommit:
        # search_path/statement_timeout 是会话级设置，提交掉隐式事务
        conn.commit()

    return conn


def execute_sql_file(conn: psycopg.Connection, sql_path: Path) -> None:
    """
    执行 SQL 文件。

    注意：事务控制由 SQL 文件自身管理（BEGIN/COMMIT），
    conn 需要 autocommit=True。

    Raises:
        DatabaseError: SQL 执行失败时抛出
    """
    try:
        sql_content = sql_path.read_text(encoding="utf-8")
        # 过滤 psql 专用指令（\if/\endif 等），避免 psycopg 执行失败
        sql_lines = [
            line for line in sql_content.splitlines() if not line.lstrip().startswith("\\")
        ]
        with conn.cursor() as cur:
            cur.execute("\n".join(sql_lines))
    except psycopg.Error as e:
        raise DatabaseError(
            f"SQL 执行失败: {e}",
            {"sql_path": str(sql_path), "error": str(e)},
        )
