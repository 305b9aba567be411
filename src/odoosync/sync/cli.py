# -*- coding: utf-8 -*-
"""
odoosync.sync.cli - odoosync 命令行入口

用法:
    odoosync migrate
    odoosync process --once [--module crm] [--dry-run]
    odoosync process --loop --loop-interval 60
    odoosync stats
    odoosync list --status failed --page 1
    odoosync retry-failed
    odoosync cancel 42
    odoosync reset-module shop
    odoosync cleanup --days 7
    odoosync reconcile crm contact [--model res.partner] [--fix]
    odoosync reap [--dry-run]

输出为 JSON，退出码见 odoosync.sync.errors.ExitCode。
"""

import argparse
import json
import logging
import sys
import time
from typing import Any, List, Optional

from .config import get_config
from .errors import ExitCode, SyncError, ValidationError, make_success_result
from .migrate import run_migrate
from .runtime import Runtime, build_runtime
from .sync_queue import ALL_STATUSES
from .sync_reaper import run_reaper

logger = logging.getLogger("odoosync.cli")

DEFAULT_LOOP_INTERVAL = 60.0


def _emit(result: Any) -> None:
    print(json.dumps(result, ensure_ascii=False, default=str, indent=2))


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="odoosync",
        description="odoosync 同步队列管理工具",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="详细日志输出")

    subparsers = parser.add_subparsers(dest="command", required=True)

    mig = subparsers.add_parser("migrate", help="执行数据库迁移")
    mig.add_argument("--dry-run", action="store_true", help="只列出将要执行的脚本")

    proc = subparsers.add_parser("process", help="处理队列")
    mode_group = proc.add_mutually_exclusive_group()
    mode_group.add_argument("--once", action="store_true", help="执行一轮后退出（默认）")
    mode_group.add_argument("--loop", action="store_true", help="持续轮询模式")
    proc.add_argument(
        "--loop-interval",
        type=float,
        default=DEFAULT_LOOP_INTERVAL,
        help=f"loop 模式下每轮间隔秒数 (默认: {DEFAULT_LOOP_INTERVAL})",
    )
    proc.add_argument("--module", help="只处理指定模块")
    proc.add_argument("--dry-run", action="store_true", help="只统计可处理任务数")

    subparsers.add_parser("stats", help="队列统计")

    lst = subparsers.add_parser("list", help="分页列出任务")
    lst.add_argument("--page", type=int, default=1)
    lst.add_argument("--per-page", type=int, default=30)
    lst.add_argument("--status", choices=ALL_STATUSES)

    subparsers.add_parser("retry-failed", help="将所有 failed 任务重置为 pending")

    cancel = subparsers.add_parser("cancel", help="取消 pending/failed 任务")
    cancel.add_argument("job_id", type=int)

    reset = subparsers.add_parser("reset-module", help="手动关闭某个模块的熔断")
    reset.add_argument("module")

    clean = subparsers.add_parser("cleanup", help="清理已结束的旧任务")
    clean.add_argument("--days", type=int, default=7, help="清理多少天前的任务 (默认: 7)")

    rec = subparsers.add_parser("reconcile", help="映射对账")
    rec.add_argument("module")
    rec.add_argument("entity_type")
    rec.add_argument("--model", help="Odoo 模型名（默认从已注册模块解析）")
    rec.add_argument("--fix", action="store_true", help="删除孤儿映射")

    reap = subparsers.add_parser("reap", help="回收卡死的 processing 任务")
    reap.add_argument("--stale-seconds", type=int, help="卡死阈值秒数（默认取配置）")
    reap.add_argument("--dry-run", action="store_true", help="只统计，不修改")

    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return create_parser().parse_args(argv)


def _resolve_model(runtime: Runtime, module: str, entity_type: str, model: Optional[str]) -> str:
    if model:
        return model
    adapter = runtime.registry.get(module)
    if adapter is not None:
        models = adapter.get_odoo_models()
        if entity_type in models:
            return models[entity_type]
    raise ValidationError(
        f"无法解析 {module}/{entity_type} 的 Odoo 模型，请使用 --model 指定",
        {"module": module, "entity_type": entity_type},
    )


def _run_process(runtime: Runtime, args: argparse.Namespace) -> Any:
    engine = runtime.engine(dry_run=args.dry_run)

    def run_once() -> Any:
        if args.module:
            engine.process_module_queue(args.module)
        else:
            engine.process_queue()
        return engine.last_run

    if not args.loop:
        return make_success_result(**run_once())

    logger.info(f"odoosync 启动 (--loop 模式, interval={args.loop_interval}s)")
    try:
        while True:
            try:
                run_once()
            except SyncError as e:
                logger.error(f"队列处理失败: {e.message}")
            time.sleep(args.loop_interval)
    except KeyboardInterrupt:
        logger.info("收到中断信号，退出")
    return make_success_result(stopped=True)


def run_command(args: argparse.Namespace) -> Any:
    config = get_config()

    if args.command == "migrate":
        return run_migrate(dry_run=args.dry_run)

    if args.command == "reap":
        stale = args.stale_seconds if args.stale_seconds is not None else config.stale_timeout
        return make_success_result(**run_reaper(stale_seconds=stale, dry_run=args.dry_run, logger=logger))

    runtime = build_runtime(config)
    try:
        if args.command == "process":
            return _run_process(runtime, args)
        if args.command == "stats":
            return make_success_result(**runtime.queue.stats())
        if args.command == "list":
            page = runtime.queue.list(page=args.page, per_page=args.per_page, status=args.status)
            page["items"] = [job.to_dict() for job in page["items"]]
            return make_success_result(**page)
        if args.command == "retry-failed":
            return make_success_result(reset=runtime.queue.retry_failed())
        if args.command == "cancel":
            return make_success_result(job_id=args.job_id, cancelled=runtime.queue.cancel(args.job_id))
        if args.command == "reset-module":
            runtime.module_breaker.reset_module(args.module)
            return make_success_result(module=args.module, reset=True)
        if args.command == "cleanup":
            return make_success_result(deleted=runtime.queue.cleanup(args.days))
        if args.command == "reconcile":
            model = _resolve_model(runtime, args.module, args.entity_type, args.model)
            result = runtime.reconciler().reconcile(args.module, args.entity_type, model, fix=args.fix)
            return make_success_result(**result.to_dict())
        raise ValidationError(f"未知命令: {args.command}")
    finally:
        runtime.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        _emit(run_command(args))
        return ExitCode.SUCCESS
    except SyncError as e:
        logger.error(e.message)
        _emit(e.to_dict())
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
