# -*- coding: utf-8 -*-
"""
test_cli - odoosync 命令行测试（运行时以 mock 替换）
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from odoosync.sync import cli
from odoosync.sync.errors import ConfigError, ExitCode
from odoosync.sync.reconciler import ReconcileResult


@pytest.fixture
def runtime():
    rt = MagicMock()
    with patch.object(cli, "build_runtime", return_value=rt):
        yield rt


def run(capsys, *argv):
    code = cli.main(list(argv))
    out = capsys.readouterr().out
    return code, json.loads(out)


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args([])

    def test_process_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["process", "--once", "--loop"])

    def test_defaults(self):
        args = cli.parse_args(["cleanup"])
        assert args.days == 7
        args = cli.parse_args(["process"])
        assert args.loop is False
        assert args.loop_interval == cli.DEFAULT_LOOP_INTERVAL


class TestCommands:
    def test_migrate_dry_run(self, capsys):
        code, data = run(capsys, "migrate", "--dry-run")
        assert code == ExitCode.SUCCESS
        assert data["dry_run"] is True
        assert "01_sync_schema.sql" in data["files"]

    def test_stats(self, capsys, runtime):
        runtime.queue.stats.return_value = {"pending": 2, "failed": 1}

        code, data = run(capsys, "stats")

        assert code == 0
        assert data == {"ok": True, "pending": 2, "failed": 1}
        runtime.close.assert_called_once()

    def test_process_once(self, capsys, runtime):
        engine = runtime.engine.return_value
        engine.last_run = {"processed": 3, "failed": 0}

        code, data = run(capsys, "process", "--once", "--module", "crm")

        assert code == 0
        assert data["processed"] == 3
        runtime.engine.assert_called_once_with(dry_run=False)
        engine.process_module_queue.assert_called_once_with("crm")
        engine.process_queue.assert_not_called()

    def test_cancel(self, capsys, runtime):
        runtime.queue.cancel.return_value = True
        code, data = run(capsys, "cancel", "42")
        assert data == {"ok": True, "job_id": 42, "cancelled": True}

    def test_reset_module(self, capsys, runtime):
        code, data = run(capsys, "reset-module", "shop")
        assert code == ExitCode.SUCCESS
        assert data == {"ok": True, "module": "shop", "reset": True}
        runtime.module_breaker.reset_module.assert_called_once_with("shop")

    def test_reconcile_resolves_model_from_registry(self, capsys, runtime):
        adapter = MagicMock()
        adapter.get_odoo_models.return_value = {"contact": "res.partner"}
        runtime.registry.get.return_value = adapter
        reconciler = runtime.reconciler.return_value
        reconciler.reconcile.return_value = ReconcileResult("crm", "contact", checked=4, fixed=1)

        code, data = run(capsys, "reconcile", "crm", "contact", "--fix")

        assert code == 0
        assert data["checked"] == 4
        reconciler.reconcile.assert_called_once_with("crm", "contact", "res.partner", fix=True)

    def test_reconcile_unknown_model(self, capsys, runtime):
        runtime.registry.get.return_value = None

        code, data = run(capsys, "reconcile", "crm", "invoice")

        assert code == ExitCode.VALIDATION_ERROR
        assert data["ok"] is False

    def test_sync_error_sets_exit_code(self, capsys):
        with patch.object(cli, "build_runtime", side_effect=ConfigError("缺少配置")):
            code, data = run(capsys, "stats")

        assert code == ExitCode.CONFIG_ERROR
        assert data["code"] == "CONFIG_ERROR"
        assert data["message"] == "缺少配置"

    def test_reap_uses_configured_timeout(self, capsys):
        with patch.object(cli, "run_reaper", return_value={"to_pending": 1, "to_failed": 0}) as reaper:
            code, data = run(capsys, "reap", "--dry-run")

        assert code == 0
        assert data["to_pending"] == 1
        assert reaper.call_args.kwargs["dry_run"] is True
        assert reaper.call_args.kwargs["stale_seconds"] == 600
