# -*- coding: utf-8 -*-
"""
test_migrate - SQL 脚本扫描与迁移测试
"""

import pytest

from odoosync.sync.migrate import SQL_DIR, run_migrate, scan_sql_files


class TestScan:
    def test_orders_by_numeric_prefix(self, tmp_path):
        for name in ("10_views.sql", "02_indexes.sql", "01_schema.sql", "notes.sql", "1_bad.sql", "03_x.txt"):
            (tmp_path / name).write_text("SELECT 1;")

        files = scan_sql_files(tmp_path)

        assert [prefix for prefix, _ in files] == ["01", "02", "10"]
        assert [path.name for _, path in files] == ["01_schema.sql", "02_indexes.sql", "10_views.sql"]

    def test_packaged_schema_is_found(self):
        assert "01_sync_schema.sql" in [path.name for _, path in scan_sql_files(SQL_DIR)]

    def test_dry_run_does_not_connect(self, tmp_path):
        (tmp_path / "01_schema.sql").write_text("SELECT 1;")

        result = run_migrate(dsn="postgresql://nobody@invalid/none", sql_dir=tmp_path, dry_run=True)

        assert result == {"ok": True, "files": ["01_schema.sql"], "dry_run": True}


@pytest.mark.pg
class TestRunMigrate:
    def test_rerun_is_idempotent(self, migrated_db):
        result = run_migrate(dsn=migrated_db["dsn"])
        assert result["ok"] is True
        assert result["dry_run"] is False
        assert "01_sync_schema.sql" in result["files"]
