# -*- coding: utf-8 -*-
"""
test_reconciler - 映射对账测试
"""

import pytest

from odoosync.sync.errors import ConfigError
from odoosync.sync.reconciler import Reconciler
from tests.fakes import FakeEntityMap, FakeOdooClient

MODEL = "res.partner"


@pytest.fixture
def entity_map():
    emap = FakeEntityMap()
    for i in range(1, 11):
        emap.save("crm", "contact", i, 500 + i, MODEL)
    return emap


@pytest.fixture
def client():
    odoo = FakeOdooClient()
    # 503 / 507 / 509 已在 Odoo 中被删除
    for i in range(1, 11):
        if i not in (3, 7, 9):
            odoo.add_record(MODEL, 500 + i, name=f"partner {i}")
    return odoo


class TestReconcile:
    def test_reports_orphans_without_fix(self, entity_map, client):
        result = Reconciler(entity_map, lambda: client).reconcile("crm", "contact", MODEL)

        assert result.checked == 10
        assert result.orphaned == [
            {"local_id": 3, "remote_id": 503},
            {"local_id": 7, "remote_id": 507},
            {"local_id": 9, "remote_id": 509},
        ]
        assert result.fixed == 0
        assert len(entity_map.get_module_entity_mappings("crm", "contact")) == 10

    def test_fix_removes_orphaned_mappings(self, entity_map, client):
        result = Reconciler(entity_map, lambda: client).reconcile("crm", "contact", MODEL, fix=True)

        assert len(result.orphaned) == 3
        assert result.fixed == 3
        remaining = entity_map.get_module_entity_mappings("crm", "contact")
        assert [m.local_id for m in remaining] == [1, 2, 4, 5, 6, 8, 10]

    def test_search_ignores_active_flag(self, entity_map, client):
        calls = []
        original = client.search

        def recording_search(model, domain, offset=0, limit=None, context=None):
            calls.append(context)
            return original(model, domain, offset=offset, limit=limit, context=context)

        client.search = recording_search
        Reconciler(entity_map, lambda: client).reconcile("crm", "contact", MODEL)
        assert calls == [{"active_test": False}]

    def test_no_mappings(self, client):
        result = Reconciler(FakeEntityMap(), lambda: client).reconcile("crm", "contact", MODEL)
        assert result.checked == 0
        assert result.orphaned == []
        assert client.calls == []

    def test_batches_remote_ids(self, entity_map, client):
        Reconciler(entity_map, lambda: client, batch_size=4).reconcile("crm", "contact", MODEL)

        searches = client.calls_of("search")
        assert [len(call[2][0][2]) for call in searches] == [4, 4, 2]


class TestFailures:
    def test_failed_batch_is_unknown_not_orphaned(self, entity_map, client):
        client.failing_search_ids = {507}
        result = Reconciler(entity_map, lambda: client, batch_size=4).reconcile(
            "crm", "contact", MODEL, fix=True
        )

        # 第二批 (505-508) 查询失败
        assert result.unknown == [505, 506, 507, 508]
        assert result.orphaned == [
            {"local_id": 3, "remote_id": 503},
            {"local_id": 9, "remote_id": 509},
        ]
        assert result.fixed == 2
        assert len(result.errors) == 1
        assert entity_map.get_remote_id("crm", "contact", 7) == 507

    def test_unexpected_client_error_marks_batch_unknown(self, entity_map, client):
        original_search = client.search

        def search(model, domain, offset=0, limit=None, context=None):
            if 501 in domain[0][2]:
                raise AttributeError("'list' object has no attribute 'get'")
            return original_search(model, domain, offset=offset, limit=limit, context=context)

        client.search = search
        result = Reconciler(entity_map, lambda: client, batch_size=4).reconcile(
            "crm", "contact", MODEL, fix=True
        )

        assert result.unknown == [501, 502, 503, 504]
        assert result.orphaned == [
            {"local_id": 7, "remote_id": 507},
            {"local_id": 9, "remote_id": 509},
        ]
        assert entity_map.get_remote_id("crm", "contact", 3) == 503
        assert "attribute" in result.errors[0]

    def test_client_construction_failure(self, entity_map):
        def provider():
            raise ConfigError("缺少 Odoo 连接配置: ODOO_URL")

        result = Reconciler(entity_map, provider).reconcile("crm", "contact", MODEL, fix=True)

        assert result.orphaned == []
        assert result.fixed == 0
        assert len(result.unknown) == 10
        assert "ODOO_URL" in result.errors[0]

    def test_to_dict(self, entity_map, client):
        data = Reconciler(entity_map, lambda: client).reconcile("crm", "contact", MODEL).to_dict()
        assert data["module"] == "crm"
        assert data["checked"] == 10
        assert len(data["orphaned"]) == 3
