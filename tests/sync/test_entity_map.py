# -*- coding: utf-8 -*-
"""
test_entity_map - 实体映射测试（需要 PostgreSQL）
"""

import pytest

from odoosync.sync.db import get_connection
from odoosync.sync.entity_map import EntityMap, LookupCache, compute_sync_hash


@pytest.fixture
def lookup_cache():
    return LookupCache(max_size=100)


@pytest.fixture
def entity_map(sync_db, lookup_cache):
    return EntityMap(connection_factory=lambda: get_connection(dsn=sync_db), cache=lookup_cache)


def _rows(db_conn):
    with db_conn.cursor() as cur:
        cur.execute(
            "SELECT local_id, remote_id, remote_model, sync_hash FROM odoosync.entity_map ORDER BY id"
        )
        return cur.fetchall()


class TestSave:
    def test_save_is_idempotent(self, entity_map, db_conn):
        assert entity_map.save("crm", "contact", 1, 101, "res.partner", "h1") is True
        assert entity_map.save("crm", "contact", 1, 101, "res.partner", "h2") is True

        assert _rows(db_conn) == [(1, 101, "res.partner", "h2")]
        assert entity_map.get_sync_hash("crm", "contact", 1) == "h2"

    def test_save_replaces_mapping_for_same_local_id(self, entity_map, db_conn, lookup_cache):
        entity_map.save("crm", "contact", 1, 101, "res.partner")
        entity_map.save("crm", "contact", 1, 202, "res.partner")

        assert _rows(db_conn) == [(1, 202, "res.partner", None)]
        assert entity_map.get_remote_id("crm", "contact", 1) == 202
        assert entity_map.get_local_id("crm", "contact", 101) is None

    def test_save_replaces_mapping_for_same_remote_id(self, entity_map, db_conn):
        entity_map.save("crm", "contact", 1, 101, "res.partner")
        entity_map.save("crm", "contact", 2, 101, "res.partner")

        assert _rows(db_conn) == [(2, 101, "res.partner", None)]
        assert entity_map.get_local_id("crm", "contact", 101) == 2
        assert entity_map.get_remote_id("crm", "contact", 1) is None

    def test_mappings_are_scoped_by_module_and_entity_type(self, entity_map):
        entity_map.save("crm", "contact", 1, 101, "res.partner")
        entity_map.save("crm", "company", 1, 555, "res.partner")
        entity_map.save("shop", "contact", 1, 777, "res.partner")

        assert entity_map.get_remote_id("crm", "contact", 1) == 101
        assert entity_map.get_remote_id("crm", "company", 1) == 555
        assert entity_map.get_remote_id("shop", "contact", 1) == 777


class TestLookup:
    def test_missing_mapping_returns_none(self, entity_map):
        assert entity_map.get_remote_id("crm", "contact", 404) is None
        assert entity_map.get_local_id("crm", "contact", 404) is None

    def test_lookup_is_served_from_cache(self, entity_map, db_conn):
        entity_map.save("crm", "contact", 1, 101, "res.partner")
        with db_conn.cursor() as cur:
            cur.execute("DELETE FROM odoosync.entity_map")

        assert entity_map.get_remote_id("crm", "contact", 1) == 101

        entity_map.invalidate_key("crm", "contact", 1)
        assert entity_map.get_remote_id("crm", "contact", 1) is None
        assert entity_map.get_local_id("crm", "contact", 101) is None

    def test_flush_cache_forces_database_lookup(self, entity_map, db_conn):
        entity_map.save("crm", "contact", 1, 101, "res.partner")
        with db_conn.cursor() as cur:
            cur.execute("UPDATE odoosync.entity_map SET remote_id = 303")

        entity_map.flush_cache()
        assert entity_map.get_remote_id("crm", "contact", 1) == 303

    def test_batch_lookup_returns_only_mapped_ids(self, entity_map):
        for local_id in range(1, 6):
            entity_map.save("crm", "contact", local_id, 100 + local_id, "res.partner")
        entity_map.flush_cache()

        assert entity_map.get_remote_ids_batch("crm", "contact", [1, 3, 5, 9]) == {1: 101, 3: 103, 5: 105}
        assert entity_map.get_local_ids_batch("crm", "contact", [102, 104, 999]) == {102: 2, 104: 4}

    def test_batch_lookup_handles_more_than_one_chunk(self, entity_map, db_conn):
        with db_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO odoosync.entity_map (module, entity_type, local_id, remote_id, remote_model)
                SELECT 'crm', 'contact', g, g + 10000, 'res.partner' FROM generate_series(1, 1200) g
                """
            )

        result = entity_map.get_remote_ids_batch("crm", "contact", range(1, 1201))
        assert len(result) == 1200
        assert result[1200] == 11200

    def test_module_entity_mappings_sorted_by_local_id(self, entity_map):
        entity_map.save("crm", "contact", 3, 103, "res.partner", "c")
        entity_map.save("crm", "contact", 1, 101, "res.partner", "a")
        entity_map.save("crm", "company", 2, 102, "res.partner")

        mappings = entity_map.get_module_entity_mappings("crm", "contact")
        assert [(m.local_id, m.remote_id, m.sync_hash) for m in mappings] == [(1, 101, "a"), (3, 103, "c")]
        assert all(m.last_synced_at is not None for m in mappings)


class TestRemove:
    def test_remove_deletes_mapping_and_cache(self, entity_map, db_conn):
        entity_map.save("crm", "contact", 1, 101, "res.partner")

        assert entity_map.remove("crm", "contact", 1) is True
        assert _rows(db_conn) == []
        assert entity_map.get_remote_id("crm", "contact", 1) is None
        assert entity_map.get_local_id("crm", "contact", 101) is None

    def test_remove_missing_mapping_returns_false(self, entity_map):
        assert entity_map.remove("crm", "contact", 1) is False


class TestLookupCache:
    def test_evicts_least_recently_used(self):
        cache = LookupCache(max_size=2)
        cache.put(("crm", "contact", "local", 1), 101)
        cache.put(("crm", "contact", "local", 2), 102)
        cache.get(("crm", "contact", "local", 1))
        cache.put(("crm", "contact", "local", 3), 103)

        assert cache.get(("crm", "contact", "local", 1)) == 101
        assert cache.get(("crm", "contact", "local", 2)) is None
        assert cache.get(("crm", "contact", "local", 3)) == 103


def test_sync_hash_ignores_key_order():
    assert compute_sync_hash({"a": 1, "b": "x"}) == compute_sync_hash({"b": "x", "a": 1})
    assert compute_sync_hash({"a": 1}) != compute_sync_hash({"a": 2})
    assert len(compute_sync_hash({})) == 64
