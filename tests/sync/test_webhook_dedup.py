# -*- coding: utf-8 -*-
"""
test_webhook_dedup - webhook 重复投递抑制测试
"""

from odoosync.sync.webhook_dedup import WebhookDedupGate, dedup_key


class TestDedupKey:
    def test_key_format(self):
        key = dedup_key({"module": "crm", "remote_id": 1})
        assert key.startswith("wh_")
        assert len(key) == 3 + 32

    def test_dict_key_order_does_not_matter(self):
        assert dedup_key({"a": 1, "b": 2}) == dedup_key({"b": 2, "a": 1})

    def test_raw_bytes_and_str_are_hashed_as_is(self):
        assert dedup_key(b'{"a":1}') == dedup_key('{"a":1}')
        assert dedup_key(b'{"a":1}') != dedup_key(b'{"a": 1}')


class TestWebhookDedupGate:
    def test_first_delivery_passes_repeat_is_suppressed(self, fake_cache):
        gate = WebhookDedupGate(fake_cache, ttl=300)
        payload = {"module": "crm", "entity_type": "contact", "remote_id": 5, "action": "update"}

        assert gate.seen(payload) is False
        assert gate.seen(dict(payload)) is True
        assert gate.seen({**payload, "remote_id": 6}) is False

    def test_delivery_passes_again_after_ttl(self, fake_cache, clock):
        gate = WebhookDedupGate(fake_cache, ttl=300)
        payload = {"remote_id": 5}

        assert gate.seen(payload) is False
        clock.advance(299)
        assert gate.seen(payload) is True
        clock.advance(2)
        assert gate.seen(payload) is False

    def test_forget_reopens_the_window(self, fake_cache):
        gate = WebhookDedupGate(fake_cache, ttl=300)
        payload = {"remote_id": 5}

        assert gate.seen(payload) is False
        gate.forget(payload)
        assert gate.seen(payload) is False
        assert gate.seen(payload) is True
