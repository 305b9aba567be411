# -*- coding: utf-8 -*-
"""
test_failure_notifier - 连续失败告警测试
"""

from unittest.mock import MagicMock, patch

import pytest

from odoosync.sync.config import SyncConfig
from odoosync.sync.failure_notifier import (
    KEY_CONSECUTIVE,
    KEY_LAST_ALERT,
    EmailAlertSender,
    FailureNotifier,
)
from tests.fakes import BrokenStore, FakeStore, RecordingSender


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def notifier(store, sender, clock):
    return FailureNotifier(store=store, sender=sender, threshold=5, cooldown=3600, clock=clock)


class TestFailureNotifier:
    def test_alert_sent_once_threshold_reached(self, notifier, sender, store):
        for _ in range(4):
            notifier.check(0, 1)
        assert sender.sent == []

        notifier.check(0, 1)
        assert len(sender.sent) == 1
        assert "5" in sender.sent[0][0]
        assert store.get(KEY_CONSECUTIVE) == 5

    def test_success_resets_counter(self, notifier, sender):
        for _ in range(4):
            notifier.check(0, 1)
        notifier.check(1, 3)
        notifier.check(0, 1)

        assert notifier.consecutive_failures() == 1
        assert sender.sent == []

    def test_batch_failures_accumulate(self, notifier, sender):
        notifier.check(0, 3)
        notifier.check(0, 2)
        assert len(sender.sent) == 1

    def test_empty_batch_changes_nothing(self, notifier, store):
        notifier.check(0, 2)
        notifier.check(0, 0)
        assert store.get(KEY_CONSECUTIVE) == 2

    def test_cooldown_suppresses_repeat_alerts(self, notifier, sender, clock):
        notifier.check(0, 5)
        notifier.check(0, 1)
        assert len(sender.sent) == 1

        clock.advance(3601)
        notifier.check(0, 1)
        assert len(sender.sent) == 2

    def test_unconfigured_recipient_does_not_start_cooldown(self, store, clock):
        sender = RecordingSender(result=False)
        notifier = FailureNotifier(store=store, sender=sender, clock=clock)

        notifier.check(0, 5)
        assert store.get(KEY_LAST_ALERT) is None

    def test_send_error_is_swallowed_and_starts_cooldown(self, store, clock):
        sender = RecordingSender(error=OSError("smtp down"))
        notifier = FailureNotifier(store=store, sender=sender, clock=clock)

        notifier.check(0, 5)
        notifier.check(0, 1)

        assert len(sender.sent) == 1
        assert store.get(KEY_LAST_ALERT) == clock.now

    def test_store_errors_are_swallowed(self, sender, clock):
        notifier = FailureNotifier(store=BrokenStore(), sender=sender, clock=clock)
        notifier.check(0, 10)
        notifier.notify_circuit_breaker_open(3)
        assert sender.sent == []

    def test_breaker_alert_has_its_own_cooldown(self, notifier, sender):
        notifier.check(0, 5)
        notifier.notify_circuit_breaker_open(3)
        notifier.notify_circuit_breaker_open(3)

        assert len(sender.sent) == 2
        assert "熔断" in sender.sent[1][0]

    def test_module_breaker_alert_cooldown_is_per_module(self, notifier, sender):
        notifier.notify_module_circuit_breaker_open("shop", 5)
        notifier.notify_module_circuit_breaker_open("shop", 6)
        notifier.notify_module_circuit_breaker_open("crm", 5)

        assert len(sender.sent) == 2
        assert "shop" in sender.sent[0][0]
        assert "reset-module shop" in sender.sent[0][1]
        assert "crm" in sender.sent[1][0]


class TestEmailAlertSender:
    def test_no_recipient_returns_false(self):
        with patch("odoosync.sync.failure_notifier.smtplib.SMTP") as smtp_cls:
            assert EmailAlertSender(recipient=None).send("s", "b") is False
        smtp_cls.assert_not_called()

    def test_sends_message_via_smtp(self):
        with patch("odoosync.sync.failure_notifier.smtplib.SMTP") as smtp_cls:
            smtp = MagicMock()
            smtp_cls.return_value.__enter__.return_value = smtp
            sender = EmailAlertSender(
                recipient="ops@example.com", smtp_host="mail", smtp_port=2525, sender="sync@example.com"
            )

            assert sender.send("subject", "body") is True

        smtp_cls.assert_called_once_with("mail", 2525, timeout=10)
        message = smtp.send_message.call_args[0][0]
        assert message["To"] == "ops@example.com"
        assert message["From"] == "sync@example.com"
        assert message["Subject"] == "subject"

    def test_from_config(self):
        config = SyncConfig(
            postgres_dsn="postgresql://x/y",
            alert_email="ops@example.com",
            smtp_host="mail",
            smtp_port=2525,
        )
        sender = EmailAlertSender.from_config(config)
        assert (sender.recipient, sender.smtp_host, sender.smtp_port) == ("ops@example.com", "mail", 2525)
