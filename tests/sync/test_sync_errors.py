# -*- coding: utf-8 -*-
"""
test_sync_errors - 错误分类与退避计算测试
"""

import pytest

from odoosync.sync.errors import (
    InvalidJobError,
    LockTimeoutError,
    RateLimitedError,
    RemoteConnectionError,
    RemoteRpcError,
)
from odoosync.sync.sync_errors import (
    ErrorType,
    calculate_backoff_seconds,
    calculate_backoff_with_jitter,
    classify_exception,
    is_retryable,
    last_error_text,
)


class TestBackoff:
    def test_exponential(self):
        assert [calculate_backoff_seconds(n, 60, 3600) for n in range(1, 5)] == [60, 120, 240, 480]

    def test_monotonic_and_capped(self):
        values = [calculate_backoff_seconds(n, 60, 3600) for n in range(0, 50)]
        assert values == sorted(values)
        assert max(values) == 3600
        assert calculate_backoff_seconds(0) == calculate_backoff_seconds(1)

    def test_jitter_stays_within_cap(self):
        for attempts in range(1, 10):
            value = calculate_backoff_with_jitter(attempts, 60, 600, jitter_seconds=30)
            assert calculate_backoff_seconds(attempts, 60, 600) <= value <= 600


class TestClassify:
    @pytest.mark.parametrize(
        "exc",
        [
            LockTimeoutError("lock"),
            RateLimitedError("slow down", retry_after=5),
            RemoteConnectionError("Odoo 请求超时"),
            TimeoutError("t"),
            ConnectionResetError("reset"),
            RuntimeError("boom"),
        ],
    )
    def test_transient(self, exc):
        assert classify_exception(exc)[0] == ErrorType.TRANSIENT

    @pytest.mark.parametrize(
        "exc", [InvalidJobError("bad"), ValueError("v"), KeyError("k"), NotImplementedError("hook")]
    )
    def test_terminal(self, exc):
        assert classify_exception(exc)[0] == ErrorType.TERMINAL

    def test_rpc_error_uses_keywords(self):
        assert classify_exception(RemoteRpcError("503 Service Unavailable"))[0] == ErrorType.TRANSIENT
        assert classify_exception(RemoteRpcError("Invalid field"))[0] == ErrorType.TERMINAL

    def test_empty_message_falls_back_to_class_name(self):
        assert classify_exception(RuntimeError())[1] == "RuntimeError"


class TestHelpers:
    def test_is_retryable(self):
        assert is_retryable(ErrorType.TRANSIENT)
        assert is_retryable("TRANSIENT")
        assert is_retryable(None)
        assert not is_retryable(ErrorType.TERMINAL)
        assert not is_retryable(ErrorType.VALIDATION)

    def test_last_error_text_truncates(self):
        text = last_error_text("x" * 100, max_length=10)
        assert text == "xxxxxxx..."
        assert last_error_text(None) == ""
        assert last_error_text(ValueError("bad value")) == "bad value"
