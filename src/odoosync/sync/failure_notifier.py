# -*- coding: utf-8 -*-
"""
odoosync.sync.failure_notifier - 连续失败告警

每批处理结束后调用 check(successes, failures):
- 有成功: 连续失败计数清零
- 全部失败: 计数累加，达到阈值（5）且距上次告警超过冷却时间（3600 秒）时发送告警

计数与上次告警时间持久化在 odoosync.kv（namespace = failure_notifier）。
告警是尽力而为的: 持久化或发送过程中的任何异常只记录日志，不会向上抛出。
"""

import logging
import smtplib
import time
from email.message import EmailMessage
from typing import Callable, Optional

from .cache import PgCache
from .config import SyncConfig, get_config
from .db import get_connection

logger = logging.getLogger(__name__)

NOTIFIER_NAMESPACE = "failure_notifier"
FAILURE_THRESHOLD = 5
ALERT_COOLDOWN = 3600

KEY_CONSECUTIVE = "consecutive_failures"
KEY_LAST_ALERT = "last_alert_at"
KEY_LAST_BREAKER_ALERT = "last_breaker_alert_at"
KEY_LAST_MODULE_BREAKER_ALERT = "last_module_breaker_alert_at"


class EmailAlertSender:
    """通过 SMTP 发送告警邮件"""

    def __init__(
        self,
        recipient: Optional[str],
        smtp_host: str = "localhost",
        smtp_port: int = 25,
        sender: str = "odoosync@localhost",
        timeout: int = 10,
    ):
        self.recipient = recipient
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: SyncConfig) -> "EmailAlertSender":
        return cls(
            recipient=config.alert_email,
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            sender=config.smtp_from,
        )

    def send(self, subject: str, body: str) -> bool:
        """
        发送邮件。

        Returns:
            False 表示未配置收件人（未发送）
        """
        if not self.recipient:
            return False

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = self.recipient
        msg.set_content(body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as smtp:
            smtp.send_message(msg)
        return True


class FailureNotifier:
    """
    Args:
        store: 带 get/set 的持久化存储，默认 PgCache(namespace="failure_notifier")
        sender: 告警发送器（需提供 send(subject, body) -> bool）
        threshold: 连续失败阈值
        cooldown: 两次告警的最小间隔（秒）
        clock: 返回当前 Unix 时间戳
    """

    def __init__(
        self,
        store=None,
        sender=None,
        threshold: int = FAILURE_THRESHOLD,
        cooldown: int = ALERT_COOLDOWN,
        clock: Callable[[], float] = time.time,
    ):
        if store is None:
            store = PgCache(get_connection, namespace=NOTIFIER_NAMESPACE)
        if sender is None:
            sender = EmailAlertSender.from_config(get_config())
        self.store = store
        self.sender = sender
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock

    def consecutive_failures(self) -> int:
        return int(self.store.get(KEY_CONSECUTIVE) or 0)

    def check(self, successes: int, failures: int) -> None:
        """记录一批处理结果，必要时发送告警。从不抛出异常。"""
        try:
            self._check(successes, failures)
        except Exception as e:
            logger.warning(f"失败计数更新异常（已忽略）: {e}")

    def _check(self, successes: int, failures: int) -> None:
        consecutive = self.consecutive_failures()

        if successes > 0:
            if consecutive > 0:
                self.store.set(KEY_CONSECUTIVE, 0)
            return

        if failures == 0:
            return

        consecutive += failures
        self.store.set(KEY_CONSECUTIVE, consecutive)

        if consecutive < self.threshold:
            return

        self._maybe_send(
            KEY_LAST_ALERT,
            subject=f"[odoosync] 连续 {consecutive} 次同步失败",
            body=(
                f"odoosync 同步队列已连续失败 {consecutive} 次。\n\n"
                "请使用 `odoosync stats` / `odoosync list --status failed` 检查队列。"
            ),
            context={"consecutive_failures": consecutive},
        )

    def notify_circuit_breaker_open(self, failures: int) -> None:
        """熔断器打开时告警（与连续失败告警各自冷却）。从不抛出异常。"""
        try:
            self._maybe_send(
                KEY_LAST_BREAKER_ALERT,
                subject="[odoosync] 熔断器已打开，暂停同步",
                body=(
                    f"连续 {failures} 个批次的失败率过高，odoosync 已暂停处理队列。\n\n"
                    "冷却结束后会自动尝试恢复，请检查 Odoo 服务是否可用。"
                ),
                context={"failed_batches": failures},
            )
        except Exception as e:
            logger.warning(f"熔断告警处理异常（已忽略）: {e}")

    def notify_module_circuit_breaker_open(self, module: str, failures: int) -> None:
        """模块熔断打开时告警，每个模块独立冷却。从不抛出异常。"""
        try:
            self._maybe_send(
                f"{KEY_LAST_MODULE_BREAKER_ALERT}_{module}",
                subject=f"[odoosync] 模块 {module} 已熔断，暂停该模块同步",
                body=(
                    f"模块 {module} 连续 {failures} 个批次的失败率过高，其任务已暂停处理。\n\n"
                    f"其他模块不受影响。修复后可使用 `odoosync reset-module {module}` 立即恢复。"
                ),
                context={"module": module, "failed_batches": failures},
            )
        except Exception as e:
            logger.warning(f"模块熔断告警处理异常（已忽略）: {e}")

    def _maybe_send(self, last_key: str, subject: str, body: str, context: dict) -> None:
        now = self._clock()
        last_alert = float(self.store.get(last_key) or 0)
        if now - last_alert < self.cooldown:
            return

        try:
            sent = self.sender.send(subject, body)
        except Exception as e:
            logger.error(f"发送告警失败: {e} ({context})")
            sent = None

        if sent is False:
            logger.warning(f"未配置告警收件人，跳过告警: {context}")
            return

        # 发送失败同样进入冷却，避免每批都重试 SMTP
        self.store.set(last_key, now)
        if sent:
            logger.warning(f"已发送同步失败告警: {context}")
