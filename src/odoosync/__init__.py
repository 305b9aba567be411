"""
odoosync - 本地记录库与 Odoo 之间的持久化同步队列

提供：
- sync: 队列、实体映射、咨询锁、限流、去重、告警、熔断、引擎、对账
- gateway: 接收 Odoo webhook 的 FastAPI 应用
"""

__version__ = "0.1.0"

from odoosync.sync import config, errors

__all__ = ["config", "errors", "__version__"]
