"""
odoosync gateway 启动入口

使用方式:
    odoosync-gateway [--host 0.0.0.0] [--port 8790]
    uvicorn odoosync.gateway.main:app --port 8790
"""

import argparse
import logging
import sys
from typing import List, Optional

from odoosync.sync.errors import ConfigError

from .app import create_app
from .config import get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gateway")

app = create_app()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI 启动入口"""
    import uvicorn

    parser = argparse.ArgumentParser(
        prog="odoosync-gateway",
        description="odoosync Odoo webhook 服务",
    )
    parser.add_argument("--host", default="0.0.0.0", help="监听地址（默认 0.0.0.0）")
    parser.add_argument("--port", type=int, help="监听端口（默认取 GATEWAY_PORT 或 8790）")
    args = parser.parse_args(argv)

    try:
        config = get_config()
    except ConfigError as e:
        logger.error(f"配置错误: {e}")
        return 1

    if not config.webhook_token:
        logger.warning("ODOOSYNC_WEBHOOK_TOKEN 未设置，/webhook/odoo 将返回 503")

    port = args.port or config.gateway_port
    logger.info(f"odoosync gateway 启动: host={args.host}, port={port}")
    uvicorn.run(
        "odoosync.gateway.main:app",
        host=args.host,
        port=port,
        reload=False,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
