"""
Gateway 应用工厂

create_app() 只创建 FastAPI 应用并注册路由，不读取环境变量；
依赖在首次请求时由 container 延迟构造。
"""

from typing import Optional

from fastapi import FastAPI

from odoosync import __version__

from .container import GatewayContainer, set_container
from .webhook import router as webhook_router


def create_app(container: Optional[GatewayContainer] = None) -> FastAPI:
    """
    创建并配置 FastAPI 应用实例

    Args:
        container: 可选的依赖容器。提供时立即设为全局容器（用于测试）。
    """
    if container is not None:
        set_container(container)

    app = FastAPI(
        title="odoosync gateway",
        description="Odoo webhook -> odoosync 同步队列",
        version=__version__,
    )
    app.include_router(webhook_router)
    return app
