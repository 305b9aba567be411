"""
odoosync.gateway - 接收 Odoo webhook 的 HTTP 入口

使用方式:
    uvicorn odoosync.gateway.main:app --port 8790
"""
