"""
HTTP 转 SOCKS5 适配器的连接层

本包把协议模块组合成完整的代理：
- pump: 两个 TCP 流之间的双向转发
- handler: 单个客户端连接的处理流程（HTTP 模式 / 转发模式）
- server: 监听地址、接受连接并分发给处理器

使用示例：
    from tunnel import AdapterServer
    server = AdapterServer(config)
    await server.serve_forever()
"""

from .pump import pump, close_writer
from .handler import ConnectionHandler, read_request_head
from .server import AdapterServer

__all__ = [
    'pump',
    'close_writer',
    'ConnectionHandler',
    'read_request_head',
    'AdapterServer',
]
