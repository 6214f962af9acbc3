"""
HTTP 转 SOCKS5 协议包

本包提供适配器两端的协议实现：
- HTTP 代理请求的解析与请求行改写
- SOCKS5 客户端握手（无认证 + CONNECT）

使用示例：
    from protocol import parse_http_request, open_socks5_connection

    request = parse_http_request(buffer)
    reader, writer = await open_socks5_connection(
        '127.0.0.1', 1080, request.target.host, request.target.port)
"""

from .http_proxy import (
    # 响应常量
    RESPONSE_ESTABLISHED,
    RESPONSE_BAD_REQUEST,
    RESPONSE_TOO_LARGE,
    RESPONSE_BAD_GATEWAY,
    HEADER_END,

    # 请求解析
    RequestKind,
    HttpRequest,
    is_connect_request,
    parse_connect_request,
    parse_http_request,
    rewrite_request_line,
)

from .socks5 import (
    SOCKS5,
    describe_reply,
    encode_address,
    build_connect_request,
    negotiate,
    connect_upstream,
    open_socks5_connection,
)

__all__ = [
    'RESPONSE_ESTABLISHED',
    'RESPONSE_BAD_REQUEST',
    'RESPONSE_TOO_LARGE',
    'RESPONSE_BAD_GATEWAY',
    'HEADER_END',
    'RequestKind',
    'HttpRequest',
    'is_connect_request',
    'parse_connect_request',
    'parse_http_request',
    'rewrite_request_line',
    'SOCKS5',
    'describe_reply',
    'encode_address',
    'build_connect_request',
    'negotiate',
    'connect_upstream',
    'open_socks5_connection',
]
