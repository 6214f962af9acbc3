"""
SOCKS5 客户端模块

本模块实现 RFC 1928 的客户端部分：无认证方式（NO AUTHENTICATION）的
方法协商和 CONNECT 命令。每个上游连接只协商一次，协商成功后连接
即可传输透明数据。

握手流程:
┌────────────┬───────────────────────────────┬────────────────────────────────┐
│ 阶段       │ 发送                          │ 等待                           │
├────────────┼───────────────────────────────┼────────────────────────────────┤
│ Greet      │ 05 01 00                      │ 2 字节，必须为 05 00           │
│ Request    │ 05 01 00 ATYP ADDR PORT       │ 4 字节 VER REP RSV ATYP        │
│ BndAddress │ -                             │ 按 ATYP 读取 4/16/1+N 字节     │
│ BndPort    │ -                             │ 2 字节                         │
└────────────┴───────────────────────────────┴────────────────────────────────┘

服务器返回的绑定地址和端口会被读取并丢弃。
"""

import asyncio
import ipaddress
import logging
import struct
from typing import Optional, Tuple

from common import HandshakeError, UpstreamUnreachableError

logger = logging.getLogger('http2socks-socks5')


# ============================================================================
# SOCKS5 协议常量
# ============================================================================

class SOCKS5:
    """SOCKS5 协议常量定义"""
    VERSION = 0x05          # SOCKS5 协议版本
    AUTH_NONE = 0x00        # 无需认证
    AUTH_NO_ACCEPTABLE = 0xFF  # 没有可接受的认证方式
    CMD_CONNECT = 0x01      # 连接命令
    RSV = 0x00              # 保留字节
    ATYP_IPV4 = 0x01        # IPv4 地址类型
    ATYP_DOMAIN = 0x03      # 域名地址类型
    ATYP_IPV6 = 0x04        # IPv6 地址类型
    REP_SUCCESS = 0x00      # 成功响应


# RFC 1928 第 6 节定义的 REP 字段含义
REPLY_MESSAGES = {
    0x01: 'general SOCKS server failure',
    0x02: 'connection not allowed by ruleset',
    0x03: 'network unreachable',
    0x04: 'host unreachable',
    0x05: 'connection refused',
    0x06: 'TTL expired',
    0x07: 'command not supported',
    0x08: 'address type not supported',
}

GREETING = bytes([SOCKS5.VERSION, 0x01, SOCKS5.AUTH_NONE])
MAX_DOMAIN_LENGTH = 255
ADDRESS_SIZES = {
    SOCKS5.ATYP_IPV4: 4,
    SOCKS5.ATYP_IPV6: 16,
}


def describe_reply(rep: int) -> str:
    """返回 REP 字段的可读描述，例如 "0x05 connection refused" """
    return f"0x{rep:02x} {REPLY_MESSAGES.get(rep, 'unassigned')}"


# ============================================================================
# 请求编码
# ============================================================================

def encode_address(host: str, port: int) -> bytes:
    """
    编码 SOCKS5 地址字段（ATYP + ADDR + PORT）

    - IPv4 字面量: 0x01 + 4 字节
    - IPv6 字面量: 0x04 + 16 字节（网络字节序）
    - 其他视为域名: 0x03 + 1 字节长度 + UTF-8 域名（不含结尾 NUL）

    端口总是 2 字节大端序。

    Args:
        host: 目标主机，IP 字面量或域名
        port: 目标端口

    Returns:
        bytes: 编码后的地址字段

    Raises:
        HandshakeError: 端口越界，或域名为空/超过 255 字节
    """
    if not 0 < port <= 0xFFFF:
        raise HandshakeError(f"无效的目标端口: {port}")

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None

    if isinstance(ip, ipaddress.IPv4Address):
        addr = bytes([SOCKS5.ATYP_IPV4]) + ip.packed
    elif isinstance(ip, ipaddress.IPv6Address):
        addr = bytes([SOCKS5.ATYP_IPV6]) + ip.packed
    else:
        name = host.encode('utf-8')
        if not name or len(name) > MAX_DOMAIN_LENGTH:
            raise HandshakeError(f"域名长度必须在 1-{MAX_DOMAIN_LENGTH} 字节之间: {len(name)}")
        addr = struct.pack('>BB', SOCKS5.ATYP_DOMAIN, len(name)) + name

    return addr + struct.pack('>H', port)


def build_connect_request(host: str, port: int) -> bytes:
    """
    构造 CONNECT 请求: VER CMD RSV ATYP ADDR PORT

    Args:
        host: 目标主机
        port: 目标端口

    Returns:
        bytes: 完整的 CONNECT 请求
    """
    return bytes([SOCKS5.VERSION, SOCKS5.CMD_CONNECT, SOCKS5.RSV]) + encode_address(host, port)


# ============================================================================
# 握手
# ============================================================================

async def _read_exact(reader: asyncio.StreamReader, n: int, what: str) -> bytes:
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise HandshakeError(f"读取{what}时连接提前关闭: 期望 {n} 字节，实际 {len(e.partial)} 字节") from e


async def negotiate(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                    host: str, port: int, request: Optional[bytes] = None):
    """
    在已建立的连接上完成 SOCKS5 握手

    成功返回后，连接上的后续数据即为目标的透明数据。

    Args:
        reader: SOCKS5 服务器的读取流
        writer: SOCKS5 服务器的写入流
        host: 目标主机
        port: 目标端口
        request: 已编码的 CONNECT 请求，为空时由 host 和 port 编码

    Raises:
        HandshakeError: 任一阶段失败
    """
    # 先编码请求，地址无效时不向服务器发送任何字节
    if request is None:
        request = build_connect_request(host, port)

    try:
        # Greet
        writer.write(GREETING)
        await writer.drain()
        reply = await _read_exact(reader, 2, '方法选择响应')
        if reply[0] != SOCKS5.VERSION or reply[1] != SOCKS5.AUTH_NONE:
            raise HandshakeError(f"SOCKS5 服务器拒绝无认证方式: {reply.hex()}")

        # Request
        writer.write(request)
        await writer.drain()
        version, rep, _, atyp = await _read_exact(reader, 4, 'CONNECT 响应')
        if version != SOCKS5.VERSION:
            raise HandshakeError(f"无效的 SOCKS5 响应版本: {version}")
        if rep != SOCKS5.REP_SUCCESS:
            raise HandshakeError(f"SOCKS5 CONNECT 失败: {describe_reply(rep)}", reply=rep)

        # BndAddress
        if atyp in ADDRESS_SIZES:
            await _read_exact(reader, ADDRESS_SIZES[atyp], '绑定地址')
        elif atyp == SOCKS5.ATYP_DOMAIN:
            length = (await _read_exact(reader, 1, '绑定域名长度'))[0]
            await _read_exact(reader, length, '绑定域名')
        else:
            raise HandshakeError(f"未知的地址类型: {atyp}")

        # BndPort
        await _read_exact(reader, 2, '绑定端口')
    except OSError as e:
        raise HandshakeError(f"SOCKS5 握手时连接错误: {e}") from e

    logger.debug(f"SOCKS5 握手完成: {host}:{port}")


async def connect_upstream(socks_host: str, socks_port: int) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    建立到 SOCKS5 服务器的普通 TCP 连接

    Raises:
        UpstreamUnreachableError: 连接失败
    """
    try:
        return await asyncio.open_connection(socks_host, socks_port)
    except OSError as e:
        raise UpstreamUnreachableError(f"无法连接 SOCKS5 服务器 {socks_host}:{socks_port}") from e


async def open_socks5_connection(socks_host: str, socks_port: int, host: str, port: int,
                                 timeout: Optional[float] = None
                                 ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """
    连接 SOCKS5 服务器并请求 CONNECT 到目标

    Args:
        socks_host: SOCKS5 服务器地址
        socks_port: SOCKS5 服务器端口
        host: 目标主机
        port: 目标端口
        timeout: 连接加握手的总超时（秒），None 表示不限制

    Returns:
        Tuple[StreamReader, StreamWriter]: 已就绪的上游连接

    Raises:
        UpstreamUnreachableError: 无法连接 SOCKS5 服务器
        HandshakeError: 握手失败或超时
    """
    # 地址无效时不连接 SOCKS5 服务器
    request = build_connect_request(host, port)

    async def _open():
        reader, writer = await connect_upstream(socks_host, socks_port)
        try:
            await negotiate(reader, writer, host, port, request)
        except BaseException:
            writer.close()
            raise
        return reader, writer

    if timeout is None:
        return await _open()

    try:
        return await asyncio.wait_for(_open(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise HandshakeError(f"SOCKS5 连接握手超时 ({timeout}秒)") from e
