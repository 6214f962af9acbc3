"""
HTTP 代理请求解析与改写模块

代理客户端发来的第一个请求有两种形式:

1. 隧道请求（CONNECT）:
       CONNECT example.com:443 HTTP/1.1\\r\\n...
   从 authority 中取出目标主机和端口，原始请求字节不会转发给上游。

2. 绝对形式/源形式请求（其他方法）:
       GET http://example.com/path HTTP/1.0\\r\\nHost: example.com\\r\\n...
   目标取自 Host 头；请求行被改写为 "<方法> <URI> HTTP/1.1\\r\\n"，
   其余字节（请求头和已读到的请求体）原样保留。

所有解析直接在字节上进行，HTTP 请求头只包含 ASCII。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from common import MalformedRequestError, Target, parse_port, strip_brackets


# ============================================================================
# 协议常量
# ============================================================================

CONNECT_METHOD = b'CONNECT'
CRLF = b'\r\n'
HEADER_END = b'\r\n\r\n'
HOST_HEADER = b'host:'
DEFAULT_HTTP_PORT = 80

# 适配器自己产生的响应
RESPONSE_ESTABLISHED = b'HTTP/1.1 200 Connection Established\r\n\r\n'
RESPONSE_BAD_REQUEST = b'HTTP/1.1 400 Bad Request\r\n\r\n'
RESPONSE_TOO_LARGE = b'HTTP/1.1 431 Request Header Fields Too Large\r\n\r\n'
RESPONSE_BAD_GATEWAY = b'HTTP/1.1 502 Bad Gateway\r\n\r\n'


class RequestKind(Enum):
    """请求分类"""
    TUNNEL = 'tunnel'    # CONNECT 隧道
    FORWARD = 'forward'  # 绝对形式或源形式请求，改写后转发


@dataclass
class HttpRequest:
    """
    解析后的代理请求

    Attributes:
        kind: 请求分类
        method: 请求方法（原始字节）
        uri: 请求目标（原始字节，不做任何改动）
        target: SOCKS5 CONNECT 的目标
        raw: 从客户端读到的全部字节
    """
    kind: RequestKind
    method: bytes
    uri: bytes
    target: Target
    raw: bytes

    @property
    def is_connect(self) -> bool:
        return self.kind is RequestKind.TUNNEL

    def rewrite(self) -> bytes:
        """返回转发给上游的字节（请求行已改写）"""
        return rewrite_request_line(self.raw, self.method, self.uri)


# ============================================================================
# 请求行
# ============================================================================

def is_connect_request(buffer: bytes) -> bool:
    """缓冲区是否以 "CONNECT" 开头（区分大小写，从偏移 0 开始）"""
    return buffer.startswith(CONNECT_METHOD)


def first_line_len(buffer: bytes) -> int:
    """
    请求行的长度，包含结尾的 CRLF

    Returns:
        int: 没有 CRLF 时返回 0
    """
    pos = buffer.find(CRLF)
    if pos < 0:
        return 0
    return pos + len(CRLF)


def split_request_line(buffer: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    按 ASCII 空白切分请求行，必须正好三段

    Returns:
        Tuple[bytes, bytes, bytes]: (方法, 请求目标, 版本)

    Raises:
        MalformedRequestError: 段数不是 3
    """
    pos = buffer.find(CRLF)
    line = buffer[:pos] if pos >= 0 else buffer
    tokens = line.split()
    if len(tokens) != 3:
        raise MalformedRequestError(f"请求行应包含 3 段，实际 {len(tokens)} 段: {line[:128]!r}")
    return tokens[0], tokens[1], tokens[2]


def rewrite_request_line(buffer: bytes, method: bytes, uri: bytes) -> bytes:
    """
    把请求行替换为 "<方法> <URI> HTTP/1.1\\r\\n"

    版本被强制为 HTTP/1.1，URI 原样保留；第一个 CRLF 之后的字节
    逐字节保留，不增删任何请求头。

    Args:
        buffer: 原始请求字节
        method: 请求方法
        uri: 请求目标

    Returns:
        bytes: 改写后的请求
    """
    new_line = method + b' ' + uri + b' HTTP/1.1' + CRLF
    return new_line + buffer[first_line_len(buffer):]


# ============================================================================
# 目标解析
# ============================================================================

def _decode_host(raw: bytes) -> str:
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedRequestError(f"主机名不是有效的 UTF-8: {raw[:64]!r}") from e


def parse_connect_request(buffer: bytes) -> Target:
    """
    解析 CONNECT 请求的目标

    authority 按最后一个 ':' 切分，两部分都不能为空；主机两侧的方括号
    会被去掉；端口必须是 1-65535 的十进制数。

    Args:
        buffer: 以 "CONNECT" 开头的请求字节

    Returns:
        Target: 目标主机和端口

    Raises:
        MalformedRequestError: 请求格式错误
    """
    if not is_connect_request(buffer):
        raise MalformedRequestError("不是 CONNECT 请求")

    _, authority, _ = split_request_line(buffer)
    host, sep, port_text = authority.rpartition(b':')
    if not sep or not host or not port_text:
        raise MalformedRequestError(f"CONNECT 目标应为 host:port: {authority[:128]!r}")

    port = parse_port(port_text.decode('ascii', errors='replace'))
    if not port:
        raise MalformedRequestError(f"无效的 CONNECT 端口: {port_text[:16]!r}")

    host_text = strip_brackets(_decode_host(host))
    if not host_text:
        raise MalformedRequestError(f"CONNECT 主机为空: {authority[:128]!r}")

    return Target(host_text, port)


def find_host_header(buffer: bytes) -> Optional[bytes]:
    """
    查找第一个 Host 请求头的值

    只检查请求行之后、空行之前的请求头，名称不区分大小写。

    Returns:
        Optional[bytes]: 去掉两侧空白后的值，没有 Host 头时返回 None
    """
    start = first_line_len(buffer)
    if start == 0:
        return None

    for line in buffer[start:].split(CRLF):
        if not line:
            break
        if line[:len(HOST_HEADER)].lower() == HOST_HEADER:
            return line[len(HOST_HEADER):].strip()
    return None


def parse_host_authority(value: bytes) -> Target:
    """
    解析 Host 头的值

    - "example.com"        -> (example.com, 80)
    - "example.com:8081"   -> (example.com, 8081)
    - "example.com:abc"    -> (example.com, 80)，端口无法解析时回退到 80
    - "[::1]:8080"         -> (::1, 8080)

    Raises:
        MalformedRequestError: 主机为空或格式错误
    """
    text = _decode_host(value)

    if text.startswith('['):
        end = text.find(']')
        if end < 0:
            raise MalformedRequestError(f"Host 头中的 IPv6 地址缺少 ']': {text[:128]!r}")
        host, rest = text[1:end], text[end + 1:]
        if not rest:
            port = DEFAULT_HTTP_PORT
        elif rest.startswith(':'):
            port = parse_port(rest[1:]) or DEFAULT_HTTP_PORT
        else:
            raise MalformedRequestError(f"Host 头格式错误: {text[:128]!r}")
    elif ':' in text:
        host, _, port_text = text.rpartition(':')
        port = parse_port(port_text) or DEFAULT_HTTP_PORT
    else:
        host, port = text, DEFAULT_HTTP_PORT

    if not host:
        raise MalformedRequestError(f"Host 头中的主机为空: {text[:128]!r}")
    return Target(host, port)


def parse_http_request(buffer: bytes) -> HttpRequest:
    """
    分类并解析代理请求

    Args:
        buffer: 从客户端读到的字节（至少包含请求行和 Host 头）

    Returns:
        HttpRequest: 解析结果

    Raises:
        MalformedRequestError: 请求无法解析，调用方应返回 400
    """
    method, uri, _ = split_request_line(buffer)

    if is_connect_request(buffer):
        return HttpRequest(RequestKind.TUNNEL, method, uri, parse_connect_request(buffer), buffer)

    host_value = find_host_header(buffer)
    if host_value is None:
        raise MalformedRequestError(f"缺少 Host 请求头: {method.decode('latin-1')} {uri[:128].decode('latin-1')}")

    return HttpRequest(RequestKind.FORWARD, method, uri, parse_host_authority(host_value), buffer)
