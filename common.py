"""
HTTP 转 SOCKS5 适配代理 - 通用定义
处理器、协议模块和入口程序共享的组件

版本: 1.0.0

功能概述:
1. 运行时配置（RuntimeConfig）与目标地址（Target）数据类
2. 地址与端口解析
3. 适配器错误层次结构
4. YAML 配置文件加载
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger('http2socks')


# ============================================================================
# 默认值
# ============================================================================

DEFAULT_LISTEN_ADDR = '127.0.0.1:8080'
DEFAULT_SOCKS_ADDR = '127.0.0.1:1080'
DEFAULT_READ_SIZE = 4096  # 首次读取客户端的字节数
DEFAULT_MAX_HEADER_SIZE = 64 * 1024  # 请求头最大长度


# ============================================================================
# 错误类型
# ============================================================================

class AdapterError(Exception):
    """适配器错误基类，只影响单个连接"""


class MalformedRequestError(AdapterError):
    """无法解析的 HTTP 请求（向客户端返回 400）"""


class RequestTooLargeError(MalformedRequestError):
    """请求头超过上限（向客户端返回 431）"""


class UpstreamUnreachableError(AdapterError):
    """无法建立到 SOCKS5 服务器的 TCP 连接"""


class HandshakeError(AdapterError):
    """
    SOCKS5 握手失败

    包括短读、版本号错误、认证方法被拒绝、REP 非零、未知地址类型等。

    Attributes:
        reply: SOCKS5 服务器返回的 REP 字段（如果已读到）
    """

    def __init__(self, message: str, reply: Optional[int] = None):
        super().__init__(message)
        self.reply = reply


class TransportError(AdapterError):
    """数据转发阶段的读写错误"""


def format_error_chain(exc: BaseException) -> str:
    """
    把异常的因果链格式化为多行文本

    Args:
        exc: 顶层异常

    Returns:
        str: 每个原因一行 "Caused by: ..."，没有原因时为空字符串
    """
    lines = []
    seen = {id(exc)}
    cause = exc.__cause__ or exc.__context__
    while cause is not None and id(cause) not in seen:
        seen.add(id(cause))
        lines.append(f"Caused by: {cause!r}")
        cause = cause.__cause__ or cause.__context__
    return '\n'.join(lines)


# ============================================================================
# 数据类
# ============================================================================

@dataclass(frozen=True)
class Target:
    """
    SOCKS5 CONNECT 的目标

    Attributes:
        host: IP 字面量（v4/v6，不带方括号）或域名，原样转发给 SOCKS5 服务器
        port: 目标端口（1-65535）
    """
    host: str
    port: int

    def __str__(self):
        if ':' in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class RuntimeConfig:
    """
    运行时配置，启动时创建一次，之后只读

    Attributes:
        listen_addr: 本地监听地址（host:port）
        upstream_socks_addr: 上游 SOCKS5 服务器地址（host:port）
        forward_mode: True 表示原始 TCP 转发模式，不解析 HTTP
        handshake_timeout: SOCKS5 连接和握手的超时（秒），None 表示不限制
        max_header_size: 请求头最大长度（字节）
        read_size: 首次读取客户端的字节数
    """
    listen_addr: str = DEFAULT_LISTEN_ADDR
    upstream_socks_addr: str = DEFAULT_SOCKS_ADDR
    forward_mode: bool = False
    handshake_timeout: Optional[float] = None
    max_header_size: int = DEFAULT_MAX_HEADER_SIZE
    read_size: int = DEFAULT_READ_SIZE

    def __post_init__(self):
        # 提前校验，地址错误在启动时就暴露出来
        parse_address(self.listen_addr)
        parse_address(self.upstream_socks_addr)
        if self.handshake_timeout is not None and self.handshake_timeout <= 0:
            raise ValueError(f"握手超时必须为正数: {self.handshake_timeout}")
        if self.read_size <= 0 or self.max_header_size < self.read_size:
            raise ValueError(
                f"无效的读取大小: read_size={self.read_size}, max_header_size={self.max_header_size}"
            )

    @property
    def listen_endpoint(self) -> Tuple[str, int]:
        return parse_address(self.listen_addr)

    @property
    def socks_endpoint(self) -> Tuple[str, int]:
        return parse_address(self.upstream_socks_addr)


# ============================================================================
# 地址解析
# ============================================================================

def parse_port(text: str) -> Optional[int]:
    """
    解析十进制端口号

    只接受纯数字，不接受符号和空白。

    Args:
        text: 端口文本

    Returns:
        Optional[int]: 0-65535 范围内的端口，否则返回 None
    """
    if not text or not text.isascii() or not text.isdigit():
        return None
    port = int(text)
    if port > 0xFFFF:
        return None
    return port


def strip_brackets(host: str) -> str:
    """去掉 IPv6 字面量两侧的方括号，例如 "[::1]" -> "::1" """
    if len(host) >= 2 and host.startswith('[') and host.endswith(']'):
        return host[1:-1]
    return host


def parse_address(addr: str) -> Tuple[str, int]:
    """
    解析 host:port 形式的地址

    支持 "127.0.0.1:8080"、"localhost:1080"、"[::1]:8080"。

    Args:
        addr: 地址字符串

    Returns:
        Tuple[str, int]: (主机, 端口)

    Raises:
        ValueError: 地址格式错误
    """
    host, sep, port_text = addr.strip().rpartition(':')
    if not sep or not host:
        raise ValueError(f"地址格式错误，应为 host:port: {addr!r}")
    port = parse_port(port_text)
    if port is None:
        raise ValueError(f"无效的端口: {addr!r}")
    return strip_brackets(host), port


# ============================================================================
# 配置文件
# ============================================================================

def load_config(path: str) -> Dict[str, Any]:
    """
    从 YAML 文件加载配置

    Args:
        path: 配置文件路径

    Returns:
        Dict[str, Any]: 配置字典，文件格式错误时返回空字典

    Raises:
        FileNotFoundError: 文件不存在，由调用方决定是否回退到默认配置
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.warning(f"配置文件格式错误: {e}")
            return {}

    if not isinstance(data, dict):
        if data is not None:
            logger.warning(f"配置文件顶层必须是映射: {path}")
        return {}
    return data
