"""
连接处理器

每个被接受的客户端连接由 ConnectionHandler.handle 在独立任务中处理。

HTTP 模式:
1. 读取请求头（首次最多 read_size 字节，直到空行或达到上限）
2. 解析请求；无法解析时返回 400（超过上限时返回 431），
   返回错误响应后半关闭并丢弃客户端剩余输入，再关闭连接
3. 通过 SOCKS5 服务器 CONNECT 到目标；失败时返回 502
4. CONNECT 请求: 向客户端返回 200 Connection Established
   其他请求: 把改写后的请求发给上游
5. 双向转发，结束后关闭两端

转发模式:
直接连接 SOCKS5 服务器并双向转发，不读写、不解析任何 HTTP 数据。
"""

import asyncio
import logging

from common import (
    AdapterError, HandshakeError, MalformedRequestError, RequestTooLargeError,
    RuntimeConfig, UpstreamUnreachableError, format_error_chain,
)
from logger import add_context
from protocol.http_proxy import (
    HEADER_END, RESPONSE_BAD_GATEWAY, RESPONSE_BAD_REQUEST, RESPONSE_ESTABLISHED,
    RESPONSE_TOO_LARGE, parse_http_request,
)
from protocol.socks5 import connect_upstream, open_socks5_connection
from tunnel.pump import close_writer, pump

logger = logging.getLogger('http2socks-handler')

# 返回错误响应后丢弃客户端剩余输入的上限
DISCARD_TIMEOUT = 2.0
DISCARD_LIMIT = 1024 * 1024
DISCARD_CHUNK_SIZE = 64 * 1024


async def read_request_head(reader: asyncio.StreamReader, read_size: int, max_size: int) -> bytes:
    """
    读取请求头

    先读取最多 read_size 字节；如果还没有读到空行（CRLF CRLF），继续读取，
    直到读到空行、对端 EOF 或总长度达到 max_size。已读到的请求体前缀
    会保留在返回值中。

    Args:
        reader: 客户端读取流
        read_size: 首次读取的字节数
        max_size: 请求头最大长度

    Returns:
        bytes: 读到的字节，客户端直接关闭时为空

    Raises:
        RequestTooLargeError: 达到 max_size 仍未读到空行
    """
    buffer = await reader.read(read_size)
    if not buffer:
        return b''

    while HEADER_END not in buffer:
        if len(buffer) >= max_size:
            raise RequestTooLargeError(f"请求头超过 {max_size} 字节")
        chunk = await reader.read(max_size - len(buffer))
        if not chunk:
            break
        buffer += chunk

    return buffer


async def discard_input(reader: asyncio.StreamReader, limit: int = None) -> int:
    """
    读取并丢弃客户端输入，直到 EOF 或累计达到 limit 字节

    Returns:
        int: 丢弃的字节数
    """
    limit = DISCARD_LIMIT if limit is None else limit
    total = 0
    while total < limit:
        data = await reader.read(min(DISCARD_CHUNK_SIZE, limit - total))
        if not data:
            break
        total += len(data)
    return total


def format_peer(peername) -> str:
    """格式化 getpeername() 的结果"""
    if not peername:
        return '-'
    if isinstance(peername, (tuple, list)) and len(peername) >= 2:
        host, port = peername[0], peername[1]
        if ':' in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(peername)


class ConnectionHandler:
    """
    连接处理器

    Attributes:
        config: 运行时配置（只读）
        socks_host: SOCKS5 服务器地址
        socks_port: SOCKS5 服务器端口
    """

    def __init__(self, config: RuntimeConfig):
        self.config = config
        self.socks_host, self.socks_port = config.socks_endpoint

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        处理一个客户端连接（asyncio.start_server 的回调）

        错误只影响当前连接：记录错误及其原因链后关闭连接。

        Args:
            reader: 客户端读取流
            writer: 客户端写入流
        """
        add_context(peer=format_peer(writer.get_extra_info('peername')))
        logger.info("新连接")

        try:
            if self.config.forward_mode:
                await self.handle_forward(reader, writer)
            else:
                await self.handle_http(reader, writer)
        except (AdapterError, OSError) as e:
            logger.error(f"处理客户端连接出错: {e}")
            chain = format_error_chain(e)
            if chain:
                logger.error(f"错误链:\n{chain}")
        except Exception:
            logger.exception("处理客户端连接时发生未预期的错误")
        finally:
            await close_writer(writer)
            logger.debug("连接已关闭")

    async def handle_http(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        HTTP 模式处理流程

        Raises:
            UpstreamUnreachableError: 无法连接 SOCKS5 服务器
            HandshakeError: SOCKS5 握手失败
            TransportError: 转发阶段出错
        """
        try:
            buffer = await read_request_head(reader, self.config.read_size, self.config.max_header_size)
            if not buffer:
                logger.debug("客户端在发送请求前关闭了连接")
                return
            request = parse_http_request(buffer)
        except MalformedRequestError as e:
            logger.warning(f"无法解析请求: {e}")
            if isinstance(e, RequestTooLargeError):
                await self._reject(reader, writer, RESPONSE_TOO_LARGE)
            else:
                await self._reject(reader, writer, RESPONSE_BAD_REQUEST)
            return

        add_context(target=request.target)
        logger.info(f"{request.method.decode('latin-1')} {request.target}")

        try:
            up_reader, up_writer = await open_socks5_connection(
                self.socks_host, self.socks_port,
                request.target.host, request.target.port,
                timeout=self.config.handshake_timeout,
            )
        except (UpstreamUnreachableError, HandshakeError):
            await self._reject(reader, writer, RESPONSE_BAD_GATEWAY)
            raise

        try:
            if request.is_connect:
                # CONNECT 请求本身不转发给上游
                writer.write(RESPONSE_ESTABLISHED)
                await writer.drain()
            else:
                up_writer.write(request.rewrite())
                await up_writer.drain()
        except BaseException:
            await close_writer(up_writer)
            raise

        await self._relay(reader, writer, up_reader, up_writer)

    async def handle_forward(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        转发模式：客户端自己说 SOCKS5，适配器只做四层转发

        Raises:
            UpstreamUnreachableError: 无法连接 SOCKS5 服务器
            TransportError: 转发阶段出错
        """
        up_reader, up_writer = await connect_upstream(self.socks_host, self.socks_port)
        logger.info(f"转发连接到 SOCKS5 服务器 {self.config.upstream_socks_addr}")
        await self._relay(reader, writer, up_reader, up_writer)

    async def _relay(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                     up_reader: asyncio.StreamReader, up_writer: asyncio.StreamWriter):
        from_client, from_socks = await pump(reader, writer, up_reader, up_writer)
        logger.info(f"转发完成: 来自客户端 {from_client} 字节，来自 SOCKS5 {from_socks} 字节")

    async def _respond(self, writer: asyncio.StreamWriter, response: bytes):
        """向客户端写入适配器自己的响应，客户端已断开时忽略"""
        try:
            writer.write(response)
            await writer.drain()
        except OSError as e:
            logger.debug(f"发送响应失败: {e}")

    async def _reject(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, response: bytes):
        """
        写入错误响应并半关闭，然后丢弃客户端剩余的输入

        接收缓冲区里还有未读数据时关闭套接字，内核会发送 RST，
        客户端可能收不到响应。丢弃阶段受 DISCARD_TIMEOUT 和
        DISCARD_LIMIT 限制。
        """
        await self._respond(writer, response)
        try:
            if writer.can_write_eof() and not writer.is_closing():
                writer.write_eof()
            discarded = await asyncio.wait_for(discard_input(reader), timeout=DISCARD_TIMEOUT)
            logger.debug(f"已丢弃客户端剩余输入 {discarded} 字节")
        except asyncio.TimeoutError:
            logger.debug(f"丢弃客户端输入超时 ({DISCARD_TIMEOUT}秒)")
        except OSError as e:
            logger.debug(f"丢弃客户端输入时出错: {e}")
