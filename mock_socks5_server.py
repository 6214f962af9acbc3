#!/usr/bin/env python3
"""
模拟 SOCKS5 服务器

用于测试和本地调试：接受无认证的 CONNECT 请求，但不真正连接目标，
而是记录收到的请求，然后按模式处理后续数据:

- echo: 把收到的数据原样发回，直到客户端 EOF
- http: 读取一个 HTTP 请求头，返回预设的响应后关闭

可以配置 REP、绑定地址、认证方法等，用来模拟各种失败情况。

使用方法:
    python3 mock_socks5_server.py --listen 127.0.0.1:1080 --mode echo
"""

import argparse
import asyncio
import logging
import socket
import struct
from typing import List, Optional, Tuple

logger = logging.getLogger('mock-socks5')

DEFAULT_BOUND = b'\x01\x00\x00\x00\x00\x00\x00'  # ATYP=IPv4 0.0.0.0:0
DEFAULT_HTTP_RESPONSE = b'HTTP/1.1 200 OK\r\nContent-Length: 2\r\nConnection: close\r\n\r\nok'


class MockSocks5Server:
    """
    模拟 SOCKS5 服务器

    Attributes:
        connections: 已接受的连接数
        greetings: 每个连接收到的方法协商请求
        requests: 每个连接收到的完整 CONNECT 请求字节
        targets: 每个连接请求的 (主机, 端口)
        payloads: 每个连接握手之后收到的数据
    """

    def __init__(self, mode: str = 'echo', reply: int = 0x00, method: int = 0x00,
                 bound: bytes = DEFAULT_BOUND, http_response: bytes = DEFAULT_HTTP_RESPONSE,
                 truncate_reply: bool = False, stall: bool = False):
        self.mode = mode
        self.reply = reply
        self.method = method
        self.bound = bound
        self.http_response = http_response
        self.truncate_reply = truncate_reply
        self.stall = stall

        self.connections = 0
        self.greetings: List[bytes] = []
        self.requests: List[bytes] = []
        self.targets: List[Tuple[str, int]] = []
        self.payloads: List[bytes] = []
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def address(self) -> Tuple[str, int]:
        sockname = self.server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    @property
    def addr_string(self) -> str:
        host, port = self.address
        return f"{host}:{port}"

    async def start(self, host: str = '127.0.0.1', port: int = 0):
        self.server = await asyncio.start_server(self._handle, host, port)
        return self

    async def close(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

    async def __aenter__(self):
        return await self.start()

    async def __aexit__(self, *exc_info):
        await self.close()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        try:
            await self._serve(reader, writer)
        except (asyncio.IncompleteReadError, ConnectionError) as e:
            logger.debug(f"模拟服务器连接中断: {e}")
        finally:
            writer.close()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        if self.stall:
            await reader.read()
            return

        # 方法协商
        head = await reader.readexactly(2)
        methods = await reader.readexactly(head[1])
        self.greetings.append(head + methods)
        writer.write(bytes([0x05, self.method]))
        await writer.drain()
        if self.method != 0x00:
            return

        # CONNECT 请求
        header = await reader.readexactly(4)
        atyp = header[3]
        if atyp == 0x01:
            raw_addr = await reader.readexactly(4)
            host = socket.inet_ntoa(raw_addr)
        elif atyp == 0x03:
            length = await reader.readexactly(1)
            raw_addr = length + await reader.readexactly(length[0])
            host = raw_addr[1:].decode('utf-8')
        elif atyp == 0x04:
            raw_addr = await reader.readexactly(16)
            host = socket.inet_ntop(socket.AF_INET6, raw_addr)
        else:
            return
        raw_port = await reader.readexactly(2)
        self.requests.append(header + raw_addr + raw_port)
        self.targets.append((host, struct.unpack('>H', raw_port)[0]))

        reply = bytes([0x05, self.reply, 0x00]) + self.bound
        if self.truncate_reply:
            writer.write(reply[:3])
            await writer.drain()
            return
        writer.write(reply)
        await writer.drain()
        if self.reply != 0x00:
            return

        if self.mode == 'http':
            await self._serve_http(reader, writer)
        else:
            await self._serve_echo(reader, writer)

    async def _serve_echo(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        received = b''
        index = len(self.payloads)
        self.payloads.append(received)
        while True:
            data = await reader.read(65536)
            if not data:
                break
            received += data
            self.payloads[index] = received
            writer.write(data)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()

    async def _serve_http(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        head = await reader.readuntil(b'\r\n\r\n')
        self.payloads.append(head)
        writer.write(self.http_response)
        await writer.drain()


async def _main(host: str, port: int, mode: str):
    server = await MockSocks5Server(mode=mode).start(host, port)
    logger.info(f"模拟 SOCKS5 服务器监听于 {server.addr_string} (模式: {mode})")
    async with server.server:
        await server.server.serve_forever()


if __name__ == '__main__':
    logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(message)s')
    parser = argparse.ArgumentParser(description='模拟 SOCKS5 服务器')
    parser.add_argument('--listen', default='127.0.0.1:1080', help='监听地址 host:port')
    parser.add_argument('--mode', choices=['echo', 'http'], default='echo', help='握手之后的处理方式')
    args = parser.parse_args()
    listen_host, _, listen_port = args.listen.rpartition(':')
    try:
        asyncio.run(_main(listen_host, int(listen_port), args.mode))
    except KeyboardInterrupt:
        pass
