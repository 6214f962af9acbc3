#!/usr/bin/env python3
"""
适配器端到端测试

启动监听在随机端口上的 AdapterServer，上游使用 MockSocks5Server，
由测试充当 HTTP 代理客户端。

测试内容:
1. CONNECT 隧道: 200 响应、SOCKS5 请求字节、双向转发
2. 绝对形式请求: 请求行改写后转发，目标取自 Host 头
3. 无法解析的请求: 400，不连接 SOCKS5
4. 请求头过大: 431
5. SOCKS5 失败: 502
6. 转发模式: 客户端自己完成 SOCKS5 握手

使用方法:
    python3 -m pytest test_handler.py -v
"""

import asyncio
import logging
import os
import socket
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from common import RuntimeConfig
from mock_socks5_server import DEFAULT_HTTP_RESPONSE, MockSocks5Server
from protocol.http_proxy import (
    RESPONSE_BAD_GATEWAY, RESPONSE_BAD_REQUEST, RESPONSE_ESTABLISHED, RESPONSE_TOO_LARGE,
)
from protocol.socks5 import negotiate
from tunnel.handler import discard_input, format_peer, read_request_head
from tunnel.pump import close_writer
from tunnel.server import AdapterServer


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


async def start_adapter(socks_addr: str, **kwargs) -> AdapterServer:
    config = RuntimeConfig(listen_addr='127.0.0.1:0', upstream_socks_addr=socks_addr, **kwargs)
    adapter = AdapterServer(config)
    await adapter.start()
    return adapter


async def exchange(adapter: AdapterServer, data: bytes) -> bytes:
    """发送请求，读取响应直到适配器关闭连接；data 为空时直接半关闭"""
    reader, writer = await asyncio.open_connection(*adapter.address)
    try:
        if data:
            writer.write(data)
            await writer.drain()
        else:
            writer.write_eof()
        return await asyncio.wait_for(reader.read(-1), timeout=5)
    finally:
        await close_writer(writer)


# ============================================================================
# HTTP 模式
# ============================================================================

def test_connect_tunnel():
    async def run():
        async with MockSocks5Server(mode='echo') as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                reader, writer = await asyncio.open_connection(*adapter.address)
                writer.write(b'CONNECT 93.184.216.34:443 HTTP/1.1\r\nHost: 93.184.216.34:443\r\n\r\n')
                await writer.drain()

                response = await asyncio.wait_for(reader.readexactly(len(RESPONSE_ESTABLISHED)), timeout=5)
                assert response == RESPONSE_ESTABLISHED

                payload = b'\x16\x03\x01 tls bytes'
                writer.write(payload)
                await writer.drain()
                assert await asyncio.wait_for(reader.readexactly(len(payload)), timeout=5) == payload

                writer.write_eof()
                assert await asyncio.wait_for(reader.read(-1), timeout=5) == b''
                await close_writer(writer)

                assert socks.requests == [bytes.fromhex('050100015db8d82201bb')]
                # CONNECT 请求本身不转发给上游
                assert socks.payloads == [b'\x16\x03\x01 tls bytes']
            finally:
                await adapter.close()

    asyncio.run(run())


def test_connect_domain_tunnel():
    async def run():
        async with MockSocks5Server(mode='echo') as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                reader, writer = await asyncio.open_connection(*adapter.address)
                writer.write(b'CONNECT example.com:8443 HTTP/1.1\r\n\r\n')
                await writer.drain()
                assert await asyncio.wait_for(reader.readexactly(len(RESPONSE_ESTABLISHED)), timeout=5) == \
                    RESPONSE_ESTABLISHED
                writer.write_eof()
                assert await asyncio.wait_for(reader.read(-1), timeout=5) == b''
                await close_writer(writer)

                assert socks.targets == [('example.com', 8443)]
            finally:
                await adapter.close()

    asyncio.run(run())


def test_absolute_form_request_rewritten():
    async def run():
        async with MockSocks5Server(mode='http') as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                response = await exchange(
                    adapter, b'GET http://example.com/ HTTP/1.0\r\nHost: example.com\r\n\r\n')
                assert response == DEFAULT_HTTP_RESPONSE
                assert socks.targets == [('example.com', 80)]
                assert socks.payloads == [b'GET http://example.com/ HTTP/1.1\r\nHost: example.com\r\n\r\n']
            finally:
                await adapter.close()

    asyncio.run(run())


def test_absolute_form_with_query_and_extra_header():
    """绝对形式 URI（带查询串）和其余请求头逐字节到达上游"""
    async def run():
        async with MockSocks5Server(mode='http') as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                request = b'GET http://example.com/path?q=1 HTTP/1.1\r\nHost: example.com\r\nX: y\r\n\r\n'
                assert await exchange(adapter, request) == DEFAULT_HTTP_RESPONSE
                assert socks.targets == [('example.com', 80)]
                assert socks.payloads == [request]
            finally:
                await adapter.close()

    asyncio.run(run())


def test_host_header_port():
    async def run():
        async with MockSocks5Server(mode='http') as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                response = await exchange(adapter, b'GET /p HTTP/1.0\r\nHost: foo:8081\r\n\r\n')
                assert response == DEFAULT_HTTP_RESPONSE
                assert socks.targets == [('foo', 8081)]
                assert socks.payloads == [b'GET /p HTTP/1.1\r\nHost: foo:8081\r\n\r\n']
            finally:
                await adapter.close()

    asyncio.run(run())


def test_header_split_across_writes():
    """请求头分多次到达时继续读取，直到空行"""
    async def run():
        async with MockSocks5Server(mode='http') as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                reader, writer = await asyncio.open_connection(*adapter.address)
                writer.write(b'GET http://example.com/ HTTP/1.1\r\n')
                await writer.drain()
                await asyncio.sleep(0.05)
                writer.write(b'Host: example.com\r\n\r\n')
                await writer.drain()

                assert await asyncio.wait_for(reader.read(-1), timeout=5) == DEFAULT_HTTP_RESPONSE
                await close_writer(writer)
                assert socks.payloads == [b'GET http://example.com/ HTTP/1.1\r\nHost: example.com\r\n\r\n']
            finally:
                await adapter.close()

    asyncio.run(run())


def test_malformed_request():
    async def run():
        async with MockSocks5Server() as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                assert await exchange(adapter, b'GARBAGE\r\n\r\n') == RESPONSE_BAD_REQUEST
                assert socks.connections == 0
            finally:
                await adapter.close()

    asyncio.run(run())


def test_request_line_with_two_tokens():
    async def run():
        async with MockSocks5Server() as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                assert await exchange(adapter, b'GET /\r\n\r\n') == RESPONSE_BAD_REQUEST
                assert socks.connections == 0
            finally:
                await adapter.close()

    asyncio.run(run())


def test_malformed_request_followed_by_body():
    """客户端在 400 之后仍在发送数据，响应也能完整到达"""
    async def run():
        async with MockSocks5Server() as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                request = b'GARBAGE\r\nContent-Length: 200000\r\n\r\n' + b'x' * 200000
                assert await exchange(adapter, request) == RESPONSE_BAD_REQUEST
                assert socks.connections == 0
            finally:
                await adapter.close()

    asyncio.run(run())


def test_missing_host_header():
    async def run():
        async with MockSocks5Server() as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                assert await exchange(adapter, b'GET / HTTP/1.1\r\nAccept: */*\r\n\r\n') == RESPONSE_BAD_REQUEST
                assert socks.connections == 0
            finally:
                await adapter.close()

    asyncio.run(run())


def test_header_too_large():
    async def run():
        async with MockSocks5Server() as socks:
            adapter = await start_adapter(socks.addr_string, max_header_size=4096)
            try:
                prefix = b'GET / HTTP/1.1\r\nX-Fill: '
                oversized = prefix + b'a' * (4096 - len(prefix))
                assert await exchange(adapter, oversized) == RESPONSE_TOO_LARGE
                assert socks.connections == 0
            finally:
                await adapter.close()

    asyncio.run(run())


def test_header_too_large_while_client_still_sending():
    """请求头远超上限、客户端仍在发送时，431 响应不会被 RST 吞掉"""
    async def run():
        async with MockSocks5Server() as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                oversized = b'GET / HTTP/1.1\r\nX: ' + b'a' * 200000
                assert await exchange(adapter, oversized) == RESPONSE_TOO_LARGE
                assert socks.connections == 0
            finally:
                await adapter.close()

    asyncio.run(run())


def test_discard_input_stops_at_limit():
    async def run():
        reader = asyncio.StreamReader()
        reader.feed_data(b'x' * 5000)
        assert await discard_input(reader, limit=4096) == 4096
        reader.feed_eof()
        assert await discard_input(reader) == 904

    asyncio.run(run())


def test_socks_reply_failure_returns_bad_gateway():
    async def run():
        async with MockSocks5Server(reply=0x05) as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                response = await exchange(adapter, b'CONNECT example.com:443 HTTP/1.1\r\n\r\n')
                assert response == RESPONSE_BAD_GATEWAY
                assert socks.connections == 1
            finally:
                await adapter.close()

    asyncio.run(run())


def test_socks_unreachable_returns_bad_gateway():
    async def run():
        adapter = await start_adapter(f'127.0.0.1:{unused_port()}')
        try:
            response = await exchange(adapter, b'GET http://example.com/ HTTP/1.1\r\nHost: example.com\r\n\r\n')
            assert response == RESPONSE_BAD_GATEWAY
        finally:
            await adapter.close()

    asyncio.run(run())


def test_client_closes_immediately():
    async def run():
        async with MockSocks5Server() as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                assert await exchange(adapter, b'') == b''
                assert socks.connections == 0
            finally:
                await adapter.close()

    asyncio.run(run())


def test_concurrent_connections():
    async def run():
        async with MockSocks5Server(mode='http') as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                requests = [
                    f'GET /{i} HTTP/1.1\r\nHost: host{i}.example:{8000 + i}\r\n\r\n'.encode()
                    for i in range(10)
                ]
                responses = await asyncio.gather(*(exchange(adapter, r) for r in requests))
                assert responses == [DEFAULT_HTTP_RESPONSE] * 10
                assert sorted(socks.targets) == sorted((f'host{i}.example', 8000 + i) for i in range(10))
            finally:
                await adapter.close()

    asyncio.run(run())


# ============================================================================
# 转发模式
# ============================================================================

def test_forward_mode_is_transparent():
    """转发模式下客户端的 SOCKS5 握手原样到达服务器"""
    async def run():
        async with MockSocks5Server(mode='echo') as socks:
            adapter = await start_adapter(socks.addr_string, forward_mode=True)
            try:
                reader, writer = await asyncio.open_connection(*adapter.address)
                await asyncio.wait_for(negotiate(reader, writer, 'example.com', 443), timeout=5)

                writer.write(b'GET / HTTP/1.1\r\n\r\n')
                await writer.drain()
                assert await asyncio.wait_for(reader.readexactly(18), timeout=5) == b'GET / HTTP/1.1\r\n\r\n'

                writer.write_eof()
                assert await asyncio.wait_for(reader.read(-1), timeout=5) == b''
                await close_writer(writer)

                assert socks.targets == [('example.com', 443)]
                assert socks.payloads == [b'GET / HTTP/1.1\r\n\r\n']
            finally:
                await adapter.close()

    asyncio.run(run())


def test_forward_mode_unreachable_closes_client():
    async def run():
        adapter = await start_adapter(f'127.0.0.1:{unused_port()}', forward_mode=True)
        try:
            assert await exchange(adapter, b'') == b''
        finally:
            await adapter.close()

    asyncio.run(run())


# ============================================================================
# 辅助函数
# ============================================================================

def test_read_request_head_stops_at_eof():
    async def run():
        reader = asyncio.StreamReader()
        reader.feed_data(b'GET / HTTP/1.1\r\nHost: a')
        reader.feed_eof()
        assert await read_request_head(reader, 8, 1024) == b'GET / HTTP/1.1\r\nHost: a'

    asyncio.run(run())


def test_read_request_head_keeps_body_prefix():
    async def run():
        reader = asyncio.StreamReader()
        reader.feed_data(b'POST / HTTP/1.1\r\nHost: a\r\n\r\nbody')
        assert await read_request_head(reader, 4096, 65536) == b'POST / HTTP/1.1\r\nHost: a\r\n\r\nbody'

    asyncio.run(run())


def test_format_peer():
    assert format_peer(('127.0.0.1', 5000)) == '127.0.0.1:5000'
    assert format_peer(('::1', 5000, 0, 0)) == '[::1]:5000'
    assert format_peer(None) == '-'


# ============================================================================
# 事件循环异常处理
# ============================================================================

class RecordingLoop:
    """只记录 default_exception_handler 调用的事件循环替身"""

    def __init__(self):
        self.contexts = []

    def default_exception_handler(self, context):
        self.contexts.append(context)


def server_records(caplog):
    return [record for record in caplog.records if record.name == 'http2socks-server']


def test_accept_error_logged_as_warning(caplog):
    adapter = AdapterServer(RuntimeConfig())
    loop = RecordingLoop()
    context = {
        'message': 'socket.accept() out of system resource',
        'exception': OSError(24, 'Too many open files'),
    }

    with caplog.at_level(logging.WARNING, logger='http2socks-server'):
        adapter._handle_loop_exception(loop, context)

    assert loop.contexts == []
    records = server_records(caplog)
    assert len(records) == 1
    assert records[0].levelno == logging.WARNING
    assert 'Too many open files' in records[0].getMessage()


def test_other_loop_errors_use_default_handler(caplog):
    adapter = AdapterServer(RuntimeConfig())
    loop = RecordingLoop()
    context = {'message': 'Task exception was never retrieved', 'exception': RuntimeError('boom')}

    with caplog.at_level(logging.WARNING, logger='http2socks-server'):
        adapter._handle_loop_exception(loop, context)

    assert loop.contexts == [context]
    assert server_records(caplog) == []


def test_accept_error_through_running_loop(caplog):
    """start() 安装的处理器接收事件循环转来的 accept 错误，监听继续"""
    async def run():
        async with MockSocks5Server() as socks:
            adapter = await start_adapter(socks.addr_string)
            try:
                loop = asyncio.get_running_loop()
                assert loop.get_exception_handler() == adapter._handle_loop_exception
                loop.call_exception_handler({
                    'message': 'socket.accept() out of system resource',
                    'exception': OSError(24, 'Too many open files'),
                })
                assert await exchange(adapter, b'GET /\r\n\r\n') == RESPONSE_BAD_REQUEST
            finally:
                await adapter.close()

    with caplog.at_level(logging.WARNING, logger='http2socks-server'):
        asyncio.run(run())

    assert any(record.levelno == logging.WARNING and 'accept' in record.getMessage()
               for record in server_records(caplog))
