"""
双向数据转发（Byte Pump）

在两个 TCP 流之间并发地复制数据，每个方向一个协程:

    A.reader ──> B.writer      (A -> B)
    B.reader ──> A.writer      (B -> A)

某个方向读到 EOF 时，对端写入侧半关闭（write_eof），另一方向继续，
直到两个方向都结束。任一方向出错时取消另一方向，关闭两端后抛出
TransportError。转发本身不设超时。
"""

import asyncio
import logging
from typing import Tuple

from common import TransportError

logger = logging.getLogger('http2socks-pump')

PUMP_CHUNK_SIZE = 64 * 1024  # 每个方向的单次读取大小


async def close_writer(writer: asyncio.StreamWriter):
    """
    关闭写入流，等待关闭完成

    关闭超时时强制中止 transport。
    """
    try:
        writer.close()
        await asyncio.wait_for(writer.wait_closed(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("关闭连接超时,强制关闭")
        writer.transport.abort()
    except OSError as e:
        logger.debug(f"关闭连接时出错: {e}")


async def _copy(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, direction: str) -> int:
    """
    单方向复制，直到读到 EOF

    Returns:
        int: 复制的字节数
    """
    total = 0
    while True:
        data = await reader.read(PUMP_CHUNK_SIZE)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        total += len(data)

    # 半关闭，让对端看到 EOF
    if writer.can_write_eof() and not writer.is_closing():
        try:
            writer.write_eof()
        except OSError as e:
            logger.debug(f"{direction} 半关闭失败: {e}")

    logger.debug(f"{direction} 方向结束: {total} 字节")
    return total


async def pump(a_reader: asyncio.StreamReader, a_writer: asyncio.StreamWriter,
               b_reader: asyncio.StreamReader, b_writer: asyncio.StreamWriter) -> Tuple[int, int]:
    """
    在 A、B 两个流之间双向转发，返回前关闭两端

    Args:
        a_reader: A 端读取流
        a_writer: A 端写入流
        b_reader: B 端读取流
        b_writer: B 端写入流

    Returns:
        Tuple[int, int]: (A->B 字节数, B->A 字节数)

    Raises:
        TransportError: 任一方向读写出错
    """
    a_to_b = asyncio.ensure_future(_copy(a_reader, b_writer, 'A->B'))
    b_to_a = asyncio.ensure_future(_copy(b_reader, a_writer, 'B->A'))
    tasks = (a_to_b, b_to_a)

    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await close_writer(a_writer)
        await close_writer(b_writer)

    for task in tasks:
        if task.cancelled():
            continue
        error = task.exception()
        if error is not None:
            raise TransportError(f"数据转发失败: {error}") from error

    return a_to_b.result(), b_to_a.result()
